from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://127.0.0.1:5500,http://localhost:5500",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./threadline.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    turn_max_steps: int = Field(default=16, alias="TURN_MAX_STEPS")
    sequence_retry_attempts: int = Field(default=5, alias="SEQUENCE_RETRY_ATTEMPTS")
    message_preview_chars: int = Field(default=500, alias="MESSAGE_PREVIEW_CHARS")
    access_cache_ttl_sec: float = Field(default=300.0, alias="ACCESS_CACHE_TTL_SEC")
    ownership_write_trust: bool = Field(default=False, alias="OWNERSHIP_WRITE_TRUST")
    memory_mode: str = Field(default="off", alias="MEMORY_MODE")
    memory_default_limit: int = Field(default=10, alias="MEMORY_DEFAULT_LIMIT")
    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="deterministic-v1", alias="EMBED_MODEL")
    embed_dim: int = Field(default=64, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                import json

                value: Any = json.loads(raw)
                if isinstance(value, list):
                    items = [str(item).strip() for item in value]
                    return [item for item in items if item]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
