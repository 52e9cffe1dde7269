from __future__ import annotations

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import httpx

from threadline.core.config import Settings

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[\w-]+|[^\w\s]", re.UNICODE)


class EmbeddingError(RuntimeError):
    """Raised when embedding generation fails."""


class Embedder(ABC):
    """Turns memory text into fixed-size unit vectors."""

    provider: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate one vector per input text, preserving order."""

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        if not vectors:
            raise EmbeddingError("Embedder returned no vector for query")
        return vectors[0]


class DeterministicEmbedder(Embedder):
    """Hashing embedder; identical text always maps to the identical vector."""

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._hash_vector(text) for text in texts]

    def _hash_vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        tokens = _TOKEN_PATTERN.findall(text.casefold())
        if not tokens:
            vector[0] = 1.0
            return vector
        for token in tokens:
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            slot = int.from_bytes(digest[:4], byteorder="big") % self.dimension
            weight = 1.0 + digest[5] / 255.0
            vector[slot] += weight if digest[4] & 1 == 0 else -weight
        return normalize_vector(vector)


class OpenAIEmbedder(Embedder):
    """Embeddings over an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        timeout_sec: float = 20.0,
        batch_size: int = 64,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise EmbeddingError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._api_key = api_key
        self._timeout_sec = timeout_sec
        self._batch_size = max(1, batch_size)
        self._transport = transport
        self._endpoint = f"{base_url.rstrip('/')}/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors: list[list[float]] = []
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with httpx.AsyncClient(
            timeout=self._timeout_sec, transport=self._transport
        ) as client:
            for start in range(0, len(texts), self._batch_size):
                batch = list(texts[start : start + self._batch_size])
                try:
                    response = await client.post(
                        self._endpoint,
                        json={"model": self.model_name, "input": batch},
                        headers=headers,
                    )
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    raise EmbeddingError("OpenAI embedding request failed") from exc
                vectors.extend(self._parse_batch(response.json(), len(batch)))
        return [normalize_vector(vector) for vector in vectors]

    def _parse_batch(self, payload: Any, expected: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected:
            raise EmbeddingError("Embedding response shape is invalid")
        # The API may return rows out of order; "index" restores input order.
        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in rows):
            rows = sorted(rows, key=lambda row: row["index"])

        vectors: list[list[float]] = []
        for row in rows:
            values = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(values, list) or len(values) != self.dimension:
                raise EmbeddingError("Embedding row is missing or has the wrong dimension")
            try:
                vectors.append([float(value) for value in values])
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("Embedding contains non-numeric values") from exc
        return vectors


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]


def create_embedder(settings: Settings) -> Embedder:
    """Pick the embedder named by EMBED_PROVIDER, falling back to deterministic."""

    provider = settings.embed_provider.strip().lower()
    if provider == "openai":
        api_key = settings.embed_openai_api_key.strip()
        if api_key:
            return OpenAIEmbedder(
                base_url=settings.openai_base_url,
                api_key=api_key,
                model_name=settings.embed_model.strip() or "text-embedding-3-small",
                dimension=settings.embed_dim,
            )
        logger.warning(
            "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
        )
    elif provider != "deterministic":
        logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)

    model_name = settings.embed_model.strip() if provider == "deterministic" else ""
    return DeterministicEmbedder(
        dimension=settings.embed_dim, model_name=model_name or "deterministic-v1"
    )
