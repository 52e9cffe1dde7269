from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class APIModel(BaseModel):
    """Base model with ORM support enabled."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class ErrorDetail(APIModel):
    """Structured error payload carried in ``detail`` of error responses."""

    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorResponse(APIModel):
    """Standard error response payload."""

    detail: ErrorDetail
