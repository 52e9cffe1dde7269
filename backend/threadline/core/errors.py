from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Machine-readable failure codes shared by every conversation operation."""

    THREAD_NOT_FOUND = "THREAD_NOT_FOUND"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    INVALID_MERGE = "INVALID_MERGE"
    STATE_PERSISTENCE_FAILED = "STATE_PERSISTENCE_FAILED"
    GRAPH_EXECUTION_FAILED = "GRAPH_EXECUTION_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ConversationStateError(RuntimeError):
    """Structured error carried by turn states and raised by thread operations.

    The payload shape is fixed so callers can branch on ``code``:
    ``{"code", "message", "details": {"thread_id", "message_id"?, "operation", "timestamp"}}``.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        thread_id: Optional[str] = None,
        message_id: Optional[str] = None,
        operation: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.thread_id = thread_id
        self.message_id = message_id
        self.operation = operation
        self.timestamp = timestamp if timestamp is not None else int(time.time() * 1000)

    @property
    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "thread_id": self.thread_id,
            "operation": self.operation,
            "timestamp": self.timestamp,
        }
        if self.message_id is not None:
            details["message_id"] = self.message_id
        return details

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready payload."""

        return {"code": self.code.value, "message": self.message, "details": self.details}

    def to_json(self) -> str:
        """Serialize the payload with a stable key order."""

        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ConversationStateError":
        details = payload.get("details") or {}
        return cls(
            ErrorCode(payload["code"]),
            str(payload.get("message", "")),
            thread_id=details.get("thread_id"),
            message_id=details.get("message_id"),
            operation=details.get("operation"),
            timestamp=details.get("timestamp"),
        )

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        code: ErrorCode,
        operation: str,
        thread_id: Optional[str] = None,
        message_id: Optional[str] = None,
        fallback_message: str = "Operation failed",
    ) -> "ConversationStateError":
        """Wrap an unexpected exception into the structured payload."""

        message = str(exc).strip() or fallback_message
        return cls(
            code,
            message,
            thread_id=thread_id,
            message_id=message_id,
            operation=operation,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_json()})"


class TurnWorkflowError(ConversationStateError):
    """Raised when the turn workflow itself cannot be built or invoked."""

    def __str__(self) -> str:
        return self.to_json()


class AccessDeniedError(RuntimeError):
    """Raised when a cross-thread memory operation is not permitted."""

    def __init__(self, source_thread_id: str, target_thread_id: str, reason: str) -> None:
        super().__init__(reason)
        self.source_thread_id = source_thread_id
        self.target_thread_id = target_thread_id
        self.reason = reason
