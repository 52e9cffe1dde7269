from __future__ import annotations

from fastapi import HTTPException, status

from threadline.core.errors import AccessDeniedError, ConversationStateError, ErrorCode


def error_status(code: ErrorCode) -> int:
    if code is ErrorCode.THREAD_NOT_FOUND:
        return status.HTTP_404_NOT_FOUND
    if code in {ErrorCode.INVALID_MESSAGE, ErrorCode.INVALID_MERGE}:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def conversation_http_error(exc: ConversationStateError) -> HTTPException:
    """Translate a domain error into an HTTP error carrying its payload."""

    return HTTPException(status_code=error_status(exc.code), detail=exc.to_dict())


def access_denied_http_error(exc: AccessDeniedError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "ACCESS_DENIED",
            "message": exc.reason,
            "details": {
                "source_thread_id": exc.source_thread_id,
                "target_thread_id": exc.target_thread_id,
            },
        },
    )
