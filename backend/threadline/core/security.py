from __future__ import annotations

import re

_API_KEY_PATTERN = re.compile(r"sk-[A-Za-z0-9_-]{6,}")
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def redact_secrets(text: str) -> str:
    """Mask provider API keys and bearer tokens in free text."""

    text = _API_KEY_PATTERN.sub("sk-***", text)
    return _BEARER_PATTERN.sub(r"\1***", text)


def truncate_preview(text: str, max_length: int) -> str:
    """Clamp text for previews, marking the cut with an ellipsis."""

    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return f"{text[: max_length - 3]}..."
