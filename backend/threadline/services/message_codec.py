from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from threadline.db.models import MessageContentType, MessageSender, ThreadMessage
from threadline.utils.time_utils import to_epoch_ms

ChatContent = Union[str, list[dict[str, Any]]]

# Exhaustive: adding a MessageSender member without a role fails at import.
_PROVIDER_ROLES: dict[MessageSender, str] = {
    MessageSender.HUMAN: "user",
    MessageSender.ASSISTANT: "assistant",
    MessageSender.SYSTEM: "system",
}
if set(_PROVIDER_ROLES) != set(MessageSender):
    raise RuntimeError("Every message sender needs a provider role")


@dataclass(frozen=True)
class ChatMessage:
    """Message in the shape handed to a language model."""

    sender: MessageSender
    content: ChatContent
    additional_kwargs: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        parts = [str(part.get("text", "")) for part in self.content if part.get("type") == "text"]
        return "\n".join(part for part in parts if part)

    @property
    def is_multipart(self) -> bool:
        return isinstance(self.content, list)


def provider_role(sender: MessageSender) -> str:
    return _PROVIDER_ROLES[MessageSender(sender)]


def to_chat_message(message: ThreadMessage) -> ChatMessage:
    """Convert a stored message into its model-facing shape."""

    sender = MessageSender(message.sender)
    kwargs: dict[str, Any] = {
        "message_id": message.id,
        "metadata": dict(message.message_metadata or {}),
        "content_type": message.content_type,
        "timestamp": to_epoch_ms(message.created_at),
    }
    if sender is MessageSender.HUMAN:
        if message.raw_content:
            kwargs["raw_content"] = list(message.raw_content)
    elif sender is MessageSender.ASSISTANT:
        kwargs["model"] = message.model
        kwargs["temperature"] = message.temperature
        if message.token_count is not None:
            kwargs["token_count"] = message.token_count
        if message.processing_time_ms is not None:
            kwargs["processing_time_ms"] = message.processing_time_ms
    elif sender is MessageSender.SYSTEM:
        kwargs["role"] = message.role
    content: ChatContent = list(message.raw_content) if message.raw_content else message.content
    return ChatMessage(sender=sender, content=content, additional_kwargs=kwargs)


def to_message_fields(chat: ChatMessage) -> dict[str, Any]:
    """Column values for persisting a chat message (id and sequence excluded)."""

    extra = chat.additional_kwargs
    raw_content: Optional[list[dict[str, Any]]] = (
        list(chat.content) if isinstance(chat.content, list) else extra.get("raw_content")
    )
    content_type = extra.get("content_type")
    if content_type is None:
        content_type = (
            MessageContentType.MIXED.value if raw_content else MessageContentType.TEXT.value
        )
    fields: dict[str, Any] = {
        "sender": chat.sender.value,
        "content_type": MessageContentType(content_type).value,
        "content": chat.text,
        "raw_content": raw_content,
        "role": extra.get("role"),
        "parent_message_id": extra.get("parent_message_id"),
        "message_metadata": dict(extra.get("metadata") or {}),
    }
    if chat.sender is MessageSender.ASSISTANT:
        fields["model"] = extra.get("model")
        fields["temperature"] = extra.get("temperature")
        fields["token_count"] = extra.get("token_count")
        fields["processing_time_ms"] = extra.get("processing_time_ms")
    return fields


def to_provider_dict(chat: ChatMessage) -> dict[str, Any]:
    return {"role": provider_role(chat.sender), "content": chat.content}
