from __future__ import annotations

from datetime import datetime, timezone

import pytest

from threadline.db.models import MessageSender, ThreadMessage
from threadline.services.message_codec import (
    ChatMessage,
    provider_role,
    to_chat_message,
    to_message_fields,
    to_provider_dict,
)


def _stored(sender: str, **fields) -> ThreadMessage:
    values = {
        "id": "m-1",
        "thread_id": "t-1",
        "sender": sender,
        "content_type": "text",
        "content": "hello there",
        "sequence_number": 1,
        "message_metadata": {"origin": "test"},
        "created_at": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    }
    values.update(fields)
    return ThreadMessage(**values)


@pytest.mark.parametrize(
    ("sender", "role"),
    [
        (MessageSender.HUMAN, "user"),
        (MessageSender.ASSISTANT, "assistant"),
        (MessageSender.SYSTEM, "system"),
    ],
)
def test_every_sender_maps_to_a_provider_role(sender, role):
    assert provider_role(sender) == role
    assert to_provider_dict(ChatMessage(sender=sender, content="x")) == {
        "role": role,
        "content": "x",
    }


def test_assistant_message_carries_model_fields():
    chat = to_chat_message(_stored("assistant", model="gpt-test", temperature=0.3, token_count=42))

    assert chat.sender is MessageSender.ASSISTANT
    assert chat.content == "hello there"
    assert chat.additional_kwargs["message_id"] == "m-1"
    assert chat.additional_kwargs["model"] == "gpt-test"
    assert chat.additional_kwargs["temperature"] == 0.3
    assert chat.additional_kwargs["token_count"] == 42
    assert chat.additional_kwargs["metadata"] == {"origin": "test"}
    assert chat.additional_kwargs["timestamp"] == 1714564800000


def test_human_multipart_message_uses_raw_content():
    parts = [{"type": "text", "text": "look"}, {"type": "image_url", "image_url": "x.png"}]
    chat = to_chat_message(_stored("human", raw_content=parts, content_type="mixed"))

    assert chat.is_multipart
    assert chat.content == parts
    assert chat.text == "look"
    assert "model" not in chat.additional_kwargs


def test_message_fields_for_multipart_content():
    chat = ChatMessage(
        sender=MessageSender.HUMAN,
        content=[{"type": "text", "text": "first"}, {"type": "text", "text": "second"}],
        additional_kwargs={"metadata": {"k": "v"}},
    )

    fields = to_message_fields(chat)

    assert fields["sender"] == "human"
    assert fields["content_type"] == "mixed"
    assert fields["content"] == "first\nsecond"
    assert fields["raw_content"] == chat.content
    assert fields["message_metadata"] == {"k": "v"}
    assert "model" not in fields


def test_message_fields_for_assistant_text():
    chat = ChatMessage(
        sender=MessageSender.ASSISTANT,
        content="answer",
        additional_kwargs={"model": "m", "temperature": 0.1, "processing_time_ms": 12},
    )

    fields = to_message_fields(chat)

    assert fields["content_type"] == "text"
    assert fields["raw_content"] is None
    assert fields["model"] == "m"
    assert fields["processing_time_ms"] == 12
