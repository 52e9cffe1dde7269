from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from threadline.db.models import ThreadMessage
from threadline.utils.time_utils import utc_now


@dataclass(frozen=True)
class MessageCopy:
    """Instruction to copy one message into another thread."""

    source: ThreadMessage
    sequence_number: int
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class MessageRepo:
    """Repository for thread message persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def next_sequence(self, thread_id: str) -> int:
        """Return max(sequence_number) + 1, counting soft-deleted rows too."""

        result = await self._db.execute(
            select(func.max(ThreadMessage.sequence_number)).where(
                ThreadMessage.thread_id == thread_id
            )
        )
        max_seq = result.scalar_one() or 0
        return int(max_seq) + 1

    async def add_message(
        self,
        thread_id: str,
        sequence_number: int,
        *,
        message_id: Optional[str] = None,
        **fields: Any,
    ) -> ThreadMessage:
        """Insert a message with an already allocated sequence number."""

        now = utc_now()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        fields.setdefault("message_metadata", {})
        message = ThreadMessage(
            id=message_id or uuid.uuid4().hex,
            thread_id=thread_id,
            sequence_number=sequence_number,
            **fields,
        )
        self._db.add(message)
        await self._db.flush()
        return message

    async def get_message(
        self, message_id: str, thread_id: Optional[str] = None
    ) -> Optional[ThreadMessage]:
        """Fetch a message by ID, optionally constrained to a thread."""

        stmt = select(ThreadMessage).where(ThreadMessage.id == message_id)
        if thread_id is not None:
            stmt = stmt.where(ThreadMessage.thread_id == thread_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_messages(
        self, thread_id: str, limit: Optional[int] = None
    ) -> list[ThreadMessage]:
        """Return non-deleted messages in ascending sequence order.

        With a limit, the most recent ``limit`` messages are returned, still ascending.
        """

        stmt = select(ThreadMessage).where(
            ThreadMessage.thread_id == thread_id,
            ThreadMessage.is_deleted.is_(False),
        )
        if limit is None:
            result = await self._db.execute(stmt.order_by(ThreadMessage.sequence_number.asc()))
            return list(result.scalars())
        result = await self._db.execute(
            stmt.order_by(ThreadMessage.sequence_number.desc()).limit(limit)
        )
        rows = list(result.scalars())
        rows.reverse()
        return rows

    async def list_messages_up_to_sequence(
        self, thread_id: str, max_sequence: int
    ) -> list[ThreadMessage]:
        """Return non-deleted messages from the start of a thread to max_sequence."""

        result = await self._db.execute(
            select(ThreadMessage)
            .where(
                ThreadMessage.thread_id == thread_id,
                ThreadMessage.sequence_number <= max_sequence,
                ThreadMessage.is_deleted.is_(False),
            )
            .order_by(ThreadMessage.sequence_number.asc())
        )
        return list(result.scalars())

    async def count_messages(self, thread_id: str) -> int:
        """Count non-deleted messages of a thread."""

        result = await self._db.execute(
            select(func.count(ThreadMessage.id)).where(
                ThreadMessage.thread_id == thread_id,
                ThreadMessage.is_deleted.is_(False),
            )
        )
        return int(result.scalar_one() or 0)

    async def soft_delete(self, message_id: str) -> Optional[ThreadMessage]:
        """Flag a message as deleted; the row and its sequence number are kept."""

        message = await self.get_message(message_id)
        if not message:
            return None
        message.is_deleted = True
        message.updated_at = utc_now()
        await self._db.flush()
        return message

    async def clone_messages(
        self, copies: list[MessageCopy], target_thread_id: str
    ) -> list[ThreadMessage]:
        """Copy messages into a target thread with caller-assigned sequence numbers."""

        copied_messages: list[ThreadMessage] = []
        for item in copies:
            source = item.source
            copied = ThreadMessage(
                id=uuid.uuid4().hex,
                thread_id=target_thread_id,
                sender=source.sender,
                content_type=source.content_type,
                content=source.content,
                raw_content=list(source.raw_content) if source.raw_content else None,
                role=source.role,
                parent_message_id=source.parent_message_id,
                sequence_number=item.sequence_number,
                token_count=source.token_count,
                processing_time_ms=source.processing_time_ms,
                model=source.model,
                temperature=source.temperature,
                is_edited=source.is_edited,
                is_deleted=False,
                message_metadata={**(source.message_metadata or {}), **item.metadata},
                created_at=item.created_at,
                updated_at=utc_now(),
            )
            self._db.add(copied)
            copied_messages.append(copied)
        await self._db.flush()
        return copied_messages
