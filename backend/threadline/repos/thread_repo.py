from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from threadline.db.models import BranchType, ConversationThread, ThreadStatus
from threadline.utils.time_utils import utc_now


class ThreadRepo:
    """Repository for conversation thread persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def create_thread(self, thread_id: str, **fields: Any) -> ConversationThread:
        """Create and persist a new thread."""

        now = utc_now()
        fields.setdefault("tags", [])
        fields.setdefault("thread_metadata", {})
        thread = ConversationThread(id=thread_id, created_at=now, updated_at=now, **fields)
        self._db.add(thread)
        await self._db.flush()
        return thread

    async def get_thread(self, thread_id: str) -> Optional[ConversationThread]:
        """Fetch a thread by ID."""

        result = await self._db.execute(
            select(ConversationThread).where(ConversationThread.id == thread_id)
        )
        return result.scalar_one_or_none()

    async def get_threads(self, thread_ids: Sequence[str]) -> dict[str, ConversationThread]:
        """Batch-fetch threads keyed by id; missing ids are absent from the result."""

        if not thread_ids:
            return {}
        result = await self._db.execute(
            select(ConversationThread).where(ConversationThread.id.in_(list(thread_ids)))
        )
        return {thread.id: thread for thread in result.scalars()}

    async def list_children(self, parent_thread_id: str) -> list[ConversationThread]:
        """List every thread whose parent is the given thread."""

        result = await self._db.execute(
            select(ConversationThread)
            .where(ConversationThread.parent_thread_id == parent_thread_id)
            .order_by(ConversationThread.created_at.asc())
        )
        return list(result.scalars())

    async def list_branches(self, parent_thread_id: str) -> list[ConversationThread]:
        """List active branch children of a thread ordered by creation."""

        result = await self._db.execute(
            select(ConversationThread)
            .where(
                ConversationThread.parent_thread_id == parent_thread_id,
                ConversationThread.branch_type == BranchType.BRANCH.value,
                ConversationThread.status == ThreadStatus.ACTIVE.value,
            )
            .order_by(ConversationThread.created_at.asc())
        )
        return list(result.scalars())

    async def list_by_category(self, category_id: str) -> list[ConversationThread]:
        """List non-deleted threads in a category."""

        result = await self._db.execute(
            select(ConversationThread)
            .where(
                ConversationThread.category_id == category_id,
                ConversationThread.status != ThreadStatus.DELETED.value,
            )
            .order_by(ConversationThread.created_at.asc())
        )
        return list(result.scalars())

    async def increment_message_count(self, thread_id: str, amount: int = 1) -> None:
        """Atomically bump the message counter."""

        await self._db.execute(
            update(ConversationThread)
            .where(ConversationThread.id == thread_id)
            .values(message_count=ConversationThread.message_count + amount)
            .execution_options(synchronize_session=False)
        )

    async def set_status(self, thread_id: str, status: ThreadStatus) -> Optional[ConversationThread]:
        """Update a thread's lifecycle status."""

        thread = await self.get_thread(thread_id)
        if not thread:
            return None
        thread.status = status.value
        thread.updated_at = utc_now()
        await self._db.flush()
        return thread
