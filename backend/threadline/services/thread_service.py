from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadline.core.errors import ConversationStateError, ErrorCode
from threadline.core.security import truncate_preview
from threadline.db.models import (
    BranchType,
    ConversationThread,
    ThreadCategory,
    ThreadMessage,
    ThreadStatus,
)
from threadline.repos.category_repo import CategoryRepo
from threadline.repos.memory_repo import MemoryRepo
from threadline.repos.message_repo import MessageRepo
from threadline.repos.thread_repo import ThreadRepo

logger = logging.getLogger(__name__)


class ThreadService:
    """Resolve, create and touch conversation threads."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        preview_chars: int = 500,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._preview_chars = preview_chars

    async def find_thread_by_id(
        self, thread_id: str, db: Optional[AsyncSession] = None
    ) -> Optional[ConversationThread]:
        async with self._db_context(db) as active_db:
            return await ThreadRepo(active_db).get_thread(thread_id)

    async def auto_create_thread(
        self,
        seed_content: str,
        thread_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> ConversationThread:
        """Create a root thread titled from its first message.

        When ``thread_id`` is taken by a concurrent creator, the existing row is returned.
        """

        new_id = thread_id or uuid.uuid4().hex
        try:
            async with self._db_context(db) as active_db:
                return await ThreadRepo(active_db).create_thread(
                    new_id,
                    title=ConversationThread.generate_title(seed_content),
                    status=ThreadStatus.ACTIVE.value,
                    branch_type=BranchType.ROOT.value,
                    is_main_branch=True,
                    thread_metadata={"source": "auto_created"},
                )
        except IntegrityError:
            if db is not None or thread_id is None:
                raise
            logger.info("Thread %s was created concurrently; reusing it", thread_id)
            existing = await self.find_thread_by_id(thread_id)
            if existing is None:
                raise
            return existing

    async def create_thread(
        self,
        *,
        title: Optional[str] = None,
        category_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
        priority: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        thread_id: Optional[str] = None,
    ) -> ConversationThread:
        fields: dict[str, Any] = {
            "title": title,
            "category_id": category_id,
            "tags": list(tags or []),
            "thread_metadata": dict(metadata or {}),
        }
        if priority is not None:
            fields["priority"] = priority
        async with self._db_context(None) as db:
            return await ThreadRepo(db).create_thread(thread_id or uuid.uuid4().hex, **fields)

    async def create_category(
        self, name: str, description: Optional[str] = None, color: Optional[str] = None
    ) -> ThreadCategory:
        async with self._db_context(None) as db:
            return await CategoryRepo(db).create_category(
                uuid.uuid4().hex, name, description=description, color=color
            )

    async def find_category(self, category_id: str) -> Optional[ThreadCategory]:
        async with self._db_context(None) as db:
            return await CategoryRepo(db).get_category(category_id)

    async def update_activity(
        self,
        thread_id: str,
        preview_text: str,
        sender: str,
        db: Optional[AsyncSession] = None,
    ) -> Optional[ConversationThread]:
        """Record a new message: preview, sender, counter and last-activity time."""

        async with self._db_context(db) as active_db:
            repo = ThreadRepo(active_db)
            await repo.increment_message_count(thread_id)
            thread = await repo.get_thread(thread_id)
            if thread is None:
                return None
            await active_db.refresh(thread, attribute_names=["message_count"])
            thread.update_last_activity(truncate_preview(preview_text, self._preview_chars), sender)
            await active_db.flush()
            return thread

    async def set_status(self, thread_id: str, status: ThreadStatus) -> ConversationThread:
        async with self._db_context(None) as db:
            thread = await ThreadRepo(db).set_status(thread_id, status)
            if thread is None:
                raise ConversationStateError(
                    ErrorCode.THREAD_NOT_FOUND,
                    "Thread not found",
                    thread_id=thread_id,
                    operation="set_status",
                )
            return thread

    async def soft_delete_message(self, thread_id: str, message_id: str) -> ThreadMessage:
        """Hide a message from every read path; its sequence number stays reserved."""

        async with self._db_context(None) as db:
            repo = MessageRepo(db)
            message = await repo.get_message(message_id, thread_id)
            if message is None:
                raise ConversationStateError(
                    ErrorCode.INVALID_MESSAGE,
                    "Message not found",
                    thread_id=thread_id,
                    message_id=message_id,
                    operation="soft_delete_message",
                )
            await repo.soft_delete(message_id)
            await MemoryRepo(db).tombstone_by_message(source_message_id=message_id)
            return message

    @asynccontextmanager
    async def _db_context(self, db: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if db is not None:
            yield db
            return
        async with self._sessionmaker() as local_db:
            async with local_db.begin():
                yield local_db


def get_thread_service(request: Request) -> ThreadService:
    """Dependency to access thread service from app state."""

    return request.app.state.thread_service
