from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from threadline.db.models import MemoryEmbedding, MemoryItem, ThreadMessage
from threadline.utils.time_utils import utc_now


class MemoryRepo:
    """Repository for vector-memory persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert_memory_item(
        self,
        *,
        item_id: str,
        thread_id: str,
        source_message_id: Optional[str],
        message_type: str,
        content: str,
        content_hash: str,
        tags: Sequence[str],
        importance: Optional[float],
        occurred_at: datetime,
    ) -> MemoryItem:
        """Insert or refresh a memory item keyed by thread, content and time."""

        existing = await self._get_memory_item(thread_id, content_hash, occurred_at)
        if existing:
            existing.source_message_id = source_message_id or existing.source_message_id
            existing.message_type = message_type
            existing.content = content
            existing.tags = sorted(set(existing.tags or []) | set(tags))
            if importance is not None:
                existing.importance = importance
            existing.is_active = True
            await self._db.flush()
            return existing

        item = MemoryItem(
            id=item_id,
            thread_id=thread_id,
            source_message_id=source_message_id,
            message_type=message_type,
            content=content,
            content_hash=content_hash,
            tags=list(tags),
            importance=importance,
            is_active=True,
            occurred_at=occurred_at,
            created_at=utc_now(),
        )
        self._db.add(item)
        await self._db.flush()
        return item

    async def upsert_embedding(
        self,
        *,
        embedding_id: str,
        memory_item_id: str,
        provider: str,
        model_name: str,
        dim: int,
        vector_json: str,
        vector_norm: float,
    ) -> MemoryEmbedding:
        """Insert or update vector payload for a memory item."""

        existing = await self._get_embedding(memory_item_id)
        if existing:
            existing.provider = provider
            existing.model_name = model_name
            existing.dim = dim
            existing.vector_json = vector_json
            existing.vector_norm = vector_norm
            await self._db.flush()
            return existing

        embedding = MemoryEmbedding(
            id=embedding_id,
            memory_item_id=memory_item_id,
            provider=provider,
            model_name=model_name,
            dim=dim,
            vector_json=vector_json,
            vector_norm=vector_norm,
            created_at=utc_now(),
        )
        self._db.add(embedding)
        await self._db.flush()
        return embedding

    async def list_active_vectors(
        self, *, thread_id: Optional[str], limit: int
    ) -> list[tuple[MemoryItem, MemoryEmbedding]]:
        """List active item + embedding pairs by recency, for one thread or all.

        Items whose source message has been soft-deleted are excluded.
        """

        stmt = (
            select(MemoryItem, MemoryEmbedding)
            .join(MemoryEmbedding, MemoryEmbedding.memory_item_id == MemoryItem.id)
            .outerjoin(ThreadMessage, ThreadMessage.id == MemoryItem.source_message_id)
            .where(
                MemoryItem.is_active.is_(True),
                or_(ThreadMessage.id.is_(None), ThreadMessage.is_deleted.is_(False)),
            )
            .order_by(MemoryItem.occurred_at.desc(), MemoryItem.created_at.desc())
            .limit(limit)
        )
        if thread_id is not None:
            stmt = stmt.where(MemoryItem.thread_id == thread_id)
        result = await self._db.execute(stmt)
        return list(result.tuples())

    async def list_thread_items(self, thread_id: str) -> list[MemoryItem]:
        """Return a thread's active memory items in chronological order."""

        result = await self._db.execute(
            select(MemoryItem)
            .outerjoin(ThreadMessage, ThreadMessage.id == MemoryItem.source_message_id)
            .where(
                and_(MemoryItem.thread_id == thread_id, MemoryItem.is_active.is_(True)),
                or_(ThreadMessage.id.is_(None), ThreadMessage.is_deleted.is_(False)),
            )
            .order_by(MemoryItem.occurred_at.asc())
        )
        return list(result.scalars())

    async def tombstone_by_message(self, *, source_message_id: str) -> int:
        """Invalidate all memory items linked to a message."""

        result = await self._db.execute(
            select(MemoryItem).where(
                MemoryItem.source_message_id == source_message_id,
                MemoryItem.is_active.is_(True),
            )
        )
        count = 0
        for item in result.scalars():
            item.is_active = False
            count += 1
        if count:
            await self._db.flush()
        return count

    async def _get_memory_item(
        self, thread_id: str, content_hash: str, occurred_at: datetime
    ) -> Optional[MemoryItem]:
        result = await self._db.execute(
            select(MemoryItem).where(
                MemoryItem.thread_id == thread_id,
                MemoryItem.content_hash == content_hash,
                MemoryItem.occurred_at == occurred_at,
            )
        )
        return result.scalar_one_or_none()

    async def _get_embedding(self, memory_item_id: str) -> Optional[MemoryEmbedding]:
        result = await self._db.execute(
            select(MemoryEmbedding).where(MemoryEmbedding.memory_item_id == memory_item_id)
        )
        return result.scalar_one_or_none()
