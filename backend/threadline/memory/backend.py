from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadline.core.config import Settings
from threadline.db.models import MemoryItem, MessageSender, ThreadMessage
from threadline.memory.embedder import Embedder, EmbeddingError, create_embedder
from threadline.memory.types import MemoryItemPayload, MemorySearchResult, RetrievedMemory
from threadline.memory.vector_store import SQLVectorStore, VectorStore
from threadline.utils.time_utils import from_epoch_ms, to_epoch_ms

logger = logging.getLogger(__name__)


class MemoryBackend(ABC):
    """Retrieval backend consumed by the memory sharing layer."""

    enabled: bool = False

    @abstractmethod
    async def retrieve_relevant_memories(
        self,
        query: str,
        thread_id: str,
        *,
        limit: int,
        include_global: bool = False,
    ) -> list[RetrievedMemory]:
        """Return memories of a thread (or of every thread) ranked by relevance."""

    @abstractmethod
    async def get_conversation_history(self, thread_id: str) -> list[RetrievedMemory]:
        """Return every stored memory of a thread, oldest first."""

    @abstractmethod
    async def store_conversation_memory(
        self,
        memories: Sequence[RetrievedMemory],
        thread_id: str,
        *,
        tags: Sequence[str] = (),
    ) -> int:
        """Store memories under a thread and return how many were written."""


class NoopMemoryBackend(MemoryBackend):
    """Disabled memory mode implementation."""

    enabled = False

    async def retrieve_relevant_memories(
        self,
        query: str,
        thread_id: str,
        *,
        limit: int,
        include_global: bool = False,
    ) -> list[RetrievedMemory]:
        return []

    async def get_conversation_history(self, thread_id: str) -> list[RetrievedMemory]:
        return []

    async def store_conversation_memory(
        self,
        memories: Sequence[RetrievedMemory],
        thread_id: str,
        *,
        tags: Sequence[str] = (),
    ) -> int:
        return 0


class VectorMemoryBackend(MemoryBackend):
    """Embedding-indexed memory stored next to the thread tables."""

    enabled = True

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        embedder: Embedder,
        vector_store: Optional[VectorStore] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._embedder = embedder
        self._vector_store = vector_store or SQLVectorStore()

    async def retrieve_relevant_memories(
        self,
        query: str,
        thread_id: str,
        *,
        limit: int,
        include_global: bool = False,
    ) -> list[RetrievedMemory]:
        cleaned_query = query.strip()
        if not cleaned_query or limit <= 0:
            return []
        try:
            query_embedding = await self._embedder.embed_query(cleaned_query)
        except EmbeddingError as exc:
            logger.warning("Memory retrieval skipped because query embedding failed: %s", exc)
            return []

        async with self._sessionmaker() as db:
            results = await self._vector_store.search(
                db=db,
                thread_id=None if include_global else thread_id,
                query_embedding=query_embedding,
                limit=limit,
            )
        return [_to_retrieved(result) for result in results]

    async def get_conversation_history(self, thread_id: str) -> list[RetrievedMemory]:
        async with self._sessionmaker() as db:
            items = await self._vector_store.list_thread_items(db=db, thread_id=thread_id)
        return [_item_to_retrieved(item) for item in items]

    async def store_conversation_memory(
        self,
        memories: Sequence[RetrievedMemory],
        thread_id: str,
        *,
        tags: Sequence[str] = (),
    ) -> int:
        payloads = _build_payloads(memories, thread_id, tags)
        if not payloads:
            return 0
        try:
            embeddings = await self._embedder.embed_texts([item.content for item in payloads])
        except EmbeddingError as exc:
            logger.warning("Memory indexing skipped because embedding failed: %s", exc)
            return 0
        if len(embeddings) != len(payloads):
            logger.warning("Memory indexing skipped due to embedding count mismatch")
            return 0

        async with self._db_context() as db:
            for payload, embedding in zip(payloads, embeddings):
                await self._vector_store.upsert_item(
                    db=db,
                    item=payload,
                    embedding=embedding,
                    embed_provider=self._embedder.provider,
                    embed_model=self._embedder.model_name,
                )
        return len(payloads)

    @asynccontextmanager
    async def _db_context(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as local_db:
            async with local_db.begin():
                yield local_db


def memories_from_messages(messages: Iterable[ThreadMessage]) -> list[RetrievedMemory]:
    """Project persisted thread messages into storable memories."""

    memories: list[RetrievedMemory] = []
    for message in messages:
        if message.is_deleted:
            continue
        metadata = message.message_metadata or {}
        memories.append(
            RetrievedMemory(
                content=message.content,
                relevance_score=1.0,
                timestamp=to_epoch_ms(message.created_at),
                message_type=_message_type(message.sender),
                metadata={
                    "thread_id": message.thread_id,
                    "source_message_id": message.id,
                    "sequence_number": message.sequence_number,
                    "importance": metadata.get("importance"),
                },
            )
        )
    return memories


def create_memory_backend(
    *,
    sessionmaker: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> MemoryBackend:
    """Factory for runtime memory mode selection."""

    mode = settings.memory_mode.strip().lower()
    if mode == "off":
        return NoopMemoryBackend()
    if mode != "vector":
        logger.warning("Unknown MEMORY_MODE=%s; fallback to off", mode)
        return NoopMemoryBackend()
    return VectorMemoryBackend(sessionmaker=sessionmaker, embedder=create_embedder(settings))


def _message_type(sender: str) -> str:
    return "human" if sender == MessageSender.HUMAN.value else "ai"


def _build_payloads(
    memories: Sequence[RetrievedMemory], thread_id: str, extra_tags: Sequence[str]
) -> list[MemoryItemPayload]:
    payloads: list[MemoryItemPayload] = []
    for memory in memories:
        content = memory.content.strip()
        if not content:
            continue
        metadata = memory.metadata or {}
        tags = tuple(dict.fromkeys([*(metadata.get("tags") or ()), *extra_tags]))
        importance = metadata.get("importance")
        payloads.append(
            MemoryItemPayload(
                thread_id=thread_id,
                # Only keep the message link when the memory belongs to this thread.
                source_message_id=(
                    metadata.get("source_message_id")
                    if metadata.get("thread_id") in (None, thread_id)
                    else None
                ),
                message_type=memory.message_type,
                content=content,
                content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
                occurred_at=from_epoch_ms(memory.timestamp),
                tags=tags,
                importance=float(importance) if importance is not None else None,
            )
        )
    return payloads


def _to_retrieved(result: MemorySearchResult) -> RetrievedMemory:
    return RetrievedMemory(
        content=result.content,
        relevance_score=result.score,
        timestamp=to_epoch_ms(result.occurred_at),
        message_type=result.message_type,
        metadata={
            "thread_id": result.thread_id,
            "source_message_id": result.source_message_id,
            "tags": list(result.tags),
            "importance": result.importance,
        },
    )


def _item_to_retrieved(item: MemoryItem) -> RetrievedMemory:
    return RetrievedMemory(
        content=item.content,
        relevance_score=1.0,
        timestamp=to_epoch_ms(item.occurred_at),
        message_type=item.message_type,
        metadata={
            "thread_id": item.thread_id,
            "source_message_id": item.source_message_id,
            "tags": list(item.tags or []),
            "importance": item.importance,
        },
    )
