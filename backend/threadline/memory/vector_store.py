from __future__ import annotations

import json
import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from threadline.db.models import MemoryItem
from threadline.memory.types import MemoryItemPayload, MemorySearchResult
from threadline.repos.memory_repo import MemoryRepo
from threadline.utils.time_utils import ensure_utc


class VectorStore(ABC):
    """Abstract vector-memory storage."""

    @abstractmethod
    async def upsert_item(
        self,
        *,
        db: AsyncSession,
        item: MemoryItemPayload,
        embedding: Sequence[float],
        embed_provider: str,
        embed_model: str,
    ) -> None:
        """Insert or update one memory item and its vector."""

    @abstractmethod
    async def search(
        self,
        *,
        db: AsyncSession,
        thread_id: Optional[str],
        query_embedding: Sequence[float],
        limit: int,
    ) -> list[MemorySearchResult]:
        """Top-k search in one thread, or across all threads when thread_id is None."""

    @abstractmethod
    async def list_thread_items(self, *, db: AsyncSession, thread_id: str) -> list[MemoryItem]:
        """Return every active item stored for a thread, oldest first."""


class SQLVectorStore(VectorStore):
    """Vector store on the application database with in-process cosine scoring."""

    _CANDIDATE_MULTIPLIER = 8
    _MIN_CANDIDATES = 64

    async def upsert_item(
        self,
        *,
        db: AsyncSession,
        item: MemoryItemPayload,
        embedding: Sequence[float],
        embed_provider: str,
        embed_model: str,
    ) -> None:
        vector = [float(value) for value in embedding]
        norm = math.sqrt(sum(value * value for value in vector))
        repo = MemoryRepo(db)
        memory_item = await repo.upsert_memory_item(
            item_id=uuid.uuid4().hex,
            thread_id=item.thread_id,
            source_message_id=item.source_message_id,
            message_type=item.message_type,
            content=item.content,
            content_hash=item.content_hash,
            tags=item.tags,
            importance=item.importance,
            occurred_at=item.occurred_at,
        )
        await repo.upsert_embedding(
            embedding_id=uuid.uuid4().hex,
            memory_item_id=memory_item.id,
            provider=embed_provider,
            model_name=embed_model,
            dim=len(vector),
            vector_json=json.dumps(vector, separators=(",", ":")),
            vector_norm=norm if norm > 0 else 1.0,
        )

    async def search(
        self,
        *,
        db: AsyncSession,
        thread_id: Optional[str],
        query_embedding: Sequence[float],
        limit: int,
    ) -> list[MemorySearchResult]:
        if limit <= 0:
            return []
        query = [float(value) for value in query_embedding]
        query_norm = math.sqrt(sum(value * value for value in query))
        if query_norm <= 0:
            return []

        candidate_limit = max(limit * self._CANDIDATE_MULTIPLIER, self._MIN_CANDIDATES)
        rows = await MemoryRepo(db).list_active_vectors(thread_id=thread_id, limit=candidate_limit)

        scored: list[MemorySearchResult] = []
        for item, embedding in rows:
            try:
                candidate = [float(value) for value in json.loads(embedding.vector_json)]
            except (TypeError, ValueError):
                continue
            if len(candidate) != len(query):
                continue
            score = _cosine_similarity(query, query_norm, candidate, float(embedding.vector_norm))
            scored.append(
                MemorySearchResult(
                    item_id=item.id,
                    thread_id=item.thread_id,
                    source_message_id=item.source_message_id,
                    message_type=item.message_type,
                    content=item.content,
                    tags=tuple(item.tags or ()),
                    importance=item.importance,
                    occurred_at=ensure_utc(item.occurred_at),
                    score=max(0.0, min(1.0, score)),
                )
            )

        scored.sort(key=lambda row: (row.score, row.occurred_at), reverse=True)
        return scored[:limit]

    async def list_thread_items(self, *, db: AsyncSession, thread_id: str) -> list[MemoryItem]:
        return await MemoryRepo(db).list_thread_items(thread_id)


def _cosine_similarity(
    left: list[float], left_norm: float, right: list[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0:
        return 0.0
    dot = sum(l_value * r_value for l_value, r_value in zip(left, right))
    return dot / (left_norm * right_norm)
