from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadline.core.errors import AccessDeniedError, ConversationStateError, ErrorCode
from threadline.db.models import ConversationThread
from threadline.memory.backend import MemoryBackend
from threadline.memory.types import (
    AccessRequest,
    AccessResult,
    AccessType,
    AuditEntry,
    CrossThreadContext,
    IsolationLevel,
    MemoryScope,
    RetrievedMemory,
    SharedMemoryPool,
    SyncDirection,
    SyncFilter,
    SyncOptions,
    SyncResult,
)
from threadline.repos.thread_repo import ThreadRepo
from threadline.utils.time_utils import ensure_utc, from_epoch_ms, utc_now

logger = logging.getLogger(__name__)

READ_ONLY_DISCOUNT = 0.8
CATEGORY_DISCOUNT = 0.7
HIERARCHY_DISCOUNT = 0.9
SHARED_CONTEXT_DISCOUNT = 0.7
CROSS_THREAD_PRIMARY_LIMIT = 5

DENIED_NO_RELATIONSHIP = "No sharing relationship exists between threads"
DENIED_PARENT_CHILD_WRITE = "Write access denied for parent-child relationship"
DENIED_CATEGORY_WRITE = "Write access denied for category-scoped sharing"


@dataclass(frozen=True)
class _CachedDecision:
    result: AccessResult
    expires_at: float


class MemorySharingService:
    """Decide and apply cross-thread memory access.

    Access decisions are cached per ``(source, target, access_type)`` for a fixed
    TTL; staleness up to the TTL is accepted. Pools live in process memory.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        memory_backend: Optional[MemoryBackend],
        *,
        cache_ttl_sec: float = 300.0,
        ownership_write_trust: bool = False,
        default_limit: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._memory_backend = memory_backend
        self._cache_ttl_sec = cache_ttl_sec
        self._ownership_write_trust = ownership_write_trust
        self._default_limit = default_limit
        self._clock = clock
        self._access_cache: dict[tuple[str, str, AccessType], _CachedDecision] = {}
        self._pools: dict[str, SharedMemoryPool] = {}
        self._sync_in_flight: set[tuple[str, str]] = set()

    async def check_access(self, request: AccessRequest) -> AccessResult:
        """First-match decision: same thread, lineage, category, shared pool."""

        access_type = AccessType(request.access_type)
        key = (request.source_thread_id, request.target_thread_id, access_type)
        cached = self._access_cache.get(key)
        if cached is not None:
            if cached.expires_at > self._clock():
                return cached.result
            del self._access_cache[key]

        if request.source_thread_id == request.target_thread_id:
            return self._remember_decision(key, self._decide(request, True, None, "same_thread"))

        async with self._sessionmaker() as db:
            threads = await ThreadRepo(db).get_threads(
                [request.source_thread_id, request.target_thread_id]
            )
        source = threads.get(request.source_thread_id)
        target = threads.get(request.target_thread_id)
        if source is None or target is None:
            # Not cached: the thread may be created a moment later.
            return self._decide(request, False, "Thread not found", "missing_thread")

        if _is_parent_child(source, target):
            if access_type is AccessType.READ:
                result = self._decide(request, True, None, "hierarchy")
            else:
                result = self._decide(request, False, DENIED_PARENT_CHILD_WRITE, "hierarchy")
        elif source.category_id and source.category_id == target.category_id:
            if access_type is AccessType.READ:
                result = self._decide(request, True, None, "category")
            elif self._ownership_write_trust and access_type is AccessType.WRITE:
                result = self._decide(request, True, None, "ownership_trust")
            else:
                result = self._decide(request, False, DENIED_CATEGORY_WRITE, "category")
        elif self._share_live_pool(source.id, target.id):
            result = self._decide(request, True, None, "shared_pool")
        else:
            result = self._decide(request, False, DENIED_NO_RELATIONSHIP, "none")
        return self._remember_decision(key, result)

    def clear_access_cache(self) -> None:
        self._access_cache.clear()

    async def create_memory_scope(
        self,
        thread_id: str,
        isolation_level: IsolationLevel,
        *,
        allowed_thread_ids: Sequence[str] = (),
        allowed_category_ids: Sequence[str] = (),
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> MemoryScope:
        """Build a scope, filling allow-lists the isolation level implies."""

        level = IsolationLevel(isolation_level)
        thread_ids = list(allowed_thread_ids)
        category_ids = list(allowed_category_ids)
        if level in (IsolationLevel.HIERARCHY_SCOPED, IsolationLevel.CATEGORY_SCOPED):
            async with self._sessionmaker() as db:
                repo = ThreadRepo(db)
                thread = await repo.get_thread(thread_id)
                if thread is None:
                    raise ConversationStateError(
                        ErrorCode.THREAD_NOT_FOUND,
                        "Thread not found",
                        thread_id=thread_id,
                        operation="create_memory_scope",
                    )
                if level is IsolationLevel.HIERARCHY_SCOPED:
                    related = [child.id for child in await repo.list_children(thread_id)]
                    if thread.parent_thread_id:
                        related.insert(0, thread.parent_thread_id)
                    thread_ids = _unique([*thread_ids, *related])
                elif thread.category_id:
                    category_ids = _unique([*category_ids, thread.category_id])

        return MemoryScope(
            thread_id=thread_id,
            isolation_level=level,
            allowed_thread_ids=tuple(tid for tid in thread_ids if tid != thread_id),
            allowed_category_ids=tuple(category_ids),
            user_id=user_id,
            role=role,
            valid_from=valid_from,
            valid_until=valid_until,
        )

    async def retrieve_with_isolation(
        self, query: str, scope: MemoryScope, limit: Optional[int] = None
    ) -> list[RetrievedMemory]:
        """Own-thread memories first, then whatever the isolation level allows."""

        limit = self._default_limit if limit is None else limit
        backend = self._memory_backend
        if backend is None or limit <= 0:
            return []

        if scope.isolation_level is IsolationLevel.UNRESTRICTED:
            memories = await backend.retrieve_relevant_memories(
                query, scope.thread_id, limit=limit, include_global=True
            )
            return _dedupe_and_rank(memories, limit)

        memories = list(
            await backend.retrieve_relevant_memories(query, scope.thread_id, limit=limit)
        )
        if scope.isolation_level is IsolationLevel.STRICT:
            return _dedupe_and_rank(memories, limit)
        if not scope.is_within_window(utc_now()):
            logger.debug("Memory scope for %s is outside its validity window", scope.thread_id)
            return _dedupe_and_rank(memories, limit)

        for thread_id, budget, factor in await self._fan_out_plan(scope, limit):
            related = await backend.retrieve_relevant_memories(query, thread_id, limit=budget)
            memories.extend(memory.with_relevance(factor) for memory in related)
        return _dedupe_and_rank(memories, limit)

    async def create_shared_pool(
        self,
        name: str,
        thread_ids: Sequence[str],
        *,
        isolation_level: IsolationLevel = IsolationLevel.EXPLICIT_SHARED,
        purpose: Optional[str] = None,
        tags: Sequence[str] = (),
        expires_at: Optional[datetime] = None,
    ) -> SharedMemoryPool:
        members = _unique(thread_ids)
        async with self._sessionmaker() as db:
            found = await ThreadRepo(db).get_threads(members)
        for thread_id in members:
            if thread_id not in found:
                raise ConversationStateError(
                    ErrorCode.THREAD_NOT_FOUND,
                    f"Thread {thread_id} not found",
                    thread_id=thread_id,
                    operation="create_shared_pool",
                )
        pool = SharedMemoryPool(
            id=uuid.uuid4().hex,
            name=name,
            thread_ids=frozenset(members),
            isolation_level=IsolationLevel(isolation_level),
            created_at=utc_now(),
            purpose=purpose,
            tags=tuple(tags),
            expires_at=ensure_utc(expires_at) if expires_at else None,
        )
        self._pools[pool.id] = pool
        self.clear_access_cache()
        logger.info("Created shared memory pool %s with %s threads", pool.id, len(members))
        return pool

    def list_pools(self) -> list[SharedMemoryPool]:
        return sorted(self._pools.values(), key=lambda pool: pool.created_at)

    def delete_pool(self, pool_id: str) -> bool:
        if self._pools.pop(pool_id, None) is None:
            return False
        self.clear_access_cache()
        return True

    async def synchronize(
        self,
        source_thread_id: str,
        target_thread_id: str,
        options: Optional[SyncOptions] = None,
    ) -> SyncResult:
        """Copy memories between two threads; a concurrent duplicate is a no-op."""

        options = options or SyncOptions()
        pair = (source_thread_id, target_thread_id)
        if pair in self._sync_in_flight:
            logger.info("Synchronization %s -> %s already running", *pair)
            return SyncResult(synchronized=0, conflicts=0)

        direction = SyncDirection(options.direction)
        access_type = AccessType.WRITE if direction is SyncDirection.PUSH else AccessType.READ
        self._sync_in_flight.add(pair)
        try:
            decision = await self.check_access(
                AccessRequest(source_thread_id, target_thread_id, access_type)
            )
            if not decision.granted:
                raise AccessDeniedError(
                    source_thread_id, target_thread_id, decision.reason or DENIED_NO_RELATIONSHIP
                )
            backend = self._memory_backend
            if backend is None:
                return SyncResult(synchronized=0, conflicts=0)

            synchronized = 0
            if direction in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL):
                synchronized += await self._copy_memories(
                    backend, target_thread_id, source_thread_id, options.filter
                )
            if direction in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL):
                synchronized += await self._copy_memories(
                    backend, source_thread_id, target_thread_id, options.filter
                )
        finally:
            self._sync_in_flight.discard(pair)
        return SyncResult(synchronized=synchronized, conflicts=0)

    async def get_cross_thread_context(
        self, thread_id: str, query: str, scope: MemoryScope
    ) -> CrossThreadContext:
        """Own memories plus a small sample from each related thread."""

        backend = self._memory_backend
        if backend is None:
            return CrossThreadContext(primary=[], shared=[], summaries=[])

        primary = await self.retrieve_with_isolation(query, scope, CROSS_THREAD_PRIMARY_LIMIT)
        if scope.isolation_level is IsolationLevel.STRICT:
            return CrossThreadContext(primary=primary, shared=[], summaries=[])

        related_ids = _unique(
            [*scope.allowed_thread_ids, *await self._category_peers(scope)]
        )
        shared: list[RetrievedMemory] = []
        summaries: list[str] = []
        if related_ids:
            async with self._sessionmaker() as db:
                related = await ThreadRepo(db).get_threads(related_ids)
            for related_id in related_ids:
                if related_id == thread_id:
                    continue
                for memory in await backend.retrieve_relevant_memories(
                    query, related_id, limit=2
                ):
                    shared.append(
                        memory.with_relevance(SHARED_CONTEXT_DISCOUNT).with_metadata(
                            source_thread_id=related_id
                        )
                    )
                thread = related.get(related_id)
                if thread is not None and thread.summary:
                    summaries.append(thread.summary)
        return CrossThreadContext(primary=primary, shared=shared, summaries=summaries)

    async def _fan_out_plan(
        self, scope: MemoryScope, limit: int
    ) -> list[tuple[str, int, float]]:
        level = scope.isolation_level
        allowed = [tid for tid in scope.allowed_thread_ids if tid != scope.thread_id]
        if level is IsolationLevel.READ_ONLY:
            return [(tid, max(1, limit // 2), READ_ONLY_DISCOUNT) for tid in allowed]
        if level is IsolationLevel.HIERARCHY_SCOPED:
            return [(tid, max(1, limit // 2), HIERARCHY_DISCOUNT) for tid in allowed]
        if level is IsolationLevel.CATEGORY_SCOPED:
            peers = await self._category_peers(scope)
            return [(tid, max(1, limit // 3), CATEGORY_DISCOUNT) for tid in peers]
        if level is IsolationLevel.EXPLICIT_SHARED and allowed:
            budget = max(1, limit // len(allowed))
            return [(tid, budget, 1.0) for tid in allowed]
        return []

    async def _category_peers(self, scope: MemoryScope) -> list[str]:
        if not scope.allowed_category_ids:
            return []
        peers: list[str] = []
        async with self._sessionmaker() as db:
            repo = ThreadRepo(db)
            for category_id in scope.allowed_category_ids:
                peers.extend(thread.id for thread in await repo.list_by_category(category_id))
        return [tid for tid in _unique(peers) if tid != scope.thread_id]

    async def _copy_memories(
        self,
        backend: MemoryBackend,
        from_thread_id: str,
        to_thread_id: str,
        sync_filter: SyncFilter,
    ) -> int:
        history = await backend.get_conversation_history(from_thread_id)
        selected = [memory for memory in history if _passes_filter(memory, sync_filter)]
        if not selected:
            return 0
        return await backend.store_conversation_memory(
            selected, to_thread_id, tags=["synchronized", f"from_{from_thread_id}"]
        )

    def _share_live_pool(self, first: str, second: str) -> bool:
        now = utc_now()
        return any(
            pool.is_live(now) and first in pool.thread_ids and second in pool.thread_ids
            for pool in self._pools.values()
        )

    def _remember_decision(
        self, key: tuple[str, str, AccessType], result: AccessResult
    ) -> AccessResult:
        self._access_cache[key] = _CachedDecision(
            result=result, expires_at=self._clock() + self._cache_ttl_sec
        )
        return result

    @staticmethod
    def _decide(
        request: AccessRequest, granted: bool, reason: Optional[str], relationship: str
    ) -> AccessResult:
        metadata: dict[str, Any] = {
            "source_thread_id": request.source_thread_id,
            "target_thread_id": request.target_thread_id,
            "access_type": AccessType(request.access_type).value,
            "relationship": relationship,
        }
        return AccessResult(
            granted=granted,
            reason=reason,
            audit_entry=AuditEntry(
                timestamp=int(time.time() * 1000),
                action="memory_access_check",
                result="granted" if granted else "denied",
                metadata=metadata,
            ),
        )


def _is_parent_child(first: ConversationThread, second: ConversationThread) -> bool:
    return first.parent_thread_id == second.id or second.parent_thread_id == first.id


def _passes_filter(memory: RetrievedMemory, sync_filter: SyncFilter) -> bool:
    metadata = memory.metadata or {}
    if sync_filter.tags:
        tags = set(metadata.get("tags") or ())
        if not tags.intersection(sync_filter.tags):
            return False
    if sync_filter.time_range is not None:
        start, end = (ensure_utc(value) for value in sync_filter.time_range)
        if not start <= from_epoch_ms(memory.timestamp) <= end:
            return False
    if sync_filter.importance is not None:
        importance = metadata.get("importance")
        if importance is None or float(importance) < sync_filter.importance:
            return False
    return True


def _dedupe_and_rank(memories: Sequence[RetrievedMemory], limit: int) -> list[RetrievedMemory]:
    seen: set[tuple[str, int]] = set()
    unique: list[RetrievedMemory] = []
    for memory in memories:
        key = (memory.content, memory.timestamp)
        if key in seen:
            continue
        seen.add(key)
        unique.append(memory)
    unique.sort(key=lambda memory: memory.relevance_score, reverse=True)
    return unique[:limit]


def _unique(values: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(values))


def get_memory_sharing_service(request: Request) -> MemorySharingService:
    """Dependency to access memory sharing service from app state."""

    return request.app.state.memory_sharing_service
