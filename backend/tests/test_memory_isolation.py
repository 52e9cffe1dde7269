from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import RecordingMemoryBackend

from threadline.core.errors import AccessDeniedError, ConversationStateError, ErrorCode
from threadline.memory.types import (
    IsolationLevel,
    MemoryScope,
    RetrievedMemory,
    SyncDirection,
    SyncFilter,
    SyncOptions,
)
from threadline.repos.thread_repo import ThreadRepo
from threadline.services.memory_sharing_service import MemorySharingService
from threadline.utils.time_utils import to_epoch_ms, utc_now


def _memory(content, score=1.0, timestamp=1_000, **metadata):
    return RetrievedMemory(
        content=content,
        relevance_score=score,
        timestamp=timestamp,
        message_type="human",
        metadata=metadata,
    )


async def _make_thread(sessionmaker, thread_id, **fields):
    async with sessionmaker() as db:
        async with db.begin():
            await ThreadRepo(db).create_thread(thread_id, title=thread_id, **fields)


@pytest.mark.anyio
async def test_strict_scope_reads_only_own_thread(services, memory_backend):
    memory_backend.add("a", _memory("own"))
    memory_backend.add("b", _memory("other"))
    scope = MemoryScope("a", IsolationLevel.STRICT, allowed_thread_ids=("b",))

    memories = await services.sharing_service.retrieve_with_isolation("q", scope)

    assert [memory.content for memory in memories] == ["own"]
    assert [call["thread_id"] for call in memory_backend.calls] == ["a"]


@pytest.mark.anyio
async def test_unrestricted_scope_makes_single_global_call(services, memory_backend):
    memory_backend.global_memories = [_memory("x", 0.3), _memory("y", 0.9, timestamp=2)]
    scope = MemoryScope("a", IsolationLevel.UNRESTRICTED)

    memories = await services.sharing_service.retrieve_with_isolation("q", scope, limit=5)

    assert [memory.content for memory in memories] == ["y", "x"]
    assert memory_backend.calls == [
        {"query": "q", "thread_id": "a", "limit": 5, "include_global": True}
    ]


@pytest.mark.anyio
async def test_read_only_scope_discounts_other_threads(services, memory_backend):
    memory_backend.add("a", _memory("own", 0.5))
    memory_backend.add("b", _memory("borrowed", 0.9, timestamp=2))
    scope = MemoryScope("a", IsolationLevel.READ_ONLY, allowed_thread_ids=("b",))

    memories = await services.sharing_service.retrieve_with_isolation("q", scope, limit=10)

    assert [memory.content for memory in memories] == ["borrowed", "own"]
    assert memories[0].relevance_score == pytest.approx(0.72)
    assert memory_backend.calls[1] == {
        "query": "q",
        "thread_id": "b",
        "limit": 5,
        "include_global": False,
    }


@pytest.mark.anyio
async def test_explicit_shared_splits_budget_without_discount(services, memory_backend):
    memory_backend.add("b", _memory("from b", 0.6, timestamp=2))
    memory_backend.add("c", _memory("from c", 0.4, timestamp=3))
    scope = MemoryScope("a", IsolationLevel.EXPLICIT_SHARED, allowed_thread_ids=("b", "c"))

    memories = await services.sharing_service.retrieve_with_isolation("q", scope, limit=10)

    assert [(memory.content, memory.relevance_score) for memory in memories] == [
        ("from b", 0.6),
        ("from c", 0.4),
    ]
    assert [call["limit"] for call in memory_backend.calls] == [10, 5, 5]


@pytest.mark.anyio
async def test_hierarchy_scope_is_filled_from_lineage(services, sessionmaker, memory_backend):
    await _make_thread(sessionmaker, "parent")
    await _make_thread(sessionmaker, "child", parent_thread_id="parent")
    await _make_thread(sessionmaker, "grandchild", parent_thread_id="child")
    memory_backend.add("parent", _memory("from parent", 1.0, timestamp=2))

    scope = await services.sharing_service.create_memory_scope(
        "child", IsolationLevel.HIERARCHY_SCOPED
    )
    memories = await services.sharing_service.retrieve_with_isolation("q", scope, limit=4)

    assert scope.allowed_thread_ids == ("parent", "grandchild")
    assert memories[0].relevance_score == pytest.approx(0.9)
    assert [call["limit"] for call in memory_backend.calls] == [4, 2, 2]


@pytest.mark.anyio
async def test_category_scope_reads_category_peers(services, sessionmaker, memory_backend):
    category = await services.thread_service.create_category("research")
    await _make_thread(sessionmaker, "c1", category_id=category.id)
    await _make_thread(sessionmaker, "c2", category_id=category.id)
    await _make_thread(sessionmaker, "outside")
    memory_backend.add("c2", _memory("peer note", 1.0, timestamp=2))
    memory_backend.add("outside", _memory("hidden", 1.0, timestamp=3))

    scope = await services.sharing_service.create_memory_scope(
        "c1", IsolationLevel.CATEGORY_SCOPED
    )
    memories = await services.sharing_service.retrieve_with_isolation("q", scope, limit=9)

    assert scope.allowed_category_ids == (category.id,)
    assert [memory.content for memory in memories] == ["peer note"]
    assert memories[0].relevance_score == pytest.approx(0.7)
    assert [(call["thread_id"], call["limit"]) for call in memory_backend.calls] == [
        ("c1", 9),
        ("c2", 3),
    ]


@pytest.mark.anyio
async def test_scoped_levels_need_an_existing_thread(services):
    with pytest.raises(ConversationStateError) as excinfo:
        await services.sharing_service.create_memory_scope(
            "missing", IsolationLevel.HIERARCHY_SCOPED
        )
    assert excinfo.value.code is ErrorCode.THREAD_NOT_FOUND


@pytest.mark.anyio
async def test_scope_excludes_own_thread_from_allow_list(services):
    scope = await services.sharing_service.create_memory_scope(
        "a", IsolationLevel.EXPLICIT_SHARED, allowed_thread_ids=["a", "b"]
    )

    assert scope.allowed_thread_ids == ("b",)


@pytest.mark.anyio
async def test_duplicates_keep_first_occurrence_and_results_are_truncated(
    services, memory_backend
):
    memory_backend.add("a", _memory("shared fact", 0.4, timestamp=7), _memory("own", 0.3))
    memory_backend.add(
        "b",
        _memory("shared fact", 1.0, timestamp=7),
        _memory("extra one", 0.2, timestamp=8),
        _memory("extra two", 0.1, timestamp=9),
    )
    scope = MemoryScope("a", IsolationLevel.EXPLICIT_SHARED, allowed_thread_ids=("b",))

    memories = await services.sharing_service.retrieve_with_isolation("q", scope, limit=3)

    assert [(memory.content, memory.relevance_score) for memory in memories] == [
        ("shared fact", 0.4),
        ("own", 0.3),
        ("extra one", 0.2),
    ]


@pytest.mark.anyio
async def test_scope_outside_validity_window_reads_only_own(services, memory_backend):
    memory_backend.add("a", _memory("own"))
    memory_backend.add("b", _memory("other", timestamp=2))
    scope = MemoryScope(
        "a",
        IsolationLevel.READ_ONLY,
        allowed_thread_ids=("b",),
        valid_until=utc_now() - timedelta(hours=1),
    )

    memories = await services.sharing_service.retrieve_with_isolation("q", scope)

    assert [memory.content for memory in memories] == ["own"]


@pytest.mark.anyio
async def test_without_backend_everything_is_empty(sessionmaker):
    sharing = MemorySharingService(sessionmaker, None)
    scope = MemoryScope("a", IsolationLevel.UNRESTRICTED)

    assert await sharing.retrieve_with_isolation("q", scope) == []
    context = await sharing.get_cross_thread_context("a", "q", scope)
    assert (context.primary, context.shared, context.summaries) == ([], [], [])


@pytest.mark.anyio
async def test_pool_lifecycle(services, sessionmaker):
    sharing = services.sharing_service
    await _make_thread(sessionmaker, "a")
    await _make_thread(sessionmaker, "b")

    with pytest.raises(ConversationStateError) as excinfo:
        await sharing.create_shared_pool("broken", ["a", "ghost"])
    assert excinfo.value.code is ErrorCode.THREAD_NOT_FOUND
    assert sharing.list_pools() == []

    pool = await sharing.create_shared_pool("team", ["a", "b", "a"], purpose="planning")
    assert pool.thread_ids == frozenset({"a", "b"})
    assert pool.isolation_level is IsolationLevel.EXPLICIT_SHARED
    assert sharing.list_pools() == [pool]

    assert sharing.delete_pool(pool.id) is True
    assert sharing.delete_pool(pool.id) is False
    assert sharing.list_pools() == []


@pytest.fixture
async def lineage(sessionmaker):
    await _make_thread(sessionmaker, "parent")
    await _make_thread(sessionmaker, "child", parent_thread_id="parent")


@pytest.mark.anyio
async def test_pull_copies_target_memories_into_source(services, memory_backend, lineage):
    memory_backend.add("parent", _memory("p1"), _memory("p2", timestamp=2))

    result = await services.sharing_service.synchronize(
        "child", "parent", SyncOptions(direction=SyncDirection.PULL)
    )

    assert (result.synchronized, result.conflicts) == (2, 0)
    [record] = memory_backend.stored
    assert record["thread_id"] == "child"
    assert record["tags"] == ["synchronized", "from_parent"]


@pytest.mark.anyio
async def test_bidirectional_sync_copies_both_ways(services, memory_backend, lineage):
    memory_backend.add("parent", _memory("p1"))
    memory_backend.add("child", _memory("c1", timestamp=2))

    result = await services.sharing_service.synchronize("child", "parent")

    # The pull runs first, so the push carries the pulled memory back as well.
    assert result.synchronized == 3
    assert [(record["thread_id"], record["tags"][1]) for record in memory_backend.stored] == [
        ("child", "from_parent"),
        ("parent", "from_child"),
    ]
    assert [memory.content for memory in memory_backend.stored[1]["memories"]] == ["c1", "p1"]


@pytest.mark.anyio
async def test_push_between_parent_and_child_is_denied(services, lineage):
    with pytest.raises(AccessDeniedError):
        await services.sharing_service.synchronize(
            "child", "parent", SyncOptions(direction=SyncDirection.PUSH)
        )


@pytest.mark.anyio
async def test_pool_does_not_open_push_between_parent_and_child(
    services, memory_backend, lineage
):
    memory_backend.add("child", _memory("c1"))
    await services.sharing_service.create_shared_pool("lineage", ["child", "parent"])

    with pytest.raises(AccessDeniedError):
        await services.sharing_service.synchronize(
            "child", "parent", SyncOptions(direction=SyncDirection.PUSH)
        )
    assert memory_backend.stored == []


@pytest.mark.anyio
async def test_push_allowed_inside_pool_for_unrelated_threads(
    services, sessionmaker, memory_backend
):
    await _make_thread(sessionmaker, "x")
    await _make_thread(sessionmaker, "y")
    memory_backend.add("x", _memory("x1"))
    await services.sharing_service.create_shared_pool("team", ["x", "y"])

    result = await services.sharing_service.synchronize(
        "x", "y", SyncOptions(direction=SyncDirection.PUSH)
    )

    assert result.synchronized == 1
    assert memory_backend.stored[0]["thread_id"] == "y"


@pytest.mark.anyio
async def test_sync_filters_by_tags_importance_and_time(services, memory_backend, lineage):
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    memory_backend.add(
        "parent",
        _memory("tagged", timestamp=to_epoch_ms(base), tags=["plan"], importance=0.9),
        _memory("untagged", timestamp=to_epoch_ms(base) + 1, importance=0.9),
        _memory("unimportant", timestamp=to_epoch_ms(base) + 2, tags=["plan"], importance=0.1),
        _memory(
            "too old",
            timestamp=to_epoch_ms(base - timedelta(days=30)),
            tags=["plan"],
            importance=0.9,
        ),
    )
    sync_filter = SyncFilter(
        tags=("plan",),
        time_range=(base - timedelta(days=1), base + timedelta(days=1)),
        importance=0.5,
    )

    result = await services.sharing_service.synchronize(
        "child", "parent", SyncOptions(direction=SyncDirection.PULL, filter=sync_filter)
    )

    assert result.synchronized == 1
    assert [memory.content for memory in memory_backend.stored[0]["memories"]] == ["tagged"]


class BlockingMemoryBackend(RecordingMemoryBackend):
    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_conversation_history(self, thread_id):
        self.entered.set()
        await self.release.wait()
        return await super().get_conversation_history(thread_id)


@pytest.mark.anyio
async def test_concurrent_duplicate_sync_is_a_noop(sessionmaker, lineage):
    backend = BlockingMemoryBackend()
    backend.add("parent", _memory("p1"))
    sharing = MemorySharingService(sessionmaker, backend)

    first = asyncio.create_task(
        sharing.synchronize("child", "parent", SyncOptions(direction=SyncDirection.PULL))
    )
    await backend.entered.wait()

    duplicate = await sharing.synchronize(
        "child", "parent", SyncOptions(direction=SyncDirection.PULL)
    )
    backend.release.set()

    assert (duplicate.synchronized, duplicate.conflicts) == (0, 0)
    assert (await first).synchronized == 1
    again = await sharing.synchronize("child", "parent", SyncOptions(direction=SyncDirection.PULL))
    assert again.synchronized == 1


@pytest.mark.anyio
async def test_cross_thread_context(services, sessionmaker, memory_backend):
    await _make_thread(sessionmaker, "a")
    await _make_thread(sessionmaker, "b", summary="Notes about the budget")
    memory_backend.add("a", *(_memory(f"own {index}", timestamp=index) for index in range(7)))
    memory_backend.add("b", *(_memory(f"b {index}", 0.5, timestamp=index) for index in range(4)))
    scope = MemoryScope("a", IsolationLevel.EXPLICIT_SHARED, allowed_thread_ids=("b",))

    context = await services.sharing_service.get_cross_thread_context("a", "q", scope)

    assert len(context.primary) == 5
    assert [memory.content for memory in context.shared] == ["b 0", "b 1"]
    assert context.shared[0].relevance_score == pytest.approx(0.35)
    assert context.shared[0].metadata["source_thread_id"] == "b"
    assert context.summaries == ["Notes about the budget"]


@pytest.mark.anyio
async def test_strict_cross_thread_context_stays_in_own_thread(
    services, sessionmaker, memory_backend
):
    await _make_thread(sessionmaker, "a")
    await _make_thread(sessionmaker, "b", summary="Private notes of b")
    memory_backend.add("a", _memory("own"))
    memory_backend.add("b", _memory("b private"))
    scope = MemoryScope("a", IsolationLevel.STRICT, allowed_thread_ids=("b",))

    context = await services.sharing_service.get_cross_thread_context("a", "q", scope)

    assert [memory.content for memory in context.primary] == ["own"]
    assert context.shared == []
    assert context.summaries == []
    assert [call["thread_id"] for call in memory_backend.calls] == ["a"]
