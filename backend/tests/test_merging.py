from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from threadline.core.errors import ConversationStateError, ErrorCode
from threadline.db.models import ThreadMessage, ThreadStatus
from threadline.repos.message_repo import MessageRepo
from threadline.repos.thread_repo import ThreadRepo
from threadline.services.branch_service import MergeOptions, MergeStrategy
from threadline.utils.time_utils import ensure_utc


async def _messages(sessionmaker, thread_id):
    async with sessionmaker() as db:
        return await MessageRepo(db).list_active_messages(thread_id)


async def _thread(sessionmaker, thread_id):
    async with sessionmaker() as db:
        return await ThreadRepo(db).get_thread(thread_id)


async def _set_created_at(sessionmaker, message_id, value):
    async with sessionmaker() as db:
        async with db.begin():
            await db.execute(
                update(ThreadMessage).where(ThreadMessage.id == message_id).values(created_at=value)
            )


@pytest.mark.anyio
async def test_sequential_merge_appends_sources_in_order(services, seed_thread, sessionmaker):
    await seed_thread("target", "t1", "t2")
    await seed_thread("s1", "a1", "a2", "a3")
    await seed_thread("s2", "b1", "b2")

    merged = await services.branch_service.merge_threads("target", ["s1", "s2"])

    rows = await _messages(sessionmaker, "target")
    assert [row.content for row in rows] == ["t1", "t2", "a1", "a2", "a3", "b1", "b2"]
    assert [row.sequence_number for row in rows] == list(range(1, 8))
    assert rows[2].message_metadata["merged_from_thread"] == "s1"
    assert rows[5].message_metadata["merged_from_thread"] == "s2"
    assert merged.message_count == 7
    assert merged.branch_type == "merged"
    assert "merged" in merged.tags
    assert merged.merge_metadata["source_thread_ids"] == ["s1", "s2"]
    assert merged.merge_metadata["merge_strategy"] == "sequential"
    assert merged.last_message_preview == "b2"


@pytest.mark.anyio
async def test_interleaved_merge_orders_by_creation_time(services, seed_thread, sessionmaker):
    await seed_thread("target", "t1")
    first_ids = await seed_thread("s1", "early", "late")
    second_ids = await seed_thread("s2", "middle")
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await _set_created_at(sessionmaker, first_ids[0], base)
    await _set_created_at(sessionmaker, second_ids[0], base + timedelta(minutes=1))
    await _set_created_at(sessionmaker, first_ids[1], base + timedelta(minutes=2))

    await services.branch_service.merge_threads(
        "target", ["s1", "s2"], MergeOptions(strategy=MergeStrategy.INTERLEAVED)
    )

    rows = await _messages(sessionmaker, "target")
    assert [row.content for row in rows] == ["t1", "early", "middle", "late"]
    assert [row.sequence_number for row in rows] == [1, 2, 3, 4]


@pytest.mark.anyio
async def test_manual_merge_flags_copies_and_keeps_timestamps(services, seed_thread, sessionmaker):
    await seed_thread("target", "t1")
    await seed_thread("s1", "a1", "a2")
    originals = await _messages(sessionmaker, "s1")

    await services.branch_service.merge_threads(
        "target", ["s1"], MergeOptions(strategy=MergeStrategy.MANUAL)
    )

    copies = (await _messages(sessionmaker, "target"))[1:]
    assert [row.content for row in copies] == ["a1", "a2"]
    for copied, original in zip(copies, originals):
        assert copied.message_metadata["requires_manual_ordering"] is True
        assert ensure_utc(copied.created_at) == ensure_utc(original.created_at)


@pytest.mark.anyio
async def test_merge_archives_sources_and_unions_tags(services, sessionmaker):
    await services.thread_service.create_thread(thread_id="target", title="T", tags=["work"])
    await services.thread_service.create_thread(thread_id="s1", title="S", tags=["travel", "work"])

    merged = await services.branch_service.merge_threads("target", ["s1"])

    assert merged.tags == ["work", "travel", "merged"]
    source = await _thread(sessionmaker, "s1")
    assert source.status == ThreadStatus.ARCHIVED.value
    assert source.thread_metadata["merged_into_thread"] == "target"
    assert "merged_at" in source.thread_metadata


@pytest.mark.anyio
async def test_merge_can_leave_sources_active(services, seed_thread, sessionmaker):
    await seed_thread("target", "t1")
    await seed_thread("s1", "a1")

    await services.branch_service.merge_threads(
        "target", ["s1"], MergeOptions(archive_sources=False)
    )

    source = await _thread(sessionmaker, "s1")
    assert source.status == ThreadStatus.ACTIVE.value
    assert "merged_into_thread" not in (source.thread_metadata or {})


@pytest.mark.anyio
@pytest.mark.parametrize(
    "sources",
    [[], ["s1", "s1"], ["target", "s1"]],
    ids=["no-sources", "duplicate-source", "target-as-source"],
)
async def test_invalid_merge_requests(services, sources):
    with pytest.raises(ConversationStateError) as excinfo:
        await services.branch_service.merge_threads("target", sources)

    assert excinfo.value.code is ErrorCode.INVALID_MERGE


@pytest.mark.anyio
async def test_missing_source_aborts_without_partial_copy(services, seed_thread, sessionmaker):
    await seed_thread("target", "t1")
    await seed_thread("s1", "a1")

    with pytest.raises(ConversationStateError) as excinfo:
        await services.branch_service.merge_threads("target", ["s1", "ghost"])

    assert excinfo.value.code is ErrorCode.THREAD_NOT_FOUND
    assert [row.content for row in await _messages(sessionmaker, "target")] == ["t1"]
    assert (await _thread(sessionmaker, "s1")).status == ThreadStatus.ACTIVE.value


@pytest.mark.anyio
async def test_failure_mid_merge_rolls_back(services, seed_thread, sessionmaker, monkeypatch):
    await seed_thread("target", "t1")
    await seed_thread("s1", "a1", "a2")

    async def broken(self, thread_id):
        raise RuntimeError("count failed")

    monkeypatch.setattr(MessageRepo, "count_messages", broken)

    with pytest.raises(ConversationStateError) as excinfo:
        await services.branch_service.merge_threads("target", ["s1"])

    assert excinfo.value.code is ErrorCode.UNKNOWN_ERROR
    assert excinfo.value.message == "count failed"
    assert [row.content for row in await _messages(sessionmaker, "target")] == ["t1"]
    target = await _thread(sessionmaker, "target")
    assert target.branch_type != "merged"
    assert (await _thread(sessionmaker, "s1")).status == ThreadStatus.ACTIVE.value


@pytest.mark.anyio
async def test_merged_copies_are_indexed_with_merged_tag(services, seed_thread):
    await seed_thread("target", "t1")
    await seed_thread("s1", "a1")
    services.memory_backend.stored.clear()

    await services.branch_service.merge_threads("target", ["s1"])

    [record] = services.memory_backend.stored
    assert record["thread_id"] == "target"
    assert record["tags"] == ["merged"]
    assert [memory.content for memory in record["memories"]] == ["a1"]
