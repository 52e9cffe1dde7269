from __future__ import annotations

from datetime import timedelta

import pytest

from threadline.memory.types import AccessRequest, AccessType
from threadline.repos.thread_repo import ThreadRepo
from threadline.services.memory_sharing_service import (
    DENIED_CATEGORY_WRITE,
    DENIED_NO_RELATIONSHIP,
    DENIED_PARENT_CHILD_WRITE,
    MemorySharingService,
)
from threadline.utils.time_utils import utc_now


async def _make_thread(sessionmaker, thread_id, **fields):
    async with sessionmaker() as db:
        async with db.begin():
            await ThreadRepo(db).create_thread(thread_id, title=thread_id, **fields)


@pytest.fixture
async def family(sessionmaker):
    await _make_thread(sessionmaker, "parent")
    await _make_thread(sessionmaker, "child", parent_thread_id="parent", branch_type="branch")
    await _make_thread(sessionmaker, "stranger")


@pytest.fixture
async def category_pair(services, sessionmaker):
    category = await services.thread_service.create_category("research")
    await _make_thread(sessionmaker, "c1", category_id=category.id)
    await _make_thread(sessionmaker, "c2", category_id=category.id)
    return category


def _request(source, target, access_type=AccessType.READ):
    return AccessRequest(source, target, access_type)


@pytest.mark.anyio
@pytest.mark.parametrize("access_type", list(AccessType))
async def test_same_thread_is_always_granted(services, access_type):
    result = await services.sharing_service.check_access(_request("solo", "solo", access_type))

    assert result.granted
    assert result.reason is None


@pytest.mark.anyio
async def test_parent_and_child_read_each_other(services, family):
    sharing = services.sharing_service

    assert (await sharing.check_access(_request("parent", "child"))).granted
    assert (await sharing.check_access(_request("child", "parent"))).granted


@pytest.mark.anyio
@pytest.mark.parametrize("access_type", [AccessType.WRITE, AccessType.DELETE])
async def test_parent_child_write_and_delete_denied(services, family, access_type):
    result = await services.sharing_service.check_access(
        _request("child", "parent", access_type)
    )

    assert not result.granted
    assert result.reason == DENIED_PARENT_CHILD_WRITE


@pytest.mark.anyio
async def test_category_peers_read_but_not_write(services, category_pair):
    sharing = services.sharing_service

    assert (await sharing.check_access(_request("c1", "c2"))).granted
    denied = await sharing.check_access(_request("c1", "c2", AccessType.WRITE))
    assert not denied.granted
    assert denied.reason == DENIED_CATEGORY_WRITE


@pytest.mark.anyio
async def test_ownership_trust_grants_category_write_only(sessionmaker, category_pair):
    sharing = MemorySharingService(sessionmaker, None, ownership_write_trust=True)

    assert (await sharing.check_access(_request("c1", "c2", AccessType.WRITE))).granted
    delete = await sharing.check_access(_request("c1", "c2", AccessType.DELETE))
    assert not delete.granted
    assert delete.reason == DENIED_CATEGORY_WRITE


@pytest.mark.anyio
async def test_unrelated_threads_need_a_pool(services, family):
    sharing = services.sharing_service

    denied = await sharing.check_access(_request("parent", "stranger"))
    assert not denied.granted
    assert denied.reason == DENIED_NO_RELATIONSHIP

    await sharing.create_shared_pool("team", ["parent", "stranger"])

    for access_type in AccessType:
        assert (await sharing.check_access(_request("parent", "stranger", access_type))).granted


@pytest.mark.anyio
async def test_pool_write_trust_between_unrelated_threads(services, family):
    sharing = services.sharing_service
    await sharing.create_shared_pool("team", ["child", "stranger"])

    result = await sharing.check_access(_request("stranger", "child", AccessType.WRITE))

    assert result.granted
    assert result.audit_entry.metadata["relationship"] == "shared_pool"


@pytest.mark.anyio
async def test_pool_does_not_lift_parent_child_write_denial(services, family):
    sharing = services.sharing_service
    await sharing.create_shared_pool("lineage", ["parent", "child"])

    result = await sharing.check_access(_request("child", "parent", AccessType.WRITE))

    assert not result.granted
    assert result.reason == DENIED_PARENT_CHILD_WRITE


@pytest.mark.anyio
async def test_pool_does_not_lift_category_write_denial(services, category_pair):
    sharing = services.sharing_service
    await sharing.create_shared_pool("research", ["c1", "c2"])

    result = await sharing.check_access(_request("c1", "c2", AccessType.WRITE))

    assert not result.granted
    assert result.reason == DENIED_CATEGORY_WRITE


@pytest.mark.anyio
async def test_expired_pool_grants_nothing(services, family):
    sharing = services.sharing_service
    await sharing.create_shared_pool(
        "old", ["parent", "stranger"], expires_at=utc_now() - timedelta(minutes=1)
    )

    assert not (await sharing.check_access(_request("parent", "stranger"))).granted


@pytest.mark.anyio
async def test_decisions_are_cached_until_ttl(services, sessionmaker, family):
    sharing = services.sharing_service
    first = await sharing.check_access(_request("parent", "stranger"))

    async with sessionmaker() as db:
        async with db.begin():
            stranger = await ThreadRepo(db).get_thread("stranger")
            stranger.parent_thread_id = "parent"

    assert await sharing.check_access(_request("parent", "stranger")) is first

    services.clock.advance(301)
    assert (await sharing.check_access(_request("parent", "stranger"))).granted


@pytest.mark.anyio
async def test_clear_access_cache_forces_fresh_decision(services, sessionmaker, family):
    sharing = services.sharing_service
    assert not (await sharing.check_access(_request("parent", "stranger"))).granted

    async with sessionmaker() as db:
        async with db.begin():
            stranger = await ThreadRepo(db).get_thread("stranger")
            stranger.parent_thread_id = "parent"

    sharing.clear_access_cache()
    assert (await sharing.check_access(_request("parent", "stranger"))).granted


@pytest.mark.anyio
async def test_missing_thread_denied_and_not_cached(services, sessionmaker):
    sharing = services.sharing_service
    await _make_thread(sessionmaker, "present")

    denied = await sharing.check_access(_request("present", "later"))
    assert not denied.granted

    await _make_thread(sessionmaker, "later", parent_thread_id="present")
    assert (await sharing.check_access(_request("present", "later"))).granted


@pytest.mark.anyio
async def test_audit_entry_describes_decision(services, family):
    result = await services.sharing_service.check_access(
        _request("child", "parent", AccessType.WRITE)
    )

    entry = result.audit_entry
    assert entry.action == "memory_access_check"
    assert entry.result == "denied"
    assert entry.timestamp > 0
    assert entry.metadata == {
        "source_thread_id": "child",
        "target_thread_id": "parent",
        "access_type": "write",
        "relationship": "hierarchy",
    }
