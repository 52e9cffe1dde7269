import sys
from dataclasses import dataclass
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from threadline.core.config import get_settings
from threadline.db.base import create_engine, create_sessionmaker, init_db
from threadline.db.models import MessageSender
from threadline.main import create_app
from threadline.memory.backend import MemoryBackend
from threadline.memory.types import RetrievedMemory
from threadline.services.branch_service import BranchService
from threadline.services.conversation_service import ConversationService
from threadline.services.memory_sharing_service import MemorySharingService
from threadline.services.message_codec import ChatMessage
from threadline.services.sequence_allocator import SequenceAllocator
from threadline.services.thread_service import ThreadService


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_threadline.db'}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()


class RecordingMemoryBackend(MemoryBackend):
    """In-memory backend that records every retrieval call."""

    enabled = True

    def __init__(self) -> None:
        self.by_thread: dict[str, list[RetrievedMemory]] = {}
        self.global_memories: list[RetrievedMemory] = []
        self.calls: list[dict] = []
        self.stored: list[dict] = []

    def add(self, thread_id: str, *memories: RetrievedMemory) -> None:
        self.by_thread.setdefault(thread_id, []).extend(memories)

    async def retrieve_relevant_memories(
        self, query, thread_id, *, limit, include_global=False
    ):
        self.calls.append(
            {"query": query, "thread_id": thread_id, "limit": limit, "include_global": include_global}
        )
        source = self.global_memories if include_global else self.by_thread.get(thread_id, [])
        return list(source[:limit])

    async def get_conversation_history(self, thread_id):
        return list(self.by_thread.get(thread_id, []))

    async def store_conversation_memory(self, memories, thread_id, *, tags=()):
        self.stored.append({"thread_id": thread_id, "memories": list(memories), "tags": list(tags)})
        self.add(thread_id, *memories)
        return len(memories)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Services:
    thread_service: ThreadService
    allocator: SequenceAllocator
    conversation_service: ConversationService
    branch_service: BranchService
    sharing_service: MemorySharingService
    memory_backend: RecordingMemoryBackend
    clock: FakeClock


@pytest.fixture
def memory_backend():
    return RecordingMemoryBackend()


@pytest.fixture
def services(sessionmaker, memory_backend):
    thread_service = ThreadService(sessionmaker)
    allocator = SequenceAllocator(retry_attempts=5)
    clock = FakeClock()
    return Services(
        thread_service=thread_service,
        allocator=allocator,
        conversation_service=ConversationService(
            sessionmaker, thread_service, allocator, memory_backend
        ),
        branch_service=BranchService(sessionmaker, allocator, memory_backend),
        sharing_service=MemorySharingService(
            sessionmaker, memory_backend, cache_ttl_sec=300.0, clock=clock
        ),
        memory_backend=memory_backend,
        clock=clock,
    )


def human(content: str, **metadata) -> ChatMessage:
    return ChatMessage(
        sender=MessageSender.HUMAN, content=content, additional_kwargs={"metadata": metadata}
    )


@pytest.fixture
def seed_thread(services):
    """Return a helper that runs one successful turn per content string."""

    async def _seed(thread_id: str, *contents: str) -> list[str]:
        message_ids = []
        for content in contents:
            state = await services.conversation_service.run_turn(thread_id, human(content))
            assert state.error is None, state.error
            message_ids.append(state.persisted_message_id)
        return message_ids

    return _seed


@pytest.fixture
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test_threadline_api.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("MEMORY_MODE", "vector")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_DIM", "32")
    get_settings.cache_clear()
    return create_app()


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.engine.dispose()
