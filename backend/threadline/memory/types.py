from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class IsolationLevel(str, Enum):
    """Policy governing which other threads' memory a thread may read."""

    STRICT = "strict"
    READ_ONLY = "read_only"
    CATEGORY_SCOPED = "category_scoped"
    HIERARCHY_SCOPED = "hierarchy_scoped"
    EXPLICIT_SHARED = "explicit_shared"
    UNRESTRICTED = "unrestricted"


class AccessType(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"


@dataclass(frozen=True)
class MemoryItemPayload:
    """Payload persisted into the memory index."""

    thread_id: str
    source_message_id: Optional[str]
    message_type: str
    content: str
    content_hash: str
    occurred_at: datetime
    tags: tuple[str, ...] = ()
    importance: Optional[float] = None


@dataclass(frozen=True)
class MemorySearchResult:
    """Vector-search candidate with similarity score."""

    item_id: str
    thread_id: str
    source_message_id: Optional[str]
    message_type: str
    content: str
    tags: tuple[str, ...]
    importance: Optional[float]
    occurred_at: datetime
    score: float


@dataclass(frozen=True)
class RetrievedMemory:
    """Memory returned to callers; ``timestamp`` is epoch milliseconds."""

    content: str
    relevance_score: float
    timestamp: int
    message_type: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_relevance(self, factor: float) -> "RetrievedMemory":
        return RetrievedMemory(
            content=self.content,
            relevance_score=self.relevance_score * factor,
            timestamp=self.timestamp,
            message_type=self.message_type,
            metadata=dict(self.metadata),
        )

    def with_metadata(self, **values: Any) -> "RetrievedMemory":
        return RetrievedMemory(
            content=self.content,
            relevance_score=self.relevance_score,
            timestamp=self.timestamp,
            message_type=self.message_type,
            metadata={**self.metadata, **values},
        )


@dataclass(frozen=True)
class MemoryScope:
    """Who may see what when a thread retrieves memory."""

    thread_id: str
    isolation_level: IsolationLevel
    allowed_thread_ids: tuple[str, ...] = ()
    allowed_category_ids: tuple[str, ...] = ()
    user_id: Optional[str] = None
    role: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    def is_within_window(self, now: datetime) -> bool:
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_until is not None and now > self.valid_until:
            return False
        return True


@dataclass(frozen=True)
class SharedMemoryPool:
    """Explicit set of threads with mutual read/write trust."""

    id: str
    name: str
    thread_ids: frozenset[str]
    isolation_level: IsolationLevel
    created_at: datetime
    purpose: Optional[str] = None
    tags: tuple[str, ...] = ()
    expires_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


@dataclass(frozen=True)
class AccessRequest:
    source_thread_id: str
    target_thread_id: str
    access_type: AccessType = AccessType.READ


@dataclass(frozen=True)
class AuditEntry:
    timestamp: int
    action: str
    result: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccessResult:
    granted: bool
    audit_entry: AuditEntry
    reason: Optional[str] = None


@dataclass(frozen=True)
class SyncFilter:
    """Restricts which memories a synchronization copies."""

    tags: tuple[str, ...] = ()
    time_range: Optional[tuple[datetime, datetime]] = None
    importance: Optional[float] = None


@dataclass(frozen=True)
class SyncOptions:
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    filter: SyncFilter = field(default_factory=SyncFilter)


@dataclass(frozen=True)
class SyncResult:
    synchronized: int
    conflicts: int


@dataclass(frozen=True)
class CrossThreadContext:
    """Memory context assembled for one thread from itself and related threads."""

    primary: list[RetrievedMemory]
    shared: list[RetrievedMemory]
    summaries: list[str]
