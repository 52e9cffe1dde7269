from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from threadline.memory.types import AccessType, IsolationLevel, SyncDirection
from threadline.schemas.common import APIModel


class AccessCheckRequest(APIModel):
    source_thread_id: str
    target_thread_id: str
    access_type: AccessType = AccessType.READ


class AuditEntryOut(APIModel):
    timestamp: int
    action: str
    result: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class AccessCheckResponse(APIModel):
    granted: bool
    reason: Optional[str] = None
    audit_entry: AuditEntryOut


class PoolCreateRequest(APIModel):
    """Request payload for creating a shared memory pool."""

    name: str = Field(min_length=1, max_length=200)
    thread_ids: List[str] = Field(min_length=1)
    isolation_level: IsolationLevel = IsolationLevel.EXPLICIT_SHARED
    purpose: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class PoolOut(APIModel):
    id: str
    name: str
    thread_ids: List[str]
    isolation_level: IsolationLevel
    purpose: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: Optional[datetime] = None


class PoolListResponse(APIModel):
    pools: List[PoolOut]


class RetrieveRequest(APIModel):
    """Request payload for isolated memory retrieval."""

    thread_id: str
    query: str
    isolation_level: IsolationLevel = IsolationLevel.STRICT
    allowed_thread_ids: List[str] = Field(default_factory=list)
    allowed_category_ids: List[str] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=1, le=100)


class RetrievedMemoryOut(APIModel):
    content: str
    relevance_score: float
    timestamp: int
    message_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrieveResponse(APIModel):
    memories: List[RetrievedMemoryOut]


class SyncRequest(APIModel):
    """Request payload for synchronizing memory between two threads."""

    source_thread_id: str
    target_thread_id: str
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    tags: List[str] = Field(default_factory=list)
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    min_importance: Optional[float] = None


class SyncResponse(APIModel):
    synchronized: int
    conflicts: int
