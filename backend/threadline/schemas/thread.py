from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Union

from pydantic import Field

from threadline.db.models import MessageSender, ThreadPriority
from threadline.schemas.common import APIModel
from threadline.services.branch_service import (
    BranchStrategy,
    ConflictResolution,
    MergeStrategy,
)


class ThreadOut(APIModel):
    """Serialized thread with lineage metadata."""

    id: str
    title: Optional[str]
    summary: Optional[str] = None
    status: str
    priority: str
    category_id: Optional[str]
    tags: List[str]
    message_count: int
    unread_count: int
    last_activity_at: Optional[datetime]
    last_message_preview: Optional[str]
    last_message_sender: Optional[str]
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="thread_metadata")
    parent_thread_id: Optional[str]
    branch_type: str
    branch_point_message_id: Optional[str]
    branch_metadata: Optional[dict[str, Any]]
    merge_metadata: Optional[dict[str, Any]]
    is_main_branch: bool
    created_at: datetime


class ThreadCreateRequest(APIModel):
    """Request payload for creating a thread up front."""

    id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=255)
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    priority: Optional[ThreadPriority] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CategoryCreateRequest(APIModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    color: Optional[str] = None


class CategoryOut(APIModel):
    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    is_active: bool
    created_at: datetime


class ChatMessageOut(APIModel):
    """Message as carried in a turn state."""

    sender: MessageSender
    content: Union[str, List[dict[str, Any]]]
    additional_kwargs: dict[str, Any] = Field(default_factory=dict)


class TurnRequest(APIModel):
    """Request payload for one conversational turn."""

    content: str = Field(default="", max_length=100_000)
    raw_content: Optional[List[dict[str, Any]]] = None
    sender: MessageSender = MessageSender.HUMAN
    message_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: Optional[dict[str, Any]] = None
    require_existing: bool = False


class TurnStateOut(APIModel):
    """Outcome of a turn or a state lookup."""

    thread_id: str
    phase: str
    thread: Optional[ThreadOut] = None
    messages: List[ChatMessageOut]
    current_message: Optional[ChatMessageOut] = None
    context: dict[str, Any] = Field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    persisted_message_id: Optional[str] = None


class BranchCreateRequest(APIModel):
    """Request payload for branching a thread at a message."""

    branch_point_message_id: str
    title: Optional[str] = None
    reason: Optional[str] = None
    strategy: BranchStrategy = BranchStrategy.FORK
    created_by: Optional[str] = None
    preserve_context: bool = True


class MergeRequest(APIModel):
    """Request payload for merging source threads into a target."""

    source_thread_ids: List[str]
    strategy: MergeStrategy = MergeStrategy.SEQUENTIAL
    conflict_resolution: ConflictResolution = ConflictResolution.AUTOMATIC
    merged_by: Optional[str] = None
    archive_sources: bool = True


class BranchListResponse(APIModel):
    branches: List[ThreadOut]


class HierarchyOut(APIModel):
    """Lineage view of one thread."""

    root: Optional[ThreadOut] = None
    parent: Optional[ThreadOut] = None
    current: Optional[ThreadOut] = None
    children: List[ThreadOut] = Field(default_factory=list)
    siblings: List[ThreadOut] = Field(default_factory=list)
