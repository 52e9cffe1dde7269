from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from threadline.db.base import Base
from threadline.utils.time_utils import utc_now

_SENTENCE_END = re.compile(r"[.!?]")
_TITLE_LIMIT = 50


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"
    PAUSED = "paused"


class ThreadPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class BranchType(str, Enum):
    ROOT = "root"
    BRANCH = "branch"
    MERGED = "merged"


class MessageSender(str, Enum):
    HUMAN = "human"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    MIXED = "mixed"


class ThreadCategory(Base):
    """Grouping used for category-scoped memory sharing."""

    __tablename__ = "thread_categories"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ConversationThread(Base):
    """Persistent container of ordered messages plus branch/merge lineage."""

    __tablename__ = "conversation_threads"
    __table_args__ = (
        Index("ix_thread_parent", "parent_thread_id"),
        Index("ix_thread_category", "category_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ThreadStatus.ACTIVE.value)
    priority: Mapped[str] = mapped_column(
        String, nullable=False, default=ThreadPriority.NORMAL.value
    )
    category_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("thread_categories.id"), nullable=True
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_message_preview: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_message_sender: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # "metadata" is reserved on declarative classes.
    thread_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    parent_thread_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("conversation_threads.id"), nullable=True
    )
    branch_type: Mapped[str] = mapped_column(
        String, nullable=False, default=BranchType.ROOT.value
    )
    branch_point_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    branch_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    merge_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_main_branch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def is_active(self) -> bool:
        return self.status == ThreadStatus.ACTIVE.value

    def build_branch_fields(
        self,
        branch_point_message_id: str,
        *,
        title: Optional[str] = None,
        reason: Optional[str] = None,
        strategy: str = "fork",
        created_by: Optional[str] = None,
        preserve_context: bool = True,
    ) -> dict[str, Any]:
        """Return column values for a new branch derived from this thread."""

        return {
            "title": title or f"Branch of {self.title or 'Untitled'}",
            "status": ThreadStatus.ACTIVE.value,
            "priority": self.priority,
            "category_id": self.category_id,
            "tags": _union_tags(self.tags or [], ["branch"]),
            "thread_metadata": {
                **(self.thread_metadata or {}),
                "source": "branch",
                "parent_thread_id": self.id,
            },
            "parent_thread_id": self.id,
            "branch_type": BranchType.BRANCH.value,
            "branch_point_message_id": branch_point_message_id,
            "branch_metadata": {
                "branch_reason": reason,
                "branch_title": title,
                "created_by": created_by,
                "branching_strategy": strategy,
                "context_preserved": preserve_context,
            },
            "is_main_branch": False,
        }

    def mark_as_merged(
        self,
        source_thread_ids: list[str],
        *,
        strategy: str,
        conflict_resolution: str,
        merged_by: Optional[str] = None,
        merged_at: Optional[datetime] = None,
    ) -> None:
        """Classify the thread as a merge target and record the merge."""

        self.branch_type = BranchType.MERGED.value
        self.merge_metadata = {
            "source_thread_ids": list(source_thread_ids),
            "merge_strategy": strategy,
            "conflict_resolution": conflict_resolution,
            "merged_by": merged_by,
            "merged_at": (merged_at or utc_now()).isoformat(),
        }
        self.tags = _union_tags(self.tags or [], ["merged"])

    def update_last_activity(self, preview: Optional[str], sender: Optional[str]) -> None:
        self.last_activity_at = utc_now()
        if preview is not None:
            self.last_message_preview = preview
        if sender is not None:
            self.last_message_sender = sender

    @staticmethod
    def generate_title(content: str) -> str:
        """Derive a short title from the first message of a conversation."""

        cleaned = " ".join((content or "").split())
        if not cleaned:
            return "New Conversation"
        first_sentence = _SENTENCE_END.split(cleaned, maxsplit=1)[0].strip()
        if first_sentence and len(first_sentence) <= _TITLE_LIMIT:
            return first_sentence
        if len(cleaned) <= _TITLE_LIMIT:
            return cleaned
        return f"{cleaned[: _TITLE_LIMIT - 3]}..."


class ThreadMessage(Base):
    """One message of a thread, ordered by a per-thread sequence number."""

    __tablename__ = "thread_messages"
    __table_args__ = (
        UniqueConstraint("thread_id", "sequence_number", name="uq_message_thread_seq"),
        Index("ix_message_thread_created", "thread_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    thread_id: Mapped[str] = mapped_column(
        String, ForeignKey("conversation_threads.id"), nullable=False
    )
    sender: Mapped[str] = mapped_column(String, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String, nullable=False, default=MessageContentType.TEXT.value
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    raw_content: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    parent_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_edited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    message_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class MemoryItem(Base):
    """Indexed memory snippet scoped to one thread."""

    __tablename__ = "memory_items"
    __table_args__ = (
        UniqueConstraint(
            "thread_id",
            "content_hash",
            "occurred_at",
            name="uq_memory_thread_hash_time",
        ),
        Index("ix_memory_thread_active", "thread_id", "is_active"),
        Index("ix_memory_source_message", "source_message_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    thread_id: Mapped[str] = mapped_column(
        String, ForeignKey("conversation_threads.id"), nullable=False
    )
    source_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    message_type: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    importance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class MemoryEmbedding(Base):
    """Vector payload associated with a memory item."""

    __tablename__ = "memory_embeddings"
    __table_args__ = (UniqueConstraint("memory_item_id", name="uq_memory_embedding_item"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    memory_item_id: Mapped[str] = mapped_column(
        String, ForeignKey("memory_items.id"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    dim: Mapped[int] = mapped_column(Integer, nullable=False)
    vector_json: Mapped[str] = mapped_column(Text, nullable=False)
    vector_norm: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


def _union_tags(existing: Iterable[str], extra: Iterable[str]) -> list[str]:
    merged: list[str] = []
    for tag in [*existing, *extra]:
        if tag not in merged:
            merged.append(tag)
    return merged


def union_tags(*groups: Iterable[str]) -> list[str]:
    """Order-preserving union of tag lists."""

    merged: list[str] = []
    for group in groups:
        merged = _union_tags(merged, group)
    return merged
