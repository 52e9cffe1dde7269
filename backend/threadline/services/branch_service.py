from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadline.core.errors import ConversationStateError, ErrorCode
from threadline.core.security import truncate_preview
from threadline.db.models import ConversationThread, ThreadMessage, ThreadStatus, union_tags
from threadline.memory.backend import MemoryBackend, memories_from_messages
from threadline.repos.message_repo import MessageCopy, MessageRepo
from threadline.repos.thread_repo import ThreadRepo
from threadline.services.sequence_allocator import SequenceAllocator
from threadline.utils.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SourceHistory = tuple[str, list[ThreadMessage]]


class BranchStrategy(str, Enum):
    FORK = "fork"
    CONTINUATION = "continuation"
    ALTERNATIVE = "alternative"


class MergeStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    INTERLEAVED = "interleaved"
    MANUAL = "manual"


class ConflictResolution(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    PRIORITY = "priority"


@dataclass(frozen=True)
class BranchOptions:
    title: Optional[str] = None
    reason: Optional[str] = None
    strategy: BranchStrategy = BranchStrategy.FORK
    created_by: Optional[str] = None
    preserve_context: bool = True


@dataclass(frozen=True)
class MergeOptions:
    strategy: MergeStrategy = MergeStrategy.SEQUENTIAL
    conflict_resolution: ConflictResolution = ConflictResolution.AUTOMATIC
    merged_by: Optional[str] = None
    archive_sources: bool = True


@dataclass(frozen=True)
class ThreadHierarchy:
    """A thread seen from its lineage: root, parent, children and siblings."""

    root: Optional[ConversationThread] = None
    parent: Optional[ConversationThread] = None
    current: Optional[ConversationThread] = None
    children: list[ConversationThread] = field(default_factory=list)
    siblings: list[ConversationThread] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ThreadHierarchy":
        return cls()


def _merge_tag(message: ThreadMessage, source_thread_id: str) -> dict[str, object]:
    return {"merged_from_message": message.id, "merged_from_thread": source_thread_id}


def plan_sequential_merge(
    sources: Sequence[SourceHistory], start_sequence: int, now: datetime
) -> list[MessageCopy]:
    """Sources in the given order, each in ascending sequence order."""

    plan: list[MessageCopy] = []
    next_sequence = start_sequence
    for source_thread_id, messages in sources:
        for message in sorted(messages, key=lambda item: item.sequence_number):
            plan.append(
                MessageCopy(message, next_sequence, now, _merge_tag(message, source_thread_id))
            )
            next_sequence += 1
    return plan


def plan_interleaved_merge(
    sources: Sequence[SourceHistory], start_sequence: int, now: datetime
) -> list[MessageCopy]:
    """Every source message ordered by original creation time.

    Ties keep source order, then source sequence order.
    """

    pooled = [
        (ensure_utc(message.created_at), index, message.sequence_number, source_thread_id, message)
        for index, (source_thread_id, messages) in enumerate(sources)
        for message in messages
    ]
    pooled.sort(key=lambda row: row[:3])
    return [
        MessageCopy(message, start_sequence + offset, now, _merge_tag(message, source_thread_id))
        for offset, (_, _, _, source_thread_id, message) in enumerate(pooled)
    ]


def plan_manual_merge(
    sources: Sequence[SourceHistory], start_sequence: int, now: datetime
) -> list[MessageCopy]:
    """Placeholder order with original timestamps; flagged for a later ordering pass."""

    plan: list[MessageCopy] = []
    next_sequence = start_sequence
    for source_thread_id, messages in sources:
        for message in sorted(messages, key=lambda item: item.sequence_number):
            metadata = {**_merge_tag(message, source_thread_id), "requires_manual_ordering": True}
            plan.append(MessageCopy(message, next_sequence, message.created_at, metadata))
            next_sequence += 1
    return plan


_MERGE_PLANNERS: dict[
    MergeStrategy, Callable[[Sequence[SourceHistory], int, datetime], list[MessageCopy]]
] = {
    MergeStrategy.SEQUENTIAL: plan_sequential_merge,
    MergeStrategy.INTERLEAVED: plan_interleaved_merge,
    MergeStrategy.MANUAL: plan_manual_merge,
}


class BranchService:
    """Derive branch threads from a cut point and merge threads back together."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        allocator: SequenceAllocator,
        memory_backend: MemoryBackend,
        preview_chars: int = 500,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._allocator = allocator
        self._memory_backend = memory_backend
        self._preview_chars = preview_chars

    async def create_branch(
        self,
        parent_thread_id: str,
        branch_point_message_id: str,
        options: Optional[BranchOptions] = None,
    ) -> ConversationThread:
        """Create a branch thread sharing the parent's history up to the branch point."""

        options = options or BranchOptions()
        try:
            branch, copied = await self._create_branch_once(
                parent_thread_id, branch_point_message_id, options
            )
        except ConversationStateError:
            raise
        except Exception as exc:
            raise ConversationStateError.from_exception(
                exc,
                code=ErrorCode.UNKNOWN_ERROR,
                operation="create_branch",
                thread_id=parent_thread_id,
                message_id=branch_point_message_id,
                fallback_message="Failed to create branch",
            ) from exc

        logger.info(
            "Created branch %s from thread %s with %s copied messages",
            branch.id,
            parent_thread_id,
            len(copied),
        )
        await self._remember(copied, branch.id, ["branch"])
        return branch

    async def merge_threads(
        self,
        target_thread_id: str,
        source_thread_ids: Sequence[str],
        options: Optional[MergeOptions] = None,
    ) -> ConversationThread:
        """Copy the sources' visible messages into the target with the chosen ordering."""

        options = options or MergeOptions()
        source_ids = list(source_thread_ids)
        self._validate_merge_request(target_thread_id, source_ids)
        try:
            target, copied = await self._allocator.run(
                target_thread_id,
                lambda: self._merge_once(target_thread_id, source_ids, options),
            )
        except ConversationStateError:
            raise
        except Exception as exc:
            raise ConversationStateError.from_exception(
                exc,
                code=ErrorCode.UNKNOWN_ERROR,
                operation="merge_threads",
                thread_id=target_thread_id,
                fallback_message="Failed to merge threads",
            ) from exc

        logger.info(
            "Merged %s threads into %s (%s, %s messages)",
            len(source_ids),
            target_thread_id,
            options.strategy.value,
            len(copied),
        )
        await self._remember(copied, target.id, ["merged"])
        return target

    async def get_branches(self, parent_thread_id: str) -> list[ConversationThread]:
        """Active branches of a thread, oldest first; [] when the lookup fails."""

        try:
            async with self._sessionmaker() as db:
                return await ThreadRepo(db).list_branches(parent_thread_id)
        except SQLAlchemyError:
            logger.exception("Failed to list branches of thread %s", parent_thread_id)
            return []

    async def get_hierarchy(self, thread_id: str) -> ThreadHierarchy:
        """Lineage of a thread; an empty hierarchy when missing or on failure."""

        try:
            async with self._sessionmaker() as db:
                repo = ThreadRepo(db)
                current = await repo.get_thread(thread_id)
                if current is None:
                    return ThreadHierarchy.empty()

                parent = None
                if current.parent_thread_id:
                    parent = await repo.get_thread(current.parent_thread_id)

                root = current
                seen = {current.id}
                while root.parent_thread_id and root.parent_thread_id not in seen:
                    ancestor = await repo.get_thread(root.parent_thread_id)
                    if ancestor is None:
                        break
                    seen.add(ancestor.id)
                    root = ancestor

                children = _visible(await repo.list_children(current.id))
                siblings: list[ConversationThread] = []
                if parent is not None:
                    siblings = [
                        thread
                        for thread in _visible(await repo.list_children(parent.id))
                        if thread.id != current.id
                    ]
        except SQLAlchemyError:
            logger.exception("Failed to load hierarchy of thread %s", thread_id)
            return ThreadHierarchy.empty()

        return ThreadHierarchy(
            root=root, parent=parent, current=current, children=children, siblings=siblings
        )

    async def _create_branch_once(
        self,
        parent_thread_id: str,
        branch_point_message_id: str,
        options: BranchOptions,
    ) -> tuple[ConversationThread, list[ThreadMessage]]:
        async with self._sessionmaker() as db:
            async with db.begin():
                thread_repo = ThreadRepo(db)
                message_repo = MessageRepo(db)

                parent = await thread_repo.get_thread(parent_thread_id)
                if parent is None or not parent.is_active():
                    raise ConversationStateError(
                        ErrorCode.THREAD_NOT_FOUND,
                        "Parent thread not found or not active",
                        thread_id=parent_thread_id,
                        operation="create_branch",
                    )
                branch_point = await message_repo.get_message(
                    branch_point_message_id, parent_thread_id
                )
                if branch_point is None or branch_point.is_deleted:
                    raise ConversationStateError(
                        ErrorCode.INVALID_MESSAGE,
                        "Branch point message not found in parent thread",
                        thread_id=parent_thread_id,
                        message_id=branch_point_message_id,
                        operation="create_branch",
                    )

                branch = await thread_repo.create_thread(
                    uuid.uuid4().hex,
                    **parent.build_branch_fields(
                        branch_point.id,
                        title=options.title,
                        reason=options.reason,
                        strategy=options.strategy.value,
                        created_by=options.created_by,
                        preserve_context=options.preserve_context,
                    ),
                )

                copied: list[ThreadMessage] = []
                if options.preserve_context:
                    history = await message_repo.list_messages_up_to_sequence(
                        parent.id, branch_point.sequence_number
                    )
                    copied = await message_repo.clone_messages(
                        [
                            MessageCopy(
                                message,
                                message.sequence_number,
                                message.created_at,
                                {"copied_from_message": message.id, "copied_from_thread": parent.id},
                            )
                            for message in history
                        ],
                        branch.id,
                    )
                branch.message_count = len(copied)
                if copied:
                    self._touch(branch, copied[-1])
                await db.flush()
        return branch, copied

    async def _merge_once(
        self,
        target_thread_id: str,
        source_ids: list[str],
        options: MergeOptions,
    ) -> tuple[ConversationThread, list[ThreadMessage]]:
        async with self._sessionmaker() as db:
            async with db.begin():
                thread_repo = ThreadRepo(db)
                message_repo = MessageRepo(db)

                participants = await thread_repo.get_threads([target_thread_id, *source_ids])
                for participant_id in [target_thread_id, *source_ids]:
                    participant = participants.get(participant_id)
                    if participant is None or not participant.is_active():
                        raise ConversationStateError(
                            ErrorCode.THREAD_NOT_FOUND,
                            f"Thread {participant_id} not found or not active",
                            thread_id=participant_id,
                            operation="merge_threads",
                        )
                target = participants[target_thread_id]
                sources = [participants[source_id] for source_id in source_ids]

                histories: list[SourceHistory] = [
                    (source.id, await message_repo.list_active_messages(source.id))
                    for source in sources
                ]
                start_sequence = await message_repo.next_sequence(target.id)
                plan = _MERGE_PLANNERS[options.strategy](histories, start_sequence, utc_now())
                copied = await message_repo.clone_messages(plan, target.id)

                merged_at = utc_now()
                target.tags = union_tags(target.tags or [], *(source.tags or [] for source in sources))
                target.mark_as_merged(
                    source_ids,
                    strategy=options.strategy.value,
                    conflict_resolution=options.conflict_resolution.value,
                    merged_by=options.merged_by,
                    merged_at=merged_at,
                )
                target.message_count = await message_repo.count_messages(target.id)
                if copied:
                    self._touch(target, copied[-1])

                if options.archive_sources:
                    for source in sources:
                        source.status = ThreadStatus.ARCHIVED.value
                        source.thread_metadata = {
                            **(source.thread_metadata or {}),
                            "merged_into_thread": target.id,
                            "merged_at": merged_at.isoformat(),
                        }
                await db.flush()
        return target, copied

    def _touch(self, thread: ConversationThread, message: ThreadMessage) -> None:
        thread.update_last_activity(
            truncate_preview(message.content, self._preview_chars), message.sender
        )

    @staticmethod
    def _validate_merge_request(target_thread_id: str, source_ids: list[str]) -> None:
        problem = None
        if not source_ids:
            problem = "At least one source thread is required"
        elif len(set(source_ids)) != len(source_ids):
            problem = "Source threads must be unique"
        elif target_thread_id in source_ids:
            problem = "Target thread cannot also be a source"
        if problem:
            raise ConversationStateError(
                ErrorCode.INVALID_MERGE,
                problem,
                thread_id=target_thread_id,
                operation="merge_threads",
            )

    async def _remember(
        self, messages: list[ThreadMessage], thread_id: str, tags: list[str]
    ) -> None:
        if not messages:
            return
        try:
            await self._memory_backend.store_conversation_memory(
                memories_from_messages(messages), thread_id, tags=tags
            )
        except Exception:  # noqa: BLE001
            logger.exception("Memory indexing failed for thread %s", thread_id)


def _visible(threads: list[ConversationThread]) -> list[ConversationThread]:
    return [thread for thread in threads if thread.status != ThreadStatus.DELETED.value]


def get_branch_service(request: Request) -> BranchService:
    """Dependency to access branch service from app state."""

    return request.app.state.branch_service
