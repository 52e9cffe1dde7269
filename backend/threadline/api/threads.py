from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError

from threadline.api.errors import conversation_http_error
from threadline.core.errors import ConversationStateError, ErrorCode
from threadline.db.models import ConversationThread
from threadline.schemas.common import ErrorResponse
from threadline.schemas.thread import (
    BranchCreateRequest,
    BranchListResponse,
    CategoryCreateRequest,
    CategoryOut,
    ChatMessageOut,
    HierarchyOut,
    MergeRequest,
    ThreadCreateRequest,
    ThreadOut,
    TurnRequest,
    TurnStateOut,
)
from threadline.services.branch_service import (
    BranchOptions,
    BranchService,
    MergeOptions,
    get_branch_service,
)
from threadline.services.conversation_service import (
    ConversationService,
    get_conversation_service,
)
from threadline.services.message_codec import ChatMessage
from threadline.services.thread_service import ThreadService, get_thread_service
from threadline.services.turn_state import TurnState

router = APIRouter(
    prefix="/api/threads",
    tags=["threads"],
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    },
)


@router.post("", response_model=ThreadOut, status_code=status.HTTP_201_CREATED)
async def create_thread(
    payload: ThreadCreateRequest,
    thread_service: ThreadService = Depends(get_thread_service),
) -> ThreadOut:
    """Create a thread explicitly, optionally inside a category."""

    if payload.category_id and await thread_service.find_category(payload.category_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "CATEGORY_NOT_FOUND",
                "message": "Category not found",
                "details": {"category_id": payload.category_id},
            },
        )
    if payload.id and await thread_service.find_thread_by_id(payload.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "THREAD_EXISTS",
                "message": "Thread already exists",
                "details": {"thread_id": payload.id},
            },
        )
    thread = await thread_service.create_thread(
        title=payload.title,
        category_id=payload.category_id,
        tags=payload.tags,
        priority=payload.priority.value if payload.priority else None,
        metadata=payload.metadata,
        thread_id=payload.id,
    )
    return ThreadOut.model_validate(thread)


@router.post("/categories", response_model=CategoryOut, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: CategoryCreateRequest,
    thread_service: ThreadService = Depends(get_thread_service),
) -> CategoryOut:
    try:
        category = await thread_service.create_category(
            payload.name, description=payload.description, color=payload.color
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "CATEGORY_EXISTS",
                "message": "Category name already in use",
                "details": {"name": payload.name},
            },
        ) from exc
    return CategoryOut.model_validate(category)

@router.post("/{thread_id}/turns", response_model=TurnStateOut)
async def run_turn(
    thread_id: str,
    payload: TurnRequest,
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> TurnStateOut:
    """Run one turn; an error phase comes back as 200 with ``error`` set."""

    additional_kwargs = {"metadata": payload.metadata}
    if payload.message_id:
        additional_kwargs["message_id"] = payload.message_id
    message = ChatMessage(
        sender=payload.sender,
        content=payload.raw_content if payload.raw_content else payload.content,
        additional_kwargs=additional_kwargs,
    )
    try:
        if payload.require_existing:
            state = await conversation_service.continue_turn(thread_id, message, payload.context)
        else:
            state = await conversation_service.run_turn(thread_id, message, payload.context)
    except ConversationStateError as exc:
        raise conversation_http_error(exc) from exc
    return _state_out(state)


@router.get("/{thread_id}/state", response_model=TurnStateOut)
async def get_state(
    thread_id: str,
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> TurnStateOut:
    state = await conversation_service.get_state(thread_id)
    if state is None:
        raise conversation_http_error(
            ConversationStateError(
                ErrorCode.THREAD_NOT_FOUND,
                "Thread not found",
                thread_id=thread_id,
                operation="get_state",
            )
        )
    return _state_out(state)


@router.get("/{thread_id}/branches", response_model=BranchListResponse)
async def list_branches(
    thread_id: str,
    branch_service: BranchService = Depends(get_branch_service),
) -> BranchListResponse:
    branches = await branch_service.get_branches(thread_id)
    return BranchListResponse(branches=[ThreadOut.model_validate(item) for item in branches])


@router.post(
    "/{thread_id}/branches", response_model=ThreadOut, status_code=status.HTTP_201_CREATED
)
async def create_branch(
    thread_id: str,
    payload: BranchCreateRequest,
    branch_service: BranchService = Depends(get_branch_service),
) -> ThreadOut:
    """Branch a thread at a message."""

    options = BranchOptions(
        title=payload.title,
        reason=payload.reason,
        strategy=payload.strategy,
        created_by=payload.created_by,
        preserve_context=payload.preserve_context,
    )
    try:
        branch = await branch_service.create_branch(
            thread_id, payload.branch_point_message_id, options
        )
    except ConversationStateError as exc:
        raise conversation_http_error(exc) from exc
    return ThreadOut.model_validate(branch)


@router.post("/{thread_id}/merge", response_model=ThreadOut)
async def merge_threads(
    thread_id: str,
    payload: MergeRequest,
    branch_service: BranchService = Depends(get_branch_service),
) -> ThreadOut:
    """Merge source threads into this thread."""

    options = MergeOptions(
        strategy=payload.strategy,
        conflict_resolution=payload.conflict_resolution,
        merged_by=payload.merged_by,
        archive_sources=payload.archive_sources,
    )
    try:
        target = await branch_service.merge_threads(thread_id, payload.source_thread_ids, options)
    except ConversationStateError as exc:
        raise conversation_http_error(exc) from exc
    return ThreadOut.model_validate(target)


@router.get("/{thread_id}/hierarchy", response_model=HierarchyOut)
async def get_hierarchy(
    thread_id: str,
    branch_service: BranchService = Depends(get_branch_service),
) -> HierarchyOut:
    hierarchy = await branch_service.get_hierarchy(thread_id)
    return HierarchyOut(
        root=_thread_out(hierarchy.root),
        parent=_thread_out(hierarchy.parent),
        current=_thread_out(hierarchy.current),
        children=[ThreadOut.model_validate(item) for item in hierarchy.children],
        siblings=[ThreadOut.model_validate(item) for item in hierarchy.siblings],
    )


def _thread_out(thread: Optional[ConversationThread]) -> Optional[ThreadOut]:
    return ThreadOut.model_validate(thread) if thread is not None else None


def _state_out(state: TurnState) -> TurnStateOut:
    return TurnStateOut(
        thread_id=state.thread_id,
        phase=state.phase.value,
        thread=_thread_out(state.thread),
        messages=[ChatMessageOut.model_validate(item) for item in state.messages],
        current_message=(
            ChatMessageOut.model_validate(state.current_message)
            if state.current_message is not None
            else None
        ),
        context=state.context.to_dict(),
        error=state.error.to_dict() if state.error is not None else None,
        persisted_message_id=state.persisted_message_id,
    )
