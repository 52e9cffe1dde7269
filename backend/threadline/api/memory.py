from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from threadline.api.errors import access_denied_http_error, conversation_http_error
from threadline.core.errors import AccessDeniedError, ConversationStateError
from threadline.memory.types import AccessRequest, SharedMemoryPool, SyncFilter, SyncOptions
from threadline.schemas.common import ErrorResponse
from threadline.schemas.memory import (
    AccessCheckRequest,
    AccessCheckResponse,
    AuditEntryOut,
    PoolCreateRequest,
    PoolListResponse,
    PoolOut,
    RetrievedMemoryOut,
    RetrieveRequest,
    RetrieveResponse,
    SyncRequest,
    SyncResponse,
)
from threadline.services.memory_sharing_service import (
    MemorySharingService,
    get_memory_sharing_service,
)

router = APIRouter(
    prefix="/api/memory",
    tags=["memory"],
    responses={
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    },
)


@router.post("/access", response_model=AccessCheckResponse)
async def check_access(
    payload: AccessCheckRequest,
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> AccessCheckResponse:
    result = await sharing_service.check_access(
        AccessRequest(payload.source_thread_id, payload.target_thread_id, payload.access_type)
    )
    return AccessCheckResponse(
        granted=result.granted,
        reason=result.reason,
        audit_entry=AuditEntryOut.model_validate(result.audit_entry),
    )


@router.delete("/access-cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_access_cache(
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> None:
    sharing_service.clear_access_cache()


@router.post("/pools", response_model=PoolOut, status_code=status.HTTP_201_CREATED)
async def create_pool(
    payload: PoolCreateRequest,
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> PoolOut:
    """Create a shared memory pool over existing threads."""

    try:
        pool = await sharing_service.create_shared_pool(
            payload.name,
            payload.thread_ids,
            isolation_level=payload.isolation_level,
            purpose=payload.purpose,
            tags=payload.tags,
            expires_at=payload.expires_at,
        )
    except ConversationStateError as exc:
        raise conversation_http_error(exc) from exc
    return _pool_out(pool)


@router.get("/pools", response_model=PoolListResponse)
async def list_pools(
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> PoolListResponse:
    return PoolListResponse(pools=[_pool_out(pool) for pool in sharing_service.list_pools()])


@router.delete("/pools/{pool_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pool(
    pool_id: str,
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> None:
    if not sharing_service.delete_pool(pool_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "POOL_NOT_FOUND", "message": "Pool not found", "details": {"pool_id": pool_id}},
        )


@router.post("/retrieve", response_model=RetrieveResponse)
async def retrieve(
    payload: RetrieveRequest,
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> RetrieveResponse:
    """Retrieve memories for a thread under an isolation level."""

    try:
        scope = await sharing_service.create_memory_scope(
            payload.thread_id,
            payload.isolation_level,
            allowed_thread_ids=payload.allowed_thread_ids,
            allowed_category_ids=payload.allowed_category_ids,
        )
    except ConversationStateError as exc:
        raise conversation_http_error(exc) from exc
    memories = await sharing_service.retrieve_with_isolation(payload.query, scope, payload.limit)
    return RetrieveResponse(
        memories=[RetrievedMemoryOut.model_validate(memory) for memory in memories]
    )


@router.post("/sync", response_model=SyncResponse)
async def synchronize(
    payload: SyncRequest,
    sharing_service: MemorySharingService = Depends(get_memory_sharing_service),
) -> SyncResponse:
    time_range = None
    if payload.since is not None and payload.until is not None:
        time_range = (payload.since, payload.until)
    options = SyncOptions(
        direction=payload.direction,
        filter=SyncFilter(
            tags=tuple(payload.tags),
            time_range=time_range,
            importance=payload.min_importance,
        ),
    )
    try:
        result = await sharing_service.synchronize(
            payload.source_thread_id, payload.target_thread_id, options
        )
    except AccessDeniedError as exc:
        raise access_denied_http_error(exc) from exc
    return SyncResponse(synchronized=result.synchronized, conflicts=result.conflicts)


def _pool_out(pool: SharedMemoryPool) -> PoolOut:
    return PoolOut(
        id=pool.id,
        name=pool.name,
        thread_ids=sorted(pool.thread_ids),
        isolation_level=pool.isolation_level,
        purpose=pool.purpose,
        tags=list(pool.tags),
        created_at=pool.created_at,
        expires_at=pool.expires_at,
    )
