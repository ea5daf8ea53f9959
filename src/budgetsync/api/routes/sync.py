"""Offline sync queue routes.

Authentication lives outside this service; the gateway in front of it
forwards the caller's identity in the X-User-Id header.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from budgetsync.models.sync import SyncQueueItem
from budgetsync.sync.errors import (
    InvalidResolutionError,
    NotFoundError,
    SyncError,
    ValidationError,
)
from budgetsync.sync.schemas import (
    BatchResolutionRequest,
    BatchResolutionResult,
    ConflictRecord,
    ResolutionRequest,
    SyncResult,
    SyncStatus,
)
from budgetsync.sync.service import DEFAULT_CLEANUP_DAYS, SyncService

router = APIRouter()


class BatchSyncRequest(BaseModel):
    items: List[Dict[str, Any]]


class ResolveResponse(BaseModel):
    resolved: bool


class CleanupResponse(BaseModel):
    deleted_count: int
    days_old: int


def get_sync_service(request: Request) -> SyncService:
    """The process-wide service built by create_app()."""
    return request.app.state.sync_service


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_user_id


def _to_http(exc: SyncError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ValidationError, InvalidResolutionError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/queue", response_model=SyncQueueItem, status_code=201)
def add_to_queue(
    item: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Queue one offline mutation."""
    try:
        return service.enqueue_request(user_id, item)
    except SyncError as exc:
        raise _to_http(exc) from exc


@router.post("/batch", response_model=List[SyncQueueItem], status_code=201)
def batch_sync(
    request: BatchSyncRequest,
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Queue several mutations atomically (all or none)."""
    try:
        return service.batch_enqueue(user_id, request.items)
    except SyncError as exc:
        raise _to_http(exc) from exc


@router.post("/process", response_model=SyncResult)
async def process_queue(
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Run one sync pass for the caller. Per-item failures show up in the counts."""
    return await service.process(user_id)


@router.get("/status", response_model=SyncStatus)
def sync_status(
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    return service.status(user_id)


@router.get("/conflicts", response_model=List[ConflictRecord])
async def list_conflicts(
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    return await service.list_conflicts(user_id)


@router.post("/conflicts/resolve-batch", response_model=BatchResolutionResult)
async def resolve_conflicts_batch(
    request: BatchResolutionRequest,
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    return await service.resolve_conflicts_batch(user_id, request.resolutions)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ResolveResponse)
async def resolve_conflict(
    conflict_id: str,
    request: ResolutionRequest,
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    try:
        resolved = await service.resolve_conflict(
            user_id, conflict_id, request.resolution, request.merged_data
        )
    except SyncError as exc:
        raise _to_http(exc) from exc
    return ResolveResponse(resolved=resolved)


@router.delete("/cleanup", response_model=CleanupResponse)
def cleanup_queue(
    days: int = DEFAULT_CLEANUP_DAYS,
    user_id: str = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Delete the caller's completed items older than ``days`` days."""
    try:
        deleted = service.cleanup(user_id, days)
    except SyncError as exc:
        raise _to_http(exc) from exc
    return CleanupResponse(deleted_count=deleted, days_old=days)
