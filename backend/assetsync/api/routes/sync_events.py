from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from assetsync.config import get_settings
from assetsync.db.session import to_iso
from assetsync.models.sync_event import SyncEvent
from assetsync.services import batch_coordinator, metrics, sync_ledger
from assetsync.services.engine import get_engine
from assetsync.services.errors import LedgerError

router = APIRouter(prefix="/api/sync", tags=["sync"])


class EnqueueRequest(BaseModel):
    type: Literal["create", "update", "delete"]
    table: str = Field(min_length=1)
    recordId: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class EnqueueResponse(BaseModel):
    eventId: str
    status: str = "pending"


class SyncEventResponse(BaseModel):
    id: str
    type: str
    table: str
    recordId: str
    data: dict[str, Any]
    timestamp: Optional[str] = None
    status: str
    retryCount: int = 0
    error: Optional[str] = None
    nextAttemptAt: Optional[str] = None
    conflictId: Optional[str] = None


class SyncMetricsResponse(BaseModel):
    totalEvents: int
    successfulSyncs: int
    failedSyncs: int
    pendingSyncs: int
    averageSyncTime: float
    syncRate: float
    lastSyncTime: Optional[str] = None


class PurgeRequest(BaseModel):
    olderThanDays: Optional[int] = Field(default=None, ge=0)
    jobsOlderThanDays: Optional[int] = Field(default=None, ge=0)


def _event_response(event: SyncEvent) -> SyncEventResponse:
    return SyncEventResponse(
        id=event.id,
        type=event.type,
        table=event.table,
        recordId=event.record_id,
        data=event.payload,
        timestamp=to_iso(event.timestamp) if event.timestamp else None,
        status=event.status,
        retryCount=event.retry_count,
        error=event.error,
        nextAttemptAt=to_iso(event.next_attempt_at) if event.next_attempt_at else None,
        conflictId=event.conflict_id,
    )


@router.post("/events", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
def enqueue_event(payload: EnqueueRequest) -> EnqueueResponse:
    try:
        event_id = sync_ledger.enqueue(payload.type, payload.table, payload.recordId, payload.data, payload.timestamp)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except LedgerError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return EnqueueResponse(eventId=event_id)


@router.get("/events/pending", response_model=list[SyncEventResponse])
def list_pending_events(limit: int = Query(default=100, ge=1, le=1000)) -> list[SyncEventResponse]:
    return [_event_response(e) for e in sync_ledger.list_pending(limit)]


@router.get("/events/{event_id}", response_model=SyncEventResponse)
def get_event(event_id: str) -> SyncEventResponse:
    event = sync_ledger.get_event(event_id)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync event not found")
    return _event_response(event)


@router.get("/metrics", response_model=SyncMetricsResponse)
def get_metrics(windowMinutes: int = Query(default=5, ge=1, le=1440)) -> SyncMetricsResponse:
    m = metrics.get_metrics(windowMinutes)
    return SyncMetricsResponse(
        totalEvents=m.total_events,
        successfulSyncs=m.successful_syncs,
        failedSyncs=m.failed_syncs,
        pendingSyncs=m.pending_syncs,
        averageSyncTime=m.average_sync_time,
        syncRate=m.sync_rate,
        lastSyncTime=to_iso(m.last_sync_time) if m.last_sync_time else None,
    )


@router.get("/status", response_model=dict)
def get_status() -> dict:
    return metrics.get_status(dispatcher_running=get_engine().dispatcher.is_running)


@router.post("/purge", response_model=dict)
def purge(payload: Optional[PurgeRequest] = None) -> dict:
    settings = get_settings()
    payload = payload or PurgeRequest()
    event_days = payload.olderThanDays if payload.olderThanDays is not None else settings.event_retention_days
    job_days = payload.jobsOlderThanDays if payload.jobsOlderThanDays is not None else settings.job_retention_days
    try:
        purged = sync_ledger.purge(event_days)
        removed = batch_coordinator.cleanup(job_days)
    except LedgerError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"success": True, "purgedEvents": purged, "removedJobs": removed}
