from __future__ import annotations

import asyncio
import logging
from typing import Dict, Literal, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from assetsync.db.session import to_iso
from assetsync.models.batch_job import BatchSyncConfig, BatchSyncJob, BatchSyncResult
from assetsync.services.engine import get_engine
from assetsync.services.errors import (
    JobInfrastructureError,
    JobNotFoundError,
    JobStateError,
    LedgerError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/batch-jobs", tags=["batch-jobs"])


# -------------------------
# API models
# -------------------------

class BatchConfigModel(BaseModel):
    batchSize: int = Field(default=1000, ge=1)
    maxConcurrency: int = Field(default=10, ge=1)
    retryAttempts: int = Field(default=3, ge=0)
    retryDelay: float = Field(default=1.0, ge=0)
    maxRetryDelay: float = Field(default=30.0, ge=0)
    keyColumn: str = "id"

    def to_config(self) -> BatchSyncConfig:
        return BatchSyncConfig(
            batch_size=self.batchSize,
            max_concurrency=self.maxConcurrency,
            retry_attempts=self.retryAttempts,
            retry_delay=self.retryDelay,
            max_retry_delay=self.maxRetryDelay,
            key_column=self.keyColumn,
        )


class JobProgressResponse(BaseModel):
    totalRecords: int = 0
    processedRecords: int = 0
    failedRecords: int = 0
    percentage: float = 0.0


class BatchJobResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    sourceTable: str
    targetContainer: str
    status: Literal["pending", "running", "completed", "failed", "paused"]
    progress: JobProgressResponse
    config: BatchConfigModel
    successfulRecords: int = 0
    errorMessage: Optional[str] = None
    createdAt: Optional[str] = None
    startedAt: Optional[str] = None
    completedAt: Optional[str] = None


class BatchErrorResponse(BaseModel):
    recordId: str
    message: str
    timestamp: str
    retryCount: int = 0


class BatchResultResponse(BaseModel):
    jobId: str
    status: Literal["pending", "running", "completed", "failed", "paused"]
    totalRecords: int
    successfulRecords: int
    failedRecords: int
    duration: float
    averageTimePerRecord: float
    errors: list[BatchErrorResponse] = Field(default_factory=list)


class BatchJobCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    sourceTable: str = Field(min_length=1)
    targetContainer: str = Field(min_length=1)
    description: str = ""
    config: Optional[BatchConfigModel] = None


class CancelRequest(BaseModel):
    reason: str = "Job cancelled by user"


# -------------------------
# Background executions
# -------------------------

_TASKS: Dict[str, asyncio.Task] = {}


def _iso(value) -> Optional[str]:
    return to_iso(value) if value else None


def _job_response(job: BatchSyncJob) -> BatchJobResponse:
    cfg = job.config
    return BatchJobResponse(
        id=job.id,
        name=job.name,
        description=job.description,
        sourceTable=job.source_table,
        targetContainer=job.target_container,
        status=job.status,
        progress=JobProgressResponse(
            totalRecords=job.progress.total_records,
            processedRecords=job.progress.processed_records,
            failedRecords=job.progress.failed_records,
            percentage=job.progress.percentage,
        ),
        config=BatchConfigModel(
            batchSize=cfg.batch_size,
            maxConcurrency=cfg.max_concurrency,
            retryAttempts=cfg.retry_attempts,
            retryDelay=cfg.retry_delay,
            maxRetryDelay=cfg.max_retry_delay,
            keyColumn=cfg.key_column,
        ),
        successfulRecords=job.successful_records,
        errorMessage=job.error_message,
        createdAt=_iso(job.created_at),
        startedAt=_iso(job.started_at),
        completedAt=_iso(job.completed_at),
    )


def _result_response(result: BatchSyncResult) -> BatchResultResponse:
    return BatchResultResponse(
        jobId=result.job_id,
        status=result.status,
        totalRecords=result.total_records,
        successfulRecords=result.successful_records,
        failedRecords=result.failed_records,
        duration=round(result.duration, 3),
        averageTimePerRecord=round(result.average_time_per_record, 6),
        errors=[
            BatchErrorResponse(
                recordId=e.record_id,
                message=e.message,
                timestamp=to_iso(e.timestamp),
                retryCount=e.retry_count,
            )
            for e in result.errors
        ],
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, JobStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, JobInfrastructureError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, LedgerError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    raise exc


async def _run_job(job_id: str, resume: bool) -> None:
    coordinator = get_engine().coordinator
    try:
        if resume:
            await asyncio.to_thread(coordinator.resume, job_id)
        else:
            await asyncio.to_thread(coordinator.execute, job_id)
    except JobInfrastructureError as exc:
        logger.error(f"Batch job {job_id} failed: {exc}")
    except Exception:
        logger.exception(f"Batch job {job_id} crashed")
    finally:
        _TASKS.pop(job_id, None)


async def _start(job_id: str, resume: bool, wait: bool) -> BatchJobResponse | BatchResultResponse:
    coordinator = get_engine().coordinator
    try:
        job = coordinator.get_job(job_id)
        if wait:
            run = coordinator.resume if resume else coordinator.execute
            return _result_response(await asyncio.to_thread(run, job_id))
    except Exception as exc:
        raise _http_error(exc) from exc

    allowed = ("paused",) if resume else ("pending", "paused")
    if job.status not in allowed:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job {job_id} is {job.status}")
    if job_id in _TASKS:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job {job_id} is already running")

    _TASKS[job_id] = asyncio.create_task(_run_job(job_id, resume))
    return _job_response(job)


# -------------------------
# Routes
# -------------------------

@router.post("", response_model=BatchJobResponse, status_code=status.HTTP_201_CREATED)
def create_batch_job(payload: BatchJobCreateRequest) -> BatchJobResponse:
    coordinator = get_engine().coordinator
    config = payload.config.to_config() if payload.config else BatchSyncConfig()
    try:
        job_id = coordinator.create_job(
            payload.name,
            payload.sourceTable,
            payload.targetContainer,
            config=config,
            description=payload.description,
        )
        return _job_response(coordinator.get_job(job_id))
    except Exception as exc:
        raise _http_error(exc) from exc


@router.get("", response_model=list[BatchJobResponse])
def list_batch_jobs(active: bool = False) -> list[BatchJobResponse]:
    coordinator = get_engine().coordinator
    jobs = coordinator.active_jobs() if active else coordinator.list_jobs()
    return [_job_response(j) for j in jobs]


@router.get("/{job_id}", response_model=BatchJobResponse)
def get_batch_job(job_id: str) -> BatchJobResponse:
    try:
        return _job_response(get_engine().coordinator.get_job(job_id))
    except Exception as exc:
        raise _http_error(exc) from exc


@router.get("/{job_id}/result", response_model=BatchResultResponse)
def get_batch_job_result(job_id: str) -> BatchResultResponse:
    try:
        return _result_response(get_engine().coordinator.get_result(job_id))
    except Exception as exc:
        raise _http_error(exc) from exc


@router.post("/{job_id}/execute", response_model=BatchJobResponse | BatchResultResponse)
async def execute_batch_job(job_id: str, wait: bool = False):
    return await _start(job_id, resume=False, wait=wait)


@router.post("/{job_id}/resume", response_model=BatchJobResponse | BatchResultResponse)
async def resume_batch_job(job_id: str, wait: bool = False):
    return await _start(job_id, resume=True, wait=wait)


@router.post("/{job_id}/pause", response_model=BatchJobResponse)
def pause_batch_job(job_id: str) -> BatchJobResponse:
    try:
        return _job_response(get_engine().coordinator.pause(job_id))
    except Exception as exc:
        raise _http_error(exc) from exc


@router.post("/{job_id}/cancel", response_model=BatchJobResponse)
def cancel_batch_job(job_id: str, payload: Optional[CancelRequest] = None) -> BatchJobResponse:
    reason = payload.reason if payload else CancelRequest().reason
    try:
        return _job_response(get_engine().coordinator.cancel(job_id, reason))
    except Exception as exc:
        raise _http_error(exc) from exc
