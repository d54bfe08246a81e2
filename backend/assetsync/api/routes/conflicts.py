from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from assetsync.db.session import to_iso
from assetsync.models.conflict import ConflictResolution
from assetsync.services import conflict_resolver
from assetsync.services.engine import get_engine
from assetsync.services.errors import (
    ConflictNotFoundError,
    LedgerError,
    PermanentValidationError,
    TransientTargetError,
)
from assetsync.services.target_adapter import transform_record

router = APIRouter(prefix="/api/conflicts", tags=["conflicts"])


class ConflictResponse(BaseModel):
    id: str
    table: str
    recordId: str
    sourceData: dict[str, Any]
    targetData: dict[str, Any]
    conflictType: str
    conflictFields: list[str] = Field(default_factory=list)
    eventId: Optional[str] = None
    resolution: Optional[str] = None
    resolvedAt: Optional[str] = None
    resolvedBy: Optional[str] = None
    createdAt: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution: Literal["source_wins", "target_wins", "timestamp_wins", "merge"]
    resolvedBy: str = Field(min_length=1)


class AuditRequest(BaseModel):
    table: str = Field(min_length=1)
    recordId: str = Field(min_length=1)
    keyColumn: str = "id"


def _conflict_response(c: ConflictResolution) -> ConflictResponse:
    return ConflictResponse(
        id=c.id,
        table=c.table,
        recordId=c.record_id,
        sourceData=c.source_data,
        targetData=c.target_data,
        conflictType=c.conflict_type,
        conflictFields=c.conflict_fields,
        eventId=c.event_id,
        resolution=c.resolution,
        resolvedAt=to_iso(c.resolved_at) if c.resolved_at else None,
        resolvedBy=c.resolved_by,
        createdAt=to_iso(c.created_at) if c.created_at else None,
    )


@router.get("", response_model=list[ConflictResponse])
def list_conflicts(table: Optional[str] = None) -> list[ConflictResponse]:
    return [_conflict_response(c) for c in conflict_resolver.list_unresolved(table)]


@router.get("/stats", response_model=dict)
def conflict_stats() -> dict:
    return conflict_resolver.conflict_counts()


@router.post("/audit", response_model=list[ConflictResponse])
def audit_record(payload: AuditRequest) -> list[ConflictResponse]:
    engine = get_engine()
    label = engine.dispatcher.config.labels.get(payload.table, payload.table)
    try:
        source = engine.source.fetch_record(payload.table, payload.keyColumn, payload.recordId)
        target = engine.target.fetch(label, payload.recordId)
        # Compare in the target representation so renamed timestamp fields line up.
        source_view = transform_record(payload.recordId, source) if source else None
    except TransientTargetError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except PermanentValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    found = engine.resolver.audit_record(payload.table, payload.recordId, source_view, target)
    return [_conflict_response(c) for c in found]


@router.get("/{conflict_id}", response_model=ConflictResponse)
def get_conflict(conflict_id: str) -> ConflictResponse:
    conflict = conflict_resolver.get_conflict(conflict_id)
    if not conflict:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conflict not found")
    return _conflict_response(conflict)


@router.post("/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(conflict_id: str, payload: ResolveRequest) -> ConflictResponse:
    engine = get_engine()
    existing = conflict_resolver.get_conflict(conflict_id)
    if not existing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conflict not found")
    label = engine.dispatcher.config.labels.get(existing.table, existing.table)

    try:
        conflict = engine.resolver.settle(conflict_id, payload.resolution, payload.resolvedBy, engine.target, label)
    except ConflictNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (ValueError, PermanentValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TransientTargetError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except LedgerError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return _conflict_response(conflict)
