from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

EventType = Literal["create", "update", "delete"]
EventStatus = Literal["pending", "processing", "completed", "failed", "retry"]

EVENT_TYPES: tuple[str, ...] = ("create", "update", "delete")


@dataclass
class SyncEvent:
    id: str
    type: EventType
    table: str
    record_id: str
    payload: dict[str, Any]
    timestamp: datetime
    status: EventStatus
    retry_count: int = 0
    error: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    next_attempt_at: datetime | None = None
    duration_ms: float | None = None
    conflict_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
