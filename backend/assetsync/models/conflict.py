from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ConflictType = Literal["data_mismatch", "timestamp_conflict", "deletion_conflict"]
Resolution = Literal["source_wins", "target_wins", "timestamp_wins", "merge", "manual"]

CONFLICT_TYPES: tuple[str, ...] = ("data_mismatch", "timestamp_conflict", "deletion_conflict")
RESOLUTIONS: tuple[str, ...] = ("source_wins", "target_wins", "timestamp_wins", "merge")


@dataclass
class ConflictResolution:
    id: str
    table: str
    record_id: str
    source_data: dict[str, Any]
    target_data: dict[str, Any]
    conflict_type: ConflictType
    conflict_fields: list[str] = field(default_factory=list)
    event_id: str | None = None
    resolution: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None
