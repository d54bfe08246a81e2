from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class SyncMetrics:
    total_events: int
    successful_syncs: int
    failed_syncs: int
    pending_syncs: int
    average_sync_time: float
    sync_rate: float
    last_sync_time: datetime | None = None
