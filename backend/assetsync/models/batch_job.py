from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["pending", "running", "completed", "failed", "paused"]


@dataclass
class BatchSyncConfig:
    batch_size: int = 1000
    max_concurrency: int = 10
    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    key_column: str = "id"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BatchSyncConfig":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class JobProgress:
    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0

    @property
    def percentage(self) -> float:
        if self.total_records <= 0:
            return 0.0
        return round(100.0 * self.processed_records / self.total_records, 2)


@dataclass
class BatchSyncJob:
    id: str
    name: str
    source_table: str
    target_container: str
    status: JobStatus
    progress: JobProgress
    config: BatchSyncConfig
    description: str = ""
    successful_records: int = 0
    last_key: str | None = None
    elapsed_seconds: float = 0.0
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BatchSyncError:
    record_id: str
    message: str
    timestamp: datetime
    retry_count: int = 0


@dataclass
class BatchSyncResult:
    job_id: str
    status: JobStatus
    total_records: int
    successful_records: int
    failed_records: int
    duration: float
    average_time_per_record: float
    errors: list[BatchSyncError] = field(default_factory=list)
