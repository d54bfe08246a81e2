from __future__ import annotations

from typing import Any


class SyncEngineError(Exception):
    pass


class LedgerError(SyncEngineError):
    """Raised when the event ledger cannot persist or read events."""


class TransientTargetError(SyncEngineError):
    """Network or timeout failure talking to the target store; safe to retry."""


class TargetUnavailableError(TransientTargetError):
    pass


class PermanentValidationError(SyncEngineError):
    """Payload or statement the target will never accept; retrying cannot help."""


class ConflictDetected(SyncEngineError):
    def __init__(self, message: str, conflict: Any = None) -> None:
        super().__init__(message)
        self.conflict = conflict


class ConflictNotFoundError(SyncEngineError):
    pass


class JobNotFoundError(SyncEngineError):
    pass


class JobStateError(SyncEngineError):
    pass


class JobInfrastructureError(SyncEngineError):
    """Source or target unreachable; aborts the whole batch job."""


class RecordLevelError(SyncEngineError):
    def __init__(self, record_id: str, message: str, retry_count: int = 0) -> None:
        super().__init__(message)
        self.record_id = record_id
        self.retry_count = retry_count
