from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
import zlib
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from assetsync.config import Settings
from assetsync.models.sync_event import SyncEvent
from assetsync.services import conflict_resolver, sync_ledger
from assetsync.services.conflict_resolver import ConflictResolver
from assetsync.services.errors import (
    ConflictDetected,
    LedgerError,
    PermanentValidationError,
    TransientTargetError,
)
from assetsync.services.notifications import LoggingNotifier, Notifier
from assetsync.services.target_adapter import TargetStore, transform_record, validate_label

logger = logging.getLogger(__name__)

_COMPLETION_NOTES = {
    "skipped": "target copy kept by conflict resolution",
    "superseded": "a newer event for this record was already applied",
}


@dataclass
class DispatcherConfig:
    batch_size: int = 100
    worker_count: int = 4
    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    lease_seconds: float = 60.0
    poll_interval: float = 5.0
    detect_conflicts: bool = True
    reclaim_interval: float = 30.0
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings, labels: dict[str, str] | None = None) -> "DispatcherConfig":
        return cls(
            batch_size=settings.batch_size,
            worker_count=settings.worker_count,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            max_retry_delay=settings.max_retry_delay,
            lease_seconds=settings.lease_seconds,
            poll_interval=settings.poll_interval,
            detect_conflicts=settings.detect_conflicts,
            labels=dict(labels or {}),
        )


@dataclass
class DispatchSummary:
    claimed: int = 0
    completed: int = 0
    skipped: int = 0
    superseded: int = 0
    retried: int = 0
    failed: int = 0
    suspended: int = 0

    def add(self, outcomes: Counter) -> None:
        for outcome, n in outcomes.items():
            setattr(self, outcome, getattr(self, outcome) + n)


def retry_delay(retry_count: int, base: float, max_delay: float) -> float:
    return min(base * (2 ** retry_count), max_delay)


def partition_index(record_id: str, worker_count: int) -> int:
    # crc32 rather than hash(): str hashing is salted per process.
    return zlib.crc32(str(record_id).encode("utf-8")) % worker_count


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RealTimeDispatcher:
    """
    Drains the sync event ledger into the target store.

    Each cycle claims a batch, splits it by record so every event of a record
    goes to the same worker, and applies the partitions on a bounded thread
    pool. Within a partition events run one after another in claim order.
    """

    def __init__(
        self,
        target: TargetStore,
        resolver: ConflictResolver | None = None,
        config: DispatcherConfig | None = None,
        notifier: Notifier | None = None,
        owner_id: str | None = None,
    ):
        self.target = target
        self.resolver = resolver or ConflictResolver()
        self.config = config or DispatcherConfig()
        if self.config.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.notifier = notifier or LoggingNotifier()
        self.owner_id = owner_id or default_owner_id()

        self._pool = ThreadPoolExecutor(max_workers=self.config.worker_count, thread_name_prefix="sync-worker")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_reclaim = 0.0

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def partition(self, events: list[SyncEvent]) -> list[list[SyncEvent]]:
        partitions: list[list[SyncEvent]] = [[] for _ in range(self.config.worker_count)]
        for event in events:
            partitions[partition_index(event.record_id, self.config.worker_count)].append(event)
        return partitions

    def run_once(self) -> DispatchSummary:
        """Claim one batch and apply it; returns what happened to each event."""
        events = sync_ledger.claim(self.config.batch_size, self.owner_id, self.config.lease_seconds)
        summary = DispatchSummary(claimed=len(events))
        if not events:
            return summary

        futures = [self._pool.submit(self._process_partition, part) for part in self.partition(events) if part]
        done, _ = wait(futures)
        for future in done:
            summary.add(future.result())

        logger.info(
            f"Dispatch cycle: claimed={summary.claimed} completed={summary.completed} skipped={summary.skipped} "
            f"superseded={summary.superseded} retried={summary.retried} failed={summary.failed} suspended={summary.suspended}"
        )
        return summary

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="sync-dispatcher", daemon=True)
        self._thread.start()
        logger.info(f"Sync dispatcher {self.owner_id} started")

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Sync dispatcher {self.owner_id} did not stop within {timeout}s")
                return
            self._thread = None
        logger.info(f"Sync dispatcher {self.owner_id} stopped")

    def close(self) -> None:
        self.stop()
        self._pool.shutdown(wait=True)

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            claimed = 0
            try:
                now = time.monotonic()
                if now - self._last_reclaim >= self.config.reclaim_interval:
                    sync_ledger.reclaim_expired()
                    self._last_reclaim = now
                claimed = self.run_once().claimed
            except LedgerError as exc:
                logger.error(f"Sync dispatcher cycle failed: {exc}")
            except Exception:
                logger.exception("Unexpected error in sync dispatcher cycle")

            if claimed == 0:
                self._stop.wait(self.config.poll_interval)

    # ------------------------------------------------------------------
    # Per-event processing
    # ------------------------------------------------------------------

    def _process_partition(self, events: list[SyncEvent]) -> Counter:
        outcomes: Counter = Counter()
        for event in events:
            try:
                outcomes[self._process_event(event)] += 1
            except LedgerError as exc:
                # The lease runs out and the event is reclaimed later.
                logger.error(f"Could not record outcome of sync event {event.id}: {exc}")
        return outcomes

    def _process_event(self, event: SyncEvent) -> str:
        started = time.monotonic()
        try:
            outcome = self._apply(event)
        except ConflictDetected as exc:
            conflict_id = exc.conflict.id if exc.conflict is not None else None
            logger.info(f"Sync event {event.id} parked on conflict {conflict_id}")
            sync_ledger.release(event.id, conflict_id=conflict_id, owner=self.owner_id)
            return "suspended"
        except PermanentValidationError as exc:
            self._fail(event, str(exc))
            return "failed"
        except TransientTargetError as exc:
            return self._retry_or_fail(event, str(exc))
        except LedgerError:
            raise
        except Exception as exc:
            logger.exception(f"Unexpected error applying sync event {event.id}")
            return self._retry_or_fail(event, f"{type(exc).__name__}: {exc}")

        duration_ms = (time.monotonic() - started) * 1000.0
        note = _COMPLETION_NOTES.get(outcome)
        sync_ledger.mark_completed(event.id, duration_ms=duration_ms, owner=self.owner_id, note=note)
        return outcome

    def _label_for(self, table: str) -> str:
        return validate_label(self.config.labels.get(table, table))

    def _apply(self, event: SyncEvent) -> str:
        label = self._label_for(event.table)
        record = None
        if event.type != "delete":
            record = transform_record(event.record_id, event.payload, event.timestamp)

        # Head-of-line claiming only orders unfinished events; a late arrival
        # older than an applied one must not overwrite it.
        latest = sync_ledger.latest_completed_timestamp(event.table, event.record_id, exclude_id=event.id)
        if latest is not None and event.timestamp is not None and latest > event.timestamp:
            logger.info(f"Sync event {event.id} for {event.table}:{event.record_id} is older than an applied event")
            return "superseded"

        if event.conflict_id:
            conflict = conflict_resolver.get_conflict(event.conflict_id)
            if conflict is not None:
                if not conflict.is_resolved:
                    raise ConflictDetected(f"conflict {conflict.id} is unresolved", conflict=conflict)
                side = conflict_resolver.winner(conflict)
                if side == "target":
                    return "skipped"
                if side == "merge":
                    if event.type == "delete":
                        return "skipped"
                    record = conflict_resolver.merge_copies(record or {}, conflict.target_data)
                return self._write(event, label, record)

        if self.config.detect_conflicts:
            current = self.target.fetch(label, event.record_id)
            conflict_type = self.resolver.detect(event, record, current)
            if conflict_type:
                if self.resolver.handle(event, record, current, conflict_type) == "skip":
                    return "skipped"

        return self._write(event, label, record)

    def _write(self, event: SyncEvent, label: str, record: dict | None) -> str:
        if event.type == "delete":
            self.target.delete(label, event.record_id)
        else:
            self.target.upsert(label, event.record_id, record or {})
        return "completed"

    def _retry_or_fail(self, event: SyncEvent, error: str) -> str:
        if event.retry_count < self.config.max_retries:
            delay = retry_delay(event.retry_count, self.config.retry_delay, self.config.max_retry_delay)
            logger.warning(
                f"Sync event {event.id} failed (attempt {event.retry_count + 1}), retrying in {delay:.1f}s: {error}"
            )
            sync_ledger.mark_retry(event.id, error, delay, owner=self.owner_id)
            return "retried"
        self._fail(event, error)
        return "failed"

    def _fail(self, event: SyncEvent, error: str) -> None:
        if not sync_ledger.mark_failed(event.id, error, owner=self.owner_id):
            return
        try:
            self.notifier.event_failed(event, error)
        except Exception:
            logger.exception(f"Failure notification for sync event {event.id} raised")
