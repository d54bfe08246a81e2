from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import closing
from datetime import timedelta
from typing import Any, Callable

from assetsync.db.session import get_connection, parse_datetime, to_iso, transaction, utc_now, utc_now_iso
from assetsync.models.batch_job import (
    BatchSyncConfig,
    BatchSyncError,
    BatchSyncJob,
    BatchSyncResult,
    JobProgress,
)
from assetsync.services.dispatcher import retry_delay
from assetsync.services.errors import (
    JobInfrastructureError,
    JobNotFoundError,
    JobStateError,
    LedgerError,
    PermanentValidationError,
    RecordLevelError,
    TransientTargetError,
)
from assetsync.services.postgres_service import SourceReader
from assetsync.services.target_adapter import TargetStore, transform_record, validate_label

logger = logging.getLogger(__name__)

CANCEL_REASON = "Job cancelled by user"

PRESET_MIGRATIONS: dict[str, dict[str, Any]] = {
    "assets": {
        "name": "Migrate All Assets",
        "description": "Migrate all assets from PostgreSQL to the graph store",
        "source_table": "assets",
        "target_container": "asset",
        "config": BatchSyncConfig(batch_size=1000, max_concurrency=10),
    },
    "work_orders": {
        "name": "Migrate All Work Orders",
        "description": "Migrate all work orders from PostgreSQL to the graph store",
        "source_table": "work_orders",
        "target_container": "work_order",
        "config": BatchSyncConfig(batch_size=500, max_concurrency=5),
    },
    "users": {
        "name": "Migrate All Users",
        "description": "Migrate all users from PostgreSQL to the graph store",
        "source_table": "users",
        "target_container": "user",
        "config": BatchSyncConfig(batch_size=100, max_concurrency=3),
    },
}


# -------------------------
# Persistence
# -------------------------

def _row_to_job(row: sqlite3.Row) -> BatchSyncJob:
    config: dict[str, Any] | None = None
    raw = row["config_json"]
    if raw:
        try:
            parsed = json.loads(raw)
            config = parsed if isinstance(parsed, dict) else None
        except ValueError:
            config = None

    return BatchSyncJob(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        source_table=row["source_table"],
        target_container=row["target_container"],
        status=row["status"],
        progress=JobProgress(
            total_records=row["total_records"],
            processed_records=row["processed_records"],
            failed_records=row["failed_records"],
        ),
        config=BatchSyncConfig.from_dict(config),
        successful_records=row["successful_records"],
        last_key=row["last_key"],
        elapsed_seconds=row["elapsed_seconds"] or 0.0,
        error_message=row["error_message"],
        created_at=parse_datetime(row["created_at"]),
        started_at=parse_datetime(row["started_at"]),
        completed_at=parse_datetime(row["completed_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def get_job(job_id: str) -> BatchSyncJob | None:
    with closing(get_connection()) as connection:
        row = connection.execute("SELECT * FROM batch_sync_jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(statuses: tuple[str, ...] | None = None) -> list[BatchSyncJob]:
    query = "SELECT * FROM batch_sync_jobs"
    params: tuple[Any, ...] = ()
    if statuses:
        query += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
        params = tuple(statuses)
    query += " ORDER BY created_at DESC"

    with closing(get_connection()) as connection:
        rows = connection.execute(query, params).fetchall()
    return [_row_to_job(r) for r in rows]


def list_errors(job_id: str) -> list[BatchSyncError]:
    with closing(get_connection()) as connection:
        rows = connection.execute(
            "SELECT record_id, message, timestamp, retry_count FROM batch_sync_errors WHERE job_id = ? ORDER BY id",
            (job_id,),
        ).fetchall()
    return [
        BatchSyncError(
            record_id=r["record_id"],
            message=r["message"],
            timestamp=parse_datetime(r["timestamp"]),
            retry_count=r["retry_count"],
        )
        for r in rows
    ]


def _set_status(
    job_id: str,
    from_statuses: tuple[str, ...],
    to_status: str,
    *,
    error_message: str | None = None,
    completed: bool = False,
    started: bool = False,
) -> bool:
    now = utc_now_iso()
    sets = ["status = ?", "updated_at = ?"]
    params: list[Any] = [to_status, now]
    if error_message is not None:
        sets.append("error_message = ?")
        params.append(error_message)
    if completed:
        sets.append("completed_at = ?")
        params.append(now)
    if started:
        sets.append("started_at = COALESCE(started_at, ?)")
        params.append(now)

    placeholders = ", ".join("?" for _ in from_statuses)
    params.extend([job_id, *from_statuses])
    try:
        with transaction() as conn:
            cursor = conn.execute(
                f"UPDATE batch_sync_jobs SET {', '.join(sets)} WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            return cursor.rowcount == 1
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to update batch job {job_id}: {exc}") from exc


def _current_status(job_id: str) -> str | None:
    with closing(get_connection()) as connection:
        row = connection.execute("SELECT status FROM batch_sync_jobs WHERE id = ?", (job_id,)).fetchone()
    return row["status"] if row else None


def _save_page(
    job_id: str,
    *,
    total: int,
    processed: int,
    failed: int,
    successful: int,
    last_key: str | None,
    elapsed: float,
    errors: list[BatchSyncError],
) -> None:
    try:
        with transaction() as conn:
            conn.execute(
                """
                UPDATE batch_sync_jobs
                SET total_records = ?, processed_records = ?, failed_records = ?, successful_records = ?,
                    last_key = ?, elapsed_seconds = ?, updated_at = ?
                WHERE id = ?
                """,
                (total, processed, failed, successful, last_key, elapsed, utc_now_iso(), job_id),
            )
            conn.executemany(
                """
                INSERT INTO batch_sync_errors (job_id, record_id, message, timestamp, retry_count)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(job_id, e.record_id, e.message, to_iso(e.timestamp), e.retry_count) for e in errors],
            )
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to save progress of batch job {job_id}: {exc}") from exc


def _dump_key(key: Any) -> str | None:
    if key is None:
        return None
    return json.dumps(key, default=str)


def _load_key(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def cleanup(older_than_days: int) -> int:
    """Delete completed jobs (and their error lists) finished before the retention window."""
    cutoff = to_iso(utc_now() - timedelta(days=older_than_days))
    try:
        with transaction() as conn:
            ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM batch_sync_jobs WHERE status = 'completed' AND completed_at < ?",
                    (cutoff,),
                ).fetchall()
            ]
            for job_id in ids:
                conn.execute("DELETE FROM batch_sync_errors WHERE job_id = ?", (job_id,))
                conn.execute("DELETE FROM batch_sync_jobs WHERE id = ?", (job_id,))
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to clean up batch jobs: {exc}") from exc

    logger.info(f"Removed {len(ids)} completed batch job(s) older than {older_than_days} day(s)")
    return len(ids)


def build_result(job: BatchSyncJob) -> BatchSyncResult:
    processed = job.progress.processed_records
    return BatchSyncResult(
        job_id=job.id,
        status=job.status,
        total_records=job.progress.total_records,
        successful_records=job.successful_records,
        failed_records=job.progress.failed_records,
        duration=job.elapsed_seconds,
        average_time_per_record=(job.elapsed_seconds / processed) if processed else 0.0,
        errors=list_errors(job.id),
    )


# -------------------------
# Coordinator
# -------------------------

class BatchMigrationCoordinator:
    """
    Resumable bulk copy of a whole source table into the graph store.

    Pages are read in primary-key order and the last key of every finished
    page is stored, so a paused or interrupted job continues right after it.
    Pause and cancel are only observed between pages.
    """

    def __init__(
        self,
        source: SourceReader,
        target: TargetStore,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.target = target
        self._sleep = sleep

    def create_job(
        self,
        name: str,
        source_table: str,
        target_container: str,
        config: BatchSyncConfig | None = None,
        description: str = "",
    ) -> str:
        config = config or BatchSyncConfig()
        try:
            validate_label(target_container)
        except PermanentValidationError as exc:
            raise ValueError(str(exc)) from exc
        if config.batch_size < 1 or config.max_concurrency < 1:
            raise ValueError("batch_size and max_concurrency must be positive")

        try:
            total = int(self.source.count_rows(source_table))
        except Exception as exc:
            raise JobInfrastructureError(f"Unable to count rows in {source_table}: {exc}") from exc

        job_id = uuid.uuid4().hex
        now = utc_now_iso()
        try:
            with transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO batch_sync_jobs
                        (id, name, description, source_table, target_container, status, total_records,
                         config_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        name,
                        description,
                        source_table,
                        target_container,
                        "pending",
                        total,
                        json.dumps(config.to_dict()),
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise LedgerError(f"Failed to create batch job: {exc}") from exc

        logger.info(f"Created batch job {job_id} ({name}): {source_table} -> {target_container}, {total} record(s)")
        return job_id

    def get_job(self, job_id: str) -> BatchSyncJob:
        job = get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def get_result(self, job_id: str) -> BatchSyncResult:
        return build_result(self.get_job(job_id))

    def list_jobs(self) -> list[BatchSyncJob]:
        return list_jobs()

    def active_jobs(self) -> list[BatchSyncJob]:
        return list_jobs(("running", "paused"))

    def cleanup(self, older_than_days: int = 7) -> int:
        return cleanup(older_than_days)

    def pause(self, job_id: str) -> BatchSyncJob:
        job = self.get_job(job_id)
        if not _set_status(job_id, ("running",), "paused"):
            raise JobStateError(f"Job {job_id} is {job.status}; only running jobs can be paused")
        logger.info(f"Batch job {job_id} pause requested")
        return self.get_job(job_id)

    def resume(self, job_id: str) -> BatchSyncResult:
        job = self.get_job(job_id)
        if job.status != "paused":
            raise JobStateError(f"Job {job_id} is {job.status}; only paused jobs can be resumed")
        logger.info(f"Resuming batch job {job_id} after {job.progress.processed_records} record(s)")
        return self.execute(job_id)

    def cancel(self, job_id: str, reason: str = CANCEL_REASON) -> BatchSyncJob:
        job = self.get_job(job_id)
        if not _set_status(
            job_id, ("pending", "running", "paused"), "failed", error_message=reason, completed=True
        ):
            raise JobStateError(f"Job {job_id} is already {job.status}")
        logger.info(f"Batch job {job_id} cancelled: {reason}")
        return self.get_job(job_id)

    def migrate(self, preset: str) -> BatchSyncResult:
        preset_def = PRESET_MIGRATIONS.get(preset)
        if preset_def is None:
            raise ValueError(f"unknown migration preset {preset!r}; expected one of {', '.join(PRESET_MIGRATIONS)}")
        job_id = self.create_job(
            preset_def["name"],
            preset_def["source_table"],
            preset_def["target_container"],
            config=BatchSyncConfig.from_dict(preset_def["config"].to_dict()),
            description=preset_def["description"],
        )
        return self.execute(job_id)

    def execute(self, job_id: str) -> BatchSyncResult:
        job = self.get_job(job_id)
        if job.status == "running":
            raise JobStateError(f"Job {job_id} is already running")
        if not _set_status(job_id, ("pending", "paused"), "running", started=True):
            raise JobStateError(f"Job {job_id} is {job.status} and cannot be executed")

        cfg = job.config
        total = job.progress.total_records
        processed = job.progress.processed_records
        failed = job.progress.failed_records
        successful = job.successful_records
        after_key = _load_key(job.last_key)
        elapsed_before = job.elapsed_seconds
        run_started = time.monotonic()
        exhausted = False

        logger.info(f"Executing batch job {job_id} from record {processed} of {total}")

        try:
            with ThreadPoolExecutor(max_workers=cfg.max_concurrency, thread_name_prefix=f"batch-{job_id[:8]}") as pool:
                while True:
                    status = _current_status(job_id)
                    if status != "running":
                        logger.info(f"Batch job {job_id} is {status}; stopping at page boundary")
                        break

                    self._check_target()
                    try:
                        page = self.source.fetch_page(job.source_table, cfg.key_column, after_key, cfg.batch_size)
                    except Exception as exc:
                        raise JobInfrastructureError(f"Source read failed for {job.source_table}: {exc}") from exc

                    if not page:
                        exhausted = True
                        break

                    ok, page_errors = self._apply_page(pool, page, job)
                    if ok == 0:
                        # Nothing landed; tell an outage apart from a page of bad records.
                        self._check_target()

                    processed += len(page)
                    successful += ok
                    failed += len(page_errors)
                    total = max(total, processed)
                    after_key = page[-1].get(cfg.key_column)

                    _save_page(
                        job_id,
                        total=total,
                        processed=processed,
                        failed=failed,
                        successful=successful,
                        last_key=_dump_key(after_key),
                        elapsed=elapsed_before + (time.monotonic() - run_started),
                        errors=page_errors,
                    )
                    logger.info(
                        f"Batch job {job_id}: {processed}/{total} processed, {failed} failed"
                    )

                    if len(page) < cfg.batch_size:
                        exhausted = True
                        break
        except (JobInfrastructureError, LedgerError) as exc:
            logger.error(f"Batch job {job_id} aborted: {exc}")
            _set_status(job_id, ("running", "paused"), "failed", error_message=str(exc), completed=True)
            raise

        if exhausted:
            if processed != total:
                # Rows were removed from the source while the job ran.
                _save_page(
                    job_id,
                    total=processed,
                    processed=processed,
                    failed=failed,
                    successful=successful,
                    last_key=_dump_key(after_key),
                    elapsed=elapsed_before + (time.monotonic() - run_started),
                    errors=[],
                )
            if _set_status(job_id, ("running",), "completed", completed=True):
                logger.info(f"Batch job {job_id} completed: {successful} succeeded, {failed} failed")

        return self.get_result(job_id)

    def _check_target(self) -> None:
        try:
            self.target.verify()
        except TransientTargetError as exc:
            raise JobInfrastructureError(f"Target store unreachable: {exc}") from exc

    def _apply_page(
        self,
        pool: ThreadPoolExecutor,
        page: list[dict[str, Any]],
        job: BatchSyncJob,
    ) -> tuple[int, list[BatchSyncError]]:
        futures: list[tuple[Future, dict[str, Any]]] = [
            (pool.submit(self._apply_record, record, job), record) for record in page
        ]
        wait([f for f, _ in futures])

        ok = 0
        errors: list[BatchSyncError] = []
        for index, (future, record) in enumerate(futures):
            exc = future.exception()
            if exc is None:
                ok += 1
                continue
            if isinstance(exc, RecordLevelError):
                record_id, retries = exc.record_id, exc.retry_count
            else:
                key = record.get(job.config.key_column)
                record_id, retries = (str(key) if key is not None else f"unknown_{index}"), 0
            errors.append(
                BatchSyncError(record_id=record_id, message=str(exc), timestamp=utc_now(), retry_count=retries)
            )
        return ok, errors

    def _apply_record(self, record: dict[str, Any], job: BatchSyncJob) -> int:
        cfg = job.config
        key = record.get(cfg.key_column)
        if key is None:
            raise RecordLevelError("unknown", f"record has no value for key column {cfg.key_column!r}")
        record_id = str(key)

        try:
            props = transform_record(record_id, record)
        except PermanentValidationError as exc:
            raise RecordLevelError(record_id, str(exc)) from exc

        attempt = 0
        while True:
            try:
                self.target.upsert(job.target_container, record_id, props)
                return attempt
            except TransientTargetError as exc:
                if attempt >= cfg.retry_attempts:
                    raise RecordLevelError(
                        record_id, f"Failed to process record {record_id}: {exc}", attempt
                    ) from exc
                self._sleep(retry_delay(attempt, cfg.retry_delay, cfg.max_retry_delay))
                attempt += 1
            except PermanentValidationError as exc:
                raise RecordLevelError(record_id, f"Failed to process record {record_id}: {exc}", attempt) from exc
