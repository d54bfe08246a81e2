from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from assetsync.config import get_settings


def db_path() -> Path:
    return get_settings().db_path


def get_connection() -> sqlite3.Connection:
    connection = sqlite3.connect(db_path(), timeout=30)
    connection.row_factory = sqlite3.Row
    return connection


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Write transaction that takes the database write lock up front.

    Claims and status transitions run inside this so that the read of the
    current status and the update that replaces it cannot interleave with
    another writer.
    """
    connection = sqlite3.connect(db_path(), timeout=30, isolation_level=None)
    connection.row_factory = sqlite3.Row
    try:
        connection.execute("BEGIN IMMEDIATE")
        try:
            yield connection
        except BaseException:
            connection.execute("ROLLBACK")
            raise
        connection.execute("COMMIT")
    finally:
        connection.close()


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as text.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def init_db() -> None:
    path = db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = get_connection()
    try:
        connection.execute("PRAGMA journal_mode=WAL")

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_events (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                data TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                lease_owner TEXT,
                lease_expires_at TEXT,
                next_attempt_at TEXT,
                duration_ms REAL,
                conflict_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        connection.execute("CREATE INDEX IF NOT EXISTS idx_sync_events_status ON sync_events(status)")
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_events_table_record ON sync_events(table_name, record_id)"
        )

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_conflicts (
                id TEXT PRIMARY KEY,
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                source_data TEXT NOT NULL,
                target_data TEXT NOT NULL,
                conflict_type TEXT NOT NULL,
                conflict_fields TEXT NOT NULL DEFAULT '[]',
                event_id TEXT,
                resolution TEXT,
                resolved_at TEXT,
                resolved_by TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolution ON sync_conflicts(resolution)"
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_conflicts_table_record ON sync_conflicts(table_name, record_id)"
        )

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS batch_sync_jobs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                source_table TEXT NOT NULL,
                target_container TEXT NOT NULL,
                status TEXT NOT NULL,
                total_records INTEGER NOT NULL DEFAULT 0,
                processed_records INTEGER NOT NULL DEFAULT 0,
                failed_records INTEGER NOT NULL DEFAULT 0,
                successful_records INTEGER NOT NULL DEFAULT 0,
                last_key TEXT,
                elapsed_seconds REAL NOT NULL DEFAULT 0,
                config_json TEXT DEFAULT '{}',
                error_message TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS batch_sync_errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                record_id TEXT NOT NULL,
                message TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        connection.execute("CREATE INDEX IF NOT EXISTS idx_batch_sync_errors_job ON batch_sync_errors(job_id)")
        connection.commit()
    finally:
        connection.close()
