from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import closing
from datetime import datetime, timedelta
from typing import Any

from assetsync.db.session import get_connection, parse_datetime, to_iso, transaction, utc_now
from assetsync.models.sync_event import EVENT_TYPES, SyncEvent
from assetsync.services.errors import LedgerError

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = """
    id, type, table_name, record_id, data, timestamp, status, retry_count, error_message,
    lease_owner, lease_expires_at, next_attempt_at, duration_ms, conflict_id, created_at, updated_at
"""


def _row_to_event(row: sqlite3.Row) -> SyncEvent:
    try:
        payload = json.loads(row["data"]) if row["data"] else {}
    except ValueError:
        payload = {}

    return SyncEvent(
        id=row["id"],
        type=row["type"],
        table=row["table_name"],
        record_id=row["record_id"],
        payload=payload if isinstance(payload, dict) else {},
        timestamp=parse_datetime(row["timestamp"]),
        status=row["status"],
        retry_count=row["retry_count"],
        error=row["error_message"],
        lease_owner=row["lease_owner"],
        lease_expires_at=parse_datetime(row["lease_expires_at"]),
        next_attempt_at=parse_datetime(row["next_attempt_at"]),
        duration_ms=row["duration_ms"],
        conflict_id=row["conflict_id"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def enqueue(
    event_type: str,
    table: str,
    record_id: str,
    payload: dict[str, Any],
    timestamp: datetime | None = None,
    connection: sqlite3.Connection | None = None,
) -> str:
    """Durably record a pending mutation and return its event id.

    When ``connection`` is given the insert runs on it and is left for the
    caller to commit together with the business write it describes.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"event type must be one of {', '.join(EVENT_TYPES)}, got {event_type!r}")
    if not table:
        raise ValueError("table is required")
    if record_id is None or str(record_id) == "":
        raise ValueError("record id is required")

    event_id = uuid.uuid4().hex
    now = to_iso(utc_now())
    try:
        data = json.dumps(payload or {}, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"payload is not serializable: {exc}") from exc

    params = (
        event_id,
        event_type,
        table,
        str(record_id),
        data,
        to_iso(timestamp) if timestamp else now,
        "pending",
        0,
        now,
        now,
    )
    stmt = """
        INSERT INTO sync_events (id, type, table_name, record_id, data, timestamp, status, retry_count, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    try:
        if connection is not None:
            connection.execute(stmt, params)
        else:
            with transaction() as conn:
                conn.execute(stmt, params)
    except sqlite3.Error as exc:
        logger.error(f"Failed to enqueue {event_type} for {table}:{record_id}: {exc}")
        raise LedgerError(f"Failed to enqueue sync event: {exc}") from exc

    logger.debug(f"Enqueued {event_type} {table}:{record_id} as {event_id}")
    return event_id


def claim(limit: int, owner: str, lease_seconds: float, now: datetime | None = None) -> list[SyncEvent]:
    """Move up to ``limit`` claimable events to processing under a lease held by ``owner``.

    An event is only handed out when it is the oldest unfinished event for its
    record and the record is not suspended by an unresolved conflict.
    """
    if limit <= 0:
        return []

    now = now or utc_now()
    now_iso = to_iso(now)
    expires_iso = to_iso(now + timedelta(seconds=lease_seconds))

    claimed: list[SyncEvent] = []
    try:
        with transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM sync_events e
                WHERE (
                    (e.status IN ('pending', 'retry') AND (e.next_attempt_at IS NULL OR e.next_attempt_at <= :now))
                    OR (e.status = 'processing' AND e.lease_expires_at < :now)
                )
                AND NOT EXISTS (
                    SELECT 1 FROM sync_events p
                    WHERE p.table_name = e.table_name
                      AND p.record_id = e.record_id
                      AND p.status IN ('pending', 'retry', 'processing')
                      AND (p.timestamp < e.timestamp OR (p.timestamp = e.timestamp AND p.rowid < e.rowid))
                )
                AND NOT EXISTS (
                    SELECT 1 FROM sync_conflicts c
                    WHERE c.table_name = e.table_name
                      AND c.record_id = e.record_id
                      AND c.resolution IS NULL
                )
                ORDER BY e.timestamp ASC, e.rowid ASC
                LIMIT :limit
                """,
                {"now": now_iso, "limit": limit},
            ).fetchall()

            for row in rows:
                cursor = conn.execute(
                    """
                    UPDATE sync_events
                    SET status = 'processing', lease_owner = ?, lease_expires_at = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND COALESCE(lease_expires_at, '') = COALESCE(?, '')
                    """,
                    (owner, expires_iso, now_iso, row["id"], row["status"], row["lease_expires_at"]),
                )
                if cursor.rowcount != 1:
                    continue
                event = _row_to_event(row)
                if event.status == "processing":
                    logger.warning(f"Reclaiming event {event.id} from expired lease held by {event.lease_owner}")
                event.status = "processing"
                event.lease_owner = owner
                event.lease_expires_at = parse_datetime(expires_iso)
                claimed.append(event)
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to claim sync events: {exc}") from exc

    if claimed:
        logger.info(f"{owner} claimed {len(claimed)} sync event(s)")
    return claimed


def _transition(event_id: str, sets: str, params: tuple[Any, ...], owner: str | None) -> bool:
    now_iso = to_iso(utc_now())
    stmt = f"UPDATE sync_events SET {sets}, updated_at = ? WHERE id = ? AND status = 'processing'"
    args: tuple[Any, ...] = (*params, now_iso, event_id)
    if owner is not None:
        stmt += " AND lease_owner = ?"
        args = (*args, owner)

    try:
        with transaction() as conn:
            changed = conn.execute(stmt, args).rowcount == 1
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to update sync event {event_id}: {exc}") from exc

    if not changed:
        logger.warning(f"Sync event {event_id} is no longer held by {owner or 'this worker'}; transition skipped")
    return changed


def mark_completed(event_id: str, duration_ms: float | None = None, owner: str | None = None, note: str | None = None) -> bool:
    return _transition(
        event_id,
        "status = 'completed', error_message = ?, duration_ms = ?, lease_owner = NULL, lease_expires_at = NULL, next_attempt_at = NULL",
        (note, duration_ms),
        owner,
    )


def mark_retry(event_id: str, error: str, delay_seconds: float, owner: str | None = None) -> bool:
    next_attempt = to_iso(utc_now() + timedelta(seconds=max(delay_seconds, 0.0)))
    return _transition(
        event_id,
        "status = 'retry', retry_count = retry_count + 1, error_message = ?, next_attempt_at = ?, "
        "lease_owner = NULL, lease_expires_at = NULL",
        (error, next_attempt),
        owner,
    )


def mark_failed(event_id: str, error: str, owner: str | None = None) -> bool:
    return _transition(
        event_id,
        "status = 'failed', error_message = ?, lease_owner = NULL, lease_expires_at = NULL, next_attempt_at = NULL",
        (error,),
        owner,
    )


def release(event_id: str, conflict_id: str | None = None, owner: str | None = None) -> bool:
    """Hand a processing event back to pending, optionally parked on a conflict."""
    return _transition(
        event_id,
        "status = 'pending', conflict_id = COALESCE(?, conflict_id), lease_owner = NULL, lease_expires_at = NULL",
        (conflict_id,),
        owner,
    )


def reclaim_expired(now: datetime | None = None) -> int:
    now_iso = to_iso(now or utc_now())
    try:
        with transaction() as conn:
            count = conn.execute(
                """
                UPDATE sync_events
                SET status = 'pending', lease_owner = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE status = 'processing' AND lease_expires_at < ?
                """,
                (now_iso, now_iso),
            ).rowcount
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to reclaim expired leases: {exc}") from exc

    if count:
        logger.warning(f"Requeued {count} sync event(s) whose lease expired")
    return count


def get_event(event_id: str) -> SyncEvent | None:
    with closing(get_connection()) as connection:
        row = connection.execute(
            f"SELECT {_EVENT_COLUMNS} FROM sync_events WHERE id = ?",
            (event_id,),
        ).fetchone()

    if not row:
        return None
    return _row_to_event(row)


def list_pending(limit: int = 500) -> list[SyncEvent]:
    with closing(get_connection()) as connection:
        rows = connection.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM sync_events
            WHERE status IN ('pending', 'retry')
            ORDER BY timestamp ASC, rowid ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [_row_to_event(r) for r in rows]


def list_events_for_record(table: str, record_id: str) -> list[SyncEvent]:
    with closing(get_connection()) as connection:
        rows = connection.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM sync_events
            WHERE table_name = ? AND record_id = ?
            ORDER BY timestamp ASC, rowid ASC
            """,
            (table, str(record_id)),
        ).fetchall()
    return [_row_to_event(r) for r in rows]


def latest_completed_timestamp(table: str, record_id: str, exclude_id: str | None = None) -> datetime | None:
    """Timestamp of the newest completed event for a record, if any is still retained."""
    with closing(get_connection()) as connection:
        row = connection.execute(
            """
            SELECT MAX(timestamp) AS latest
            FROM sync_events
            WHERE table_name = ? AND record_id = ? AND status = 'completed' AND id != ?
            """,
            (table, str(record_id), exclude_id or ""),
        ).fetchone()
    return parse_datetime(row["latest"]) if row else None


def count_by_status() -> dict[str, int]:
    with closing(get_connection()) as connection:
        rows = connection.execute("SELECT status, COUNT(*) AS n FROM sync_events GROUP BY status").fetchall()
    return {r["status"]: r["n"] for r in rows}


def purge(older_than_days: int) -> int:
    """Delete completed and failed events last touched before the retention window."""
    cutoff = to_iso(utc_now() - timedelta(days=older_than_days))
    try:
        with transaction() as conn:
            count = conn.execute(
                """
                DELETE FROM sync_events
                WHERE status IN ('completed', 'failed') AND updated_at < ?
                """,
                (cutoff,),
            ).rowcount
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to purge sync events: {exc}") from exc

    logger.info(f"Purged {count} sync event(s) older than {older_than_days} day(s)")
    return count
