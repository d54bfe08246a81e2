"""
Conflict Detection and Resolution

Detects divergence between the source (relational) copy of a record and the
target (graph) copy, records it, and decides which side wins.

Policies:
- source_wins: the source copy overwrites the target
- target_wins: the target copy is kept and the source change is dropped
- timestamp_wins: whichever copy was modified last wins
- manual: the conflict is parked until an operator resolves it; sync for
  the record is suspended in the meantime

Operators may also resolve a conflict as ``merge``: the union of both
copies, with the source value taken for fields present on both sides.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import closing
from datetime import datetime
from typing import Any, Literal

from assetsync.db.session import get_connection, parse_datetime, to_iso, transaction, utc_now
from assetsync.models.conflict import CONFLICT_TYPES, RESOLUTIONS, ConflictResolution
from assetsync.models.sync_event import SyncEvent
from assetsync.services.errors import ConflictDetected, ConflictNotFoundError, LedgerError
from assetsync.services.target_adapter import TargetStore

logger = logging.getLogger(__name__)

Decision = Literal["apply", "skip"]

POLICIES = ("source_wins", "target_wins", "timestamp_wins", "manual")

# Clock skew tolerated between the two stores before timestamps count as diverged.
TIMESTAMP_TOLERANCE_SECONDS = 1.0

# Target-side bookkeeping that never takes part in a field comparison.
_IGNORED_FIELDS = {"createdAt", "updatedAt", "created_at", "updated_at"}


def _row_to_conflict(row: sqlite3.Row) -> ConflictResolution:
    def _load(raw: str | None, fallback: Any) -> Any:
        if not raw:
            return fallback
        try:
            return json.loads(raw)
        except ValueError:
            return fallback

    return ConflictResolution(
        id=row["id"],
        table=row["table_name"],
        record_id=row["record_id"],
        source_data=_load(row["source_data"], {}),
        target_data=_load(row["target_data"], {}),
        conflict_type=row["conflict_type"],
        conflict_fields=_load(row["conflict_fields"], []),
        event_id=row["event_id"],
        resolution=row["resolution"],
        resolved_at=parse_datetime(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        created_at=parse_datetime(row["created_at"]),
    )


def modified_at(data: dict[str, Any] | None) -> datetime | None:
    if not data:
        return None
    for key in ("updatedAt", "updated_at", "createdAt", "created_at"):
        value = parse_datetime(data.get(key))
        if value is not None:
            return value
    return None


def _values_equal(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if a is None or b is None:
        return False
    # Nested values are stored on the graph side as JSON text.
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        def _norm(v: Any) -> Any:
            if isinstance(v, str):
                try:
                    return json.loads(v)
                except ValueError:
                    return v
            return v

        return _norm(a) == _norm(b)
    return str(a) == str(b)


def diff_fields(source: dict[str, Any], target: dict[str, Any]) -> list[str]:
    fields = (set(source) | set(target)) - _IGNORED_FIELDS
    return sorted(f for f in fields if not _values_equal(source.get(f), target.get(f)))


def compare(source_data: dict[str, Any] | None, target_data: dict[str, Any] | None) -> list[tuple[str, list[str]]]:
    """Field-level audit of two copies of one record.

    Returns (conflict_type, fields) pairs; empty when the copies agree.
    """
    if not source_data and not target_data:
        return []
    if not source_data or not target_data:
        return [("deletion_conflict", ["existence"])]

    found: list[tuple[str, list[str]]] = []
    fields = diff_fields(source_data, target_data)
    if fields:
        found.append(("data_mismatch", fields))

    source_ts = modified_at(source_data)
    target_ts = modified_at(target_data)
    if source_ts and target_ts and abs((source_ts - target_ts).total_seconds()) > TIMESTAMP_TOLERANCE_SECONDS:
        found.append(("timestamp_conflict", ["updated_at", "updatedAt"]))
    return found


def record_conflict(
    table: str,
    record_id: str,
    source_data: dict[str, Any],
    target_data: dict[str, Any],
    conflict_type: str,
    conflict_fields: list[str] | None = None,
    event_id: str | None = None,
) -> ConflictResolution:
    if conflict_type not in CONFLICT_TYPES:
        raise ValueError(f"conflict type must be one of {', '.join(CONFLICT_TYPES)}, got {conflict_type!r}")

    conflict_id = uuid.uuid4().hex
    now = utc_now()
    try:
        with transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_conflicts
                    (id, table_name, record_id, source_data, target_data, conflict_type, conflict_fields, event_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conflict_id,
                    table,
                    str(record_id),
                    json.dumps(source_data or {}, ensure_ascii=False, default=str),
                    json.dumps(target_data or {}, ensure_ascii=False, default=str),
                    conflict_type,
                    json.dumps(conflict_fields or []),
                    event_id,
                    to_iso(now),
                ),
            )
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to record conflict for {table}:{record_id}: {exc}") from exc

    logger.info(f"Recorded {conflict_type} for {table}:{record_id} ({conflict_id})")
    return ConflictResolution(
        id=conflict_id,
        table=table,
        record_id=str(record_id),
        source_data=source_data or {},
        target_data=target_data or {},
        conflict_type=conflict_type,
        conflict_fields=list(conflict_fields or []),
        event_id=event_id,
        created_at=now,
    )


def get_conflict(conflict_id: str) -> ConflictResolution | None:
    with closing(get_connection()) as connection:
        row = connection.execute("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)).fetchone()
    if not row:
        return None
    return _row_to_conflict(row)


def list_unresolved(table: str | None = None) -> list[ConflictResolution]:
    query = "SELECT * FROM sync_conflicts WHERE resolution IS NULL"
    params: tuple[Any, ...] = ()
    if table:
        query += " AND table_name = ?"
        params = (table,)
    query += " ORDER BY created_at DESC"

    with closing(get_connection()) as connection:
        rows = connection.execute(query, params).fetchall()
    return [_row_to_conflict(r) for r in rows]


def conflict_counts() -> dict[str, Any]:
    with closing(get_connection()) as connection:
        totals = connection.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN resolution IS NULL THEN 1 ELSE 0 END) AS unresolved
            FROM sync_conflicts
            """
        ).fetchone()
        by_type = connection.execute(
            "SELECT conflict_type, COUNT(*) AS n FROM sync_conflicts GROUP BY conflict_type"
        ).fetchall()
        by_table = connection.execute(
            "SELECT table_name, COUNT(*) AS n FROM sync_conflicts GROUP BY table_name"
        ).fetchall()

    total = totals["total"] or 0
    unresolved = totals["unresolved"] or 0
    return {
        "totalConflicts": total,
        "resolvedConflicts": total - unresolved,
        "unresolvedConflicts": unresolved,
        "conflictsByType": {r["conflict_type"]: r["n"] for r in by_type},
        "conflictsByTable": {r["table_name"]: r["n"] for r in by_table},
    }


def resolve(conflict_id: str, resolution: str, resolved_by: str) -> ConflictResolution:
    """Set a conflict's resolution once; later calls return the stored one unchanged."""
    if resolution not in RESOLUTIONS:
        raise ValueError(f"resolution must be one of {', '.join(RESOLUTIONS)}, got {resolution!r}")

    try:
        with transaction() as conn:
            changed = conn.execute(
                """
                UPDATE sync_conflicts
                SET resolution = ?, resolved_at = ?, resolved_by = ?
                WHERE id = ? AND resolution IS NULL
                """,
                (resolution, to_iso(utc_now()), resolved_by, conflict_id),
            ).rowcount
    except sqlite3.Error as exc:
        raise LedgerError(f"Failed to resolve conflict {conflict_id}: {exc}") from exc

    conflict = get_conflict(conflict_id)
    if conflict is None:
        raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
    if changed:
        logger.info(f"Conflict {conflict_id} resolved as {resolution} by {resolved_by}")
    return conflict


def merge_copies(source_data: dict[str, Any], target_data: dict[str, Any]) -> dict[str, Any]:
    """Field-level union of both copies; the source value wins where both have a field."""
    merged = dict(target_data or {})
    merged.update(source_data or {})
    return merged


def winner(conflict: ConflictResolution) -> Literal["source", "target", "merge"]:
    """Which copy a resolved conflict keeps."""
    if conflict.resolution == "source_wins":
        return "source"
    if conflict.resolution == "target_wins":
        return "target"
    if conflict.resolution == "merge":
        return "merge"
    if conflict.resolution == "timestamp_wins":
        source_ts = modified_at(conflict.source_data)
        target_ts = modified_at(conflict.target_data)
        if target_ts and (source_ts is None or target_ts > source_ts):
            return "target"
        return "source"
    raise ValueError(f"conflict {conflict.id} is not resolved")


class ConflictResolver:
    """Applies the configured policy to divergence found while dispatching events."""

    def __init__(self, policy: str = "timestamp_wins"):
        if policy not in POLICIES:
            raise ValueError(f"conflict policy must be one of {', '.join(POLICIES)}, got {policy!r}")
        self.policy = policy

    def detect(self, event: SyncEvent, record: dict[str, Any] | None, target_state: dict[str, Any] | None) -> str | None:
        """Classify the divergence between an incoming event and the target copy, if any."""
        if not target_state:
            return None

        target_ts = modified_at(target_state)
        newer_on_target = target_ts is not None and event.timestamp is not None and target_ts > event.timestamp

        if event.type == "delete":
            return "deletion_conflict" if newer_on_target else None
        if newer_on_target:
            return "timestamp_conflict"
        if target_ts is None and event.type == "create" and record is not None and diff_fields(record, target_state):
            return "data_mismatch"
        return None

    def handle(
        self,
        event: SyncEvent,
        record: dict[str, Any] | None,
        target_state: dict[str, Any],
        conflict_type: str,
    ) -> Decision:
        """Persist the conflict and decide whether the event's write goes ahead.

        Raises ConflictDetected under the manual policy; the caller parks the event.
        """
        source_data = dict(record or event.payload or {})
        if modified_at(source_data) is None and event.timestamp is not None:
            source_data["updatedAt"] = to_iso(event.timestamp)

        conflict = record_conflict(
            table=event.table,
            record_id=event.record_id,
            source_data=source_data,
            target_data=target_state,
            conflict_type=conflict_type,
            conflict_fields=diff_fields(source_data, target_state) or ["existence"],
            event_id=event.id,
        )

        if self.policy == "manual":
            raise ConflictDetected(
                f"{conflict_type} on {event.table}:{event.record_id} requires manual resolution",
                conflict=conflict,
            )

        resolved = resolve(conflict.id, self.policy, f"policy:{self.policy}")
        side = winner(resolved)
        logger.info(f"{conflict_type} on {event.table}:{event.record_id} resolved by {self.policy}: {side} wins")
        return "apply" if side == "source" else "skip"

    def settle(
        self,
        conflict_id: str,
        resolution: str,
        resolved_by: str,
        target: TargetStore,
        label: str,
    ) -> ConflictResolution:
        """Resolve a conflict and, for one found by an audit, write the winning copy to the target.

        Conflicts raised by an event are applied when the parked event is
        dispatched again. Keeping the target copy needs no write, and the
        source store is never written to.
        """
        existing = get_conflict(conflict_id)
        if existing is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")

        conflict = resolve(conflict_id, resolution, resolved_by)
        if existing.is_resolved or conflict.event_id is not None:
            return conflict

        side = winner(conflict)
        if side == "target":
            return conflict
        data = conflict.source_data if side == "source" else merge_copies(conflict.source_data, conflict.target_data)
        if data:
            target.upsert(label, conflict.record_id, data)
        else:
            target.delete(label, conflict.record_id)
        logger.info(f"Applied {side} copy of {conflict.table}:{conflict.record_id} for conflict {conflict.id}")
        return conflict

    def audit_record(
        self,
        table: str,
        record_id: str,
        source_data: dict[str, Any] | None,
        target_data: dict[str, Any] | None,
    ) -> list[ConflictResolution]:
        """Record every divergence between two copies found outside the event stream."""
        found = []
        for conflict_type, fields in compare(source_data, target_data):
            found.append(
                record_conflict(
                    table=table,
                    record_id=record_id,
                    source_data=source_data or {},
                    target_data=target_data or {},
                    conflict_type=conflict_type,
                    conflict_fields=fields,
                )
            )
        return found
