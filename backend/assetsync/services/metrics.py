from __future__ import annotations

from contextlib import closing
from datetime import timedelta
from typing import Any

from assetsync.db.session import get_connection, parse_datetime, to_iso, utc_now
from assetsync.models.metrics import SyncMetrics
from assetsync.services import conflict_resolver, sync_ledger


def get_metrics(window_minutes: int = 5) -> SyncMetrics:
    """Ledger-wide counters; sync_rate is completions per minute over the recent window."""
    since = to_iso(utc_now() - timedelta(minutes=window_minutes))

    with closing(get_connection()) as connection:
        row = connection.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                   SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                   SUM(CASE WHEN status IN ('pending', 'retry', 'processing') THEN 1 ELSE 0 END) AS open,
                   AVG(CASE WHEN status = 'completed' THEN duration_ms END) AS avg_ms,
                   MAX(CASE WHEN status = 'completed' THEN updated_at END) AS last_sync,
                   SUM(CASE WHEN status = 'completed' AND updated_at >= ? THEN 1 ELSE 0 END) AS recent
            FROM sync_events
            """,
            (since,),
        ).fetchone()

    recent = row["recent"] or 0
    return SyncMetrics(
        total_events=row["total"] or 0,
        successful_syncs=row["completed"] or 0,
        failed_syncs=row["failed"] or 0,
        pending_syncs=row["open"] or 0,
        average_sync_time=round(row["avg_ms"] or 0.0, 2),
        sync_rate=round(recent / window_minutes, 2) if window_minutes > 0 else 0.0,
        last_sync_time=parse_datetime(row["last_sync"]),
    )


def get_status(dispatcher_running: bool) -> dict[str, Any]:
    counts = sync_ledger.count_by_status()
    conflicts = conflict_resolver.conflict_counts()
    return {
        "dispatcherRunning": dispatcher_running,
        "eventsByStatus": counts,
        "unresolvedConflicts": conflicts["unresolvedConflicts"],
    }
