"""
Tests for the sync event ledger: enqueue, claiming rules, guarded transitions,
lease recovery and retention.
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest

from assetsync.db.session import get_connection, init_db, to_iso, transaction
from assetsync.services import conflict_resolver, metrics, sync_ledger

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_enqueue_records_pending_event():
    event_id = sync_ledger.enqueue("create", "assets", "A1", {"name": "Pump"}, timestamp=T0)

    event = sync_ledger.get_event(event_id)
    assert event.status == "pending"
    assert event.retry_count == 0
    assert event.payload == {"name": "Pump"}
    assert event.timestamp == T0
    assert event.table == "assets"


@pytest.mark.parametrize(
    "args",
    [
        ("upsert", "assets", "A1", {}),
        ("create", "", "A1", {}),
        ("create", "assets", "", {}),
    ],
)
def test_enqueue_rejects_bad_input(args):
    with pytest.raises(ValueError):
        sync_ledger.enqueue(*args)


def test_enqueue_joins_caller_transaction(engine_db):
    """An event written on the caller's connection disappears with its rollback."""
    conn = sqlite3.connect(engine_db)
    try:
        sync_ledger.enqueue("update", "assets", "A1", {"name": "Pump"}, connection=conn)
        conn.rollback()
    finally:
        conn.close()

    assert sync_ledger.list_pending() == []


def test_claim_moves_events_to_processing_under_lease():
    sync_ledger.enqueue("create", "assets", "A1", {}, timestamp=T0)
    sync_ledger.enqueue("create", "assets", "A2", {}, timestamp=T0 + timedelta(seconds=1))

    claimed = sync_ledger.claim(10, "worker-1", lease_seconds=60)

    assert [e.record_id for e in claimed] == ["A1", "A2"]
    for event in claimed:
        stored = sync_ledger.get_event(event.id)
        assert stored.status == "processing"
        assert stored.lease_owner == "worker-1"
        assert stored.lease_expires_at is not None

    assert sync_ledger.claim(10, "worker-2", lease_seconds=60) == []


def test_claim_respects_limit_and_age_order():
    for i in range(5):
        sync_ledger.enqueue("update", "assets", f"A{i}", {}, timestamp=T0 - timedelta(seconds=i))

    claimed = sync_ledger.claim(2, "worker-1", lease_seconds=60)

    assert [e.record_id for e in claimed] == ["A4", "A3"]


def test_claim_holds_back_newer_events_of_same_record():
    first = sync_ledger.enqueue("update", "assets", "A1", {"v": 1}, timestamp=T0)
    second = sync_ledger.enqueue("update", "assets", "A1", {"v": 2}, timestamp=T0 + timedelta(seconds=1))

    claimed = sync_ledger.claim(10, "worker-1", lease_seconds=60)
    assert [e.id for e in claimed] == [first]

    sync_ledger.mark_completed(first, owner="worker-1")
    claimed = sync_ledger.claim(10, "worker-1", lease_seconds=60)
    assert [e.id for e in claimed] == [second]


def test_retry_event_waits_for_next_attempt():
    event_id = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    sync_ledger.claim(1, "worker-1", lease_seconds=60)

    assert sync_ledger.mark_retry(event_id, "timeout", delay_seconds=300, owner="worker-1")
    event = sync_ledger.get_event(event_id)
    assert event.status == "retry"
    assert event.retry_count == 1
    assert event.error == "timeout"

    assert sync_ledger.claim(1, "worker-1", lease_seconds=60) == []
    later = sync_ledger.claim(1, "worker-1", lease_seconds=60, now=event.next_attempt_at + timedelta(seconds=1))
    assert [e.id for e in later] == [event_id]


def test_expired_lease_is_reclaimed_by_another_worker():
    event_id = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    sync_ledger.claim(1, "worker-1", lease_seconds=30)

    stolen = sync_ledger.claim(1, "worker-2", lease_seconds=30, now=datetime.now(timezone.utc) + timedelta(minutes=5))
    assert [e.id for e in stolen] == [event_id]

    # The first holder lost its lease and cannot complete the event.
    assert not sync_ledger.mark_completed(event_id, owner="worker-1")
    assert sync_ledger.mark_completed(event_id, owner="worker-2")
    assert sync_ledger.get_event(event_id).status == "completed"


def test_reclaim_expired_requeues_processing_events():
    event_id = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    sync_ledger.claim(1, "worker-1", lease_seconds=30)

    assert sync_ledger.reclaim_expired(now=datetime.now(timezone.utc) + timedelta(minutes=5)) == 1

    event = sync_ledger.get_event(event_id)
    assert event.status == "pending"
    assert event.lease_owner is None


def test_transitions_require_processing_status():
    event_id = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)

    assert not sync_ledger.mark_completed(event_id)
    assert not sync_ledger.mark_failed(event_id, "boom")
    assert sync_ledger.get_event(event_id).status == "pending"


def test_unresolved_conflict_suspends_record():
    sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    sync_ledger.enqueue("update", "assets", "B1", {}, timestamp=T0)
    conflict = conflict_resolver.record_conflict("assets", "A1", {"v": 1}, {"v": 2}, "data_mismatch", ["v"])

    claimed = sync_ledger.claim(10, "worker-1", lease_seconds=60)
    assert [e.record_id for e in claimed] == ["B1"]

    conflict_resolver.resolve(conflict.id, "source_wins", "ops")
    claimed = sync_ledger.claim(10, "worker-1", lease_seconds=60)
    assert [e.record_id for e in claimed] == ["A1"]


def test_purge_removes_only_old_finished_events():
    done = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    sync_ledger.claim(1, "worker-1", lease_seconds=60)
    sync_ledger.mark_completed(done, owner="worker-1")
    waiting = sync_ledger.enqueue("update", "assets", "A2", {}, timestamp=T0)

    with transaction() as conn:
        conn.execute(
            "UPDATE sync_events SET updated_at = ?",
            (to_iso(datetime.now(timezone.utc) - timedelta(days=45)),),
        )

    assert sync_ledger.purge(30) == 1
    assert sync_ledger.get_event(done) is None
    assert sync_ledger.get_event(waiting) is not None


def test_metrics_reflect_ledger_state():
    ok = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    bad = sync_ledger.enqueue("update", "assets", "A2", {}, timestamp=T0)
    sync_ledger.enqueue("update", "assets", "A3", {}, timestamp=T0)
    sync_ledger.claim(2, "worker-1", lease_seconds=60)
    sync_ledger.mark_completed(ok, duration_ms=40.0, owner="worker-1")
    sync_ledger.mark_failed(bad, "rejected", owner="worker-1")

    m = metrics.get_metrics(window_minutes=5)

    assert m.total_events == 3
    assert m.successful_syncs == 1
    assert m.failed_syncs == 1
    assert m.pending_syncs == 1
    assert m.average_sync_time == 40.0
    assert m.sync_rate == 0.2
    assert m.last_sync_time is not None


def test_concurrent_claimers_never_share_an_event():
    for i in range(200):
        sync_ledger.enqueue("update", "assets", f"R{i}", {}, timestamp=T0 + timedelta(milliseconds=i))
    claimed = []
    lock = threading.Lock()

    def worker(n):
        while True:
            batch = sync_ledger.claim(7, f"worker-{n}", lease_seconds=60)
            if not batch:
                return
            with lock:
                claimed.extend(e.id for e in batch)

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(worker, range(6)))

    assert len(claimed) == 200
    assert len(set(claimed)) == 200
    assert sync_ledger.count_by_status() == {"processing": 200}


def test_latest_completed_timestamp_ignores_unfinished_events():
    done = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)
    sync_ledger.claim(1, "worker-1", lease_seconds=60)
    sync_ledger.mark_completed(done, owner="worker-1")
    sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0 + timedelta(minutes=1))

    assert sync_ledger.latest_completed_timestamp("assets", "A1") == T0
    assert sync_ledger.latest_completed_timestamp("assets", "A1", exclude_id=done) is None
    assert sync_ledger.latest_completed_timestamp("assets", "B1") is None


def test_init_db_is_repeatable(engine_db):
    event_id = sync_ledger.enqueue("update", "assets", "A1", {}, timestamp=T0)

    init_db()

    with closing(get_connection()) as connection:
        columns = {r["name"] for r in connection.execute("PRAGMA table_info(sync_events)").fetchall()}
    assert {"duration_ms", "lease_owner", "conflict_id"} <= columns
    assert sync_ledger.get_event(event_id) is not None
