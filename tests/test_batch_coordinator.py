"""
Tests for the batch migration coordinator.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_rows

from assetsync.db.session import to_iso, transaction
from assetsync.models.batch_job import BatchSyncConfig, JobProgress
from assetsync.services import batch_coordinator
from assetsync.services.batch_coordinator import BatchMigrationCoordinator
from assetsync.services.errors import (
    JobInfrastructureError,
    JobNotFoundError,
    JobStateError,
    PermanentValidationError,
    TransientTargetError,
)


@pytest.fixture
def coordinator(source, target):
    return BatchMigrationCoordinator(source, target, sleep=lambda seconds: None)


def test_full_table_migration_in_pages(coordinator, source, target):
    source.tables["assets"] = make_rows(2500)
    job_id = coordinator.create_job(
        "Migrate All Assets", "assets", "asset", BatchSyncConfig(batch_size=1000, max_concurrency=10)
    )
    assert coordinator.get_job(job_id).progress.total_records == 2500

    result = coordinator.execute(job_id)

    assert result.status == "completed"
    assert result.total_records == 2500
    assert result.successful_records == 2500
    assert result.failed_records == 0
    assert result.errors == []
    assert [n for _, n in source.reads] == [1000, 1000, 500]

    job = coordinator.get_job(job_id)
    assert job.progress.processed_records == 2500
    assert job.progress.percentage == 100.0
    assert job.completed_at is not None
    assert len(target.nodes) == 2500
    assert set(target.upsert_counts().values()) == {1}


def test_nested_columns_are_stored_as_json(coordinator, source, target):
    source.tables["assets"] = make_rows(1)
    job_id = coordinator.create_job("one", "assets", "asset", BatchSyncConfig(batch_size=10))

    coordinator.execute(job_id)

    node = target.nodes[("asset", "1")]
    assert node["id"] == "1"
    assert node["location"] == '{"lat": 52.0, "lng": 4.5}'


def test_pause_then_resume_processes_every_record_once(coordinator, source, target):
    source.tables["assets"] = make_rows(2500)
    job_id = coordinator.create_job("assets", "assets", "asset", BatchSyncConfig(batch_size=1000))

    def pause_after_first_page(reads):
        if reads == 1:
            coordinator.pause(job_id)

    source.on_page = pause_after_first_page
    paused = coordinator.execute(job_id)

    assert paused.status == "paused"
    job = coordinator.get_job(job_id)
    assert job.progress.processed_records == 1000
    assert job.completed_at is None

    source.on_page = None
    resumed = coordinator.resume(job_id)

    assert resumed.status == "completed"
    assert resumed.successful_records == 2500
    assert source.reads[1][0] == 1000
    assert len(target.nodes) == 2500
    assert set(target.upsert_counts().values()) == {1}


def test_progress_never_exceeds_total_and_only_grows(coordinator, source):
    source.tables["assets"] = make_rows(950)
    job_id = coordinator.create_job("assets", "assets", "asset", BatchSyncConfig(batch_size=200))
    seen = []

    def snapshot(_reads):
        job = batch_coordinator.get_job(job_id)
        seen.append((job.progress.processed_records, job.progress.total_records, job.progress.percentage))

    source.on_page = snapshot
    coordinator.execute(job_id)
    snapshot(None)

    processed = [p for p, _, _ in seen]
    assert processed == sorted(processed)
    assert all(0 <= p <= t for p, t, _ in seen)
    assert all(0.0 <= pct <= 100.0 for _, _, pct in seen)
    assert seen[-1] == (950, 950, 100.0)


def test_total_grows_when_rows_appear_during_migration(coordinator, source):
    source.tables["assets"] = make_rows(10)
    job_id = coordinator.create_job("assets", "assets", "asset", BatchSyncConfig(batch_size=5))
    source.tables["assets"].extend(make_rows(3, start=11))

    result = coordinator.execute(job_id)

    assert result.status == "completed"
    assert result.total_records == 13
    assert coordinator.get_job(job_id).progress.percentage == 100.0


def test_percentage_of_empty_job_is_zero():
    assert JobProgress(total_records=0, processed_records=0).percentage == 0.0
    assert JobProgress(total_records=3, processed_records=1).percentage == 33.33


def test_empty_table_completes(coordinator):
    job_id = coordinator.create_job("nothing", "assets", "asset")

    result = coordinator.execute(job_id)

    assert result.status == "completed"
    assert result.total_records == 0
    assert result.average_time_per_record == 0.0


def test_failed_records_are_isolated(coordinator, source, target):
    source.tables["assets"] = make_rows(20)
    target.fail_always("5", PermanentValidationError("property type not allowed"))
    target.fail_always("7", TransientTargetError("timeout"))
    target.fail_next("9", TransientTargetError("timeout"))
    job_id = coordinator.create_job(
        "assets", "assets", "asset", BatchSyncConfig(batch_size=8, retry_attempts=2, retry_delay=0.0)
    )

    result = coordinator.execute(job_id)

    assert result.status == "completed"
    assert result.successful_records == 18
    assert result.failed_records == 2
    errors = {e.record_id: e for e in result.errors}
    assert set(errors) == {"5", "7"}
    assert errors["5"].retry_count == 0
    assert errors["7"].retry_count == 2
    assert "timeout" in errors["7"].message
    assert ("asset", "9") in target.nodes


def test_unreachable_target_aborts_job(coordinator, source, target):
    source.tables["assets"] = make_rows(10)
    job_id = coordinator.create_job("assets", "assets", "asset", BatchSyncConfig(batch_size=5))
    target.unavailable = True

    with pytest.raises(JobInfrastructureError):
        coordinator.execute(job_id)

    job = coordinator.get_job(job_id)
    assert job.status == "failed"
    assert "unreachable" in job.error_message
    assert job.progress.processed_records == 0


def test_source_read_failure_aborts_job(coordinator, source):
    source.tables["assets"] = make_rows(10)
    job_id = coordinator.create_job("assets", "assets", "asset", BatchSyncConfig(batch_size=5))
    source.fail_reads = True

    with pytest.raises(JobInfrastructureError):
        coordinator.execute(job_id)

    assert coordinator.get_job(job_id).status == "failed"


def test_cancel_stops_job_at_page_boundary(coordinator, source, target):
    source.tables["assets"] = make_rows(30)
    job_id = coordinator.create_job("assets", "assets", "asset", BatchSyncConfig(batch_size=10))
    source.on_page = lambda reads: reads == 1 and coordinator.cancel(job_id)

    result = coordinator.execute(job_id)

    assert result.status == "failed"
    job = coordinator.get_job(job_id)
    assert job.error_message == "Job cancelled by user"
    assert job.progress.processed_records == 10
    assert len(target.nodes) == 10

    with pytest.raises(JobStateError):
        coordinator.execute(job_id)
    with pytest.raises(JobStateError):
        coordinator.cancel(job_id)


def test_state_rules(coordinator, source):
    source.tables["assets"] = make_rows(3)
    job_id = coordinator.create_job("assets", "assets", "asset")

    with pytest.raises(JobStateError):
        coordinator.pause(job_id)
    with pytest.raises(JobStateError):
        coordinator.resume(job_id)

    coordinator.execute(job_id)
    with pytest.raises(JobStateError):
        coordinator.execute(job_id)
    with pytest.raises(JobNotFoundError):
        coordinator.get_job("missing")


def test_create_job_validates_label(coordinator):
    with pytest.raises(ValueError):
        coordinator.create_job("bad", "assets", "asset label")


def test_list_and_active_jobs(coordinator, source):
    source.tables["assets"] = make_rows(3)
    done = coordinator.create_job("done", "assets", "asset")
    coordinator.execute(done)
    waiting = coordinator.create_job("waiting", "assets", "asset")

    assert {j.id for j in coordinator.list_jobs()} == {done, waiting}
    assert coordinator.active_jobs() == []


def test_cleanup_removes_old_completed_jobs(coordinator, source, target):
    source.tables["assets"] = make_rows(3)
    target.fail_always("2", PermanentValidationError("bad"))
    old = coordinator.create_job("old", "assets", "asset")
    coordinator.execute(old)
    recent = coordinator.create_job("recent", "assets", "asset")
    coordinator.execute(recent)

    with transaction() as conn:
        conn.execute(
            "UPDATE batch_sync_jobs SET completed_at = ? WHERE id = ?",
            (to_iso(datetime.now(timezone.utc) - timedelta(days=10)), old),
        )

    assert coordinator.cleanup(7) == 1
    with pytest.raises(JobNotFoundError):
        coordinator.get_job(old)
    assert batch_coordinator.list_errors(old) == []
    assert len(coordinator.get_result(recent).errors) == 1


def test_preset_migration(coordinator, source, target):
    source.tables["users"] = [{"id": i, "email": f"user{i}@city.gov"} for i in range(1, 4)]

    result = coordinator.migrate("users")

    assert result.status == "completed"
    assert {key for key in target.nodes} == {("user", "1"), ("user", "2"), ("user", "3")}
    job = coordinator.get_job(result.job_id)
    assert job.config.batch_size == 100
    assert job.config.max_concurrency == 3

    with pytest.raises(ValueError):
        coordinator.migrate("invoices")
