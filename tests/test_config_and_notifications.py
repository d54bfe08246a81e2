import json
from datetime import datetime, timezone

import httpx
import pytest

from assetsync.config import Settings
from assetsync.models.sync_event import SyncEvent
from assetsync.services.engine import DEFAULT_LABELS, build_engine
from assetsync.services.notifications import WebhookNotifier


def _event():
    return SyncEvent(
        id="evt-1",
        type="update",
        table="assets",
        record_id="A1",
        payload={"name": "Pump"},
        timestamp=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
        status="failed",
        retry_count=3,
    )


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SYNC_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("SYNC_BATCH_SIZE", "250")
    monkeypatch.setenv("SYNC_WORKER_COUNT", "8")
    monkeypatch.setenv("SYNC_CONFLICT_POLICY", "Manual")
    monkeypatch.setenv("SYNC_DISPATCHER_ENABLED", "yes")
    monkeypatch.setenv("NEO4J_DATABASE", "")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "x.db"
    assert settings.batch_size == 250
    assert settings.worker_count == 8
    assert settings.conflict_policy == "manual"
    assert settings.dispatcher_enabled is True
    assert settings.neo4j_database is None
    assert settings.max_retries == 3
    assert settings.retry_delay == 1.0
    assert settings.max_retry_delay == 30.0


def test_settings_reject_unknown_policy(monkeypatch):
    monkeypatch.setenv("SYNC_CONFLICT_POLICY", "newest")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_webhook_notifier_posts_failure():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier("https://hooks.example/sync", client=httpx.Client(transport=httpx.MockTransport(handler)))
    notifier.event_failed(_event(), "connection refused")
    notifier.close()

    assert seen == [
        {
            "kind": "sync_event_failed",
            "eventId": "evt-1",
            "type": "update",
            "table": "assets",
            "recordId": "A1",
            "retryCount": 3,
            "error": "connection refused",
            "timestamp": "2024-03-01T09:00:00.000000+00:00",
        }
    ]


def test_webhook_delivery_errors_are_swallowed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    notifier = WebhookNotifier("https://hooks.example/sync", client=httpx.Client(transport=httpx.MockTransport(handler)))

    notifier.event_failed(_event(), "boom")
    notifier.close()


def test_build_engine_wires_components(target, source):
    settings = Settings(conflict_policy="source_wins", worker_count=2, notify_webhook_url="https://hooks.example/sync")

    engine = build_engine(settings, target=target, source=source)
    try:
        assert engine.resolver.policy == "source_wins"
        assert engine.dispatcher.config.worker_count == 2
        assert engine.dispatcher.config.labels == DEFAULT_LABELS
        assert DEFAULT_LABELS == {"assets": "asset", "work_orders": "work_order", "users": "user"}
        assert isinstance(engine.notifier, WebhookNotifier)
        assert engine.coordinator.target is target
        assert engine.client is None
    finally:
        engine.close()
