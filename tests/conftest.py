from __future__ import annotations

import threading
from collections import Counter
from typing import Any, Callable, Optional

import pytest

from assetsync.config import get_settings
from assetsync.db.session import init_db
from assetsync.services.errors import TargetUnavailableError
from assetsync.services.postgres_service import PostgresQueryError


class InMemoryTarget:
    """Graph store stand-in keyed by (label, id), with scripted failures."""

    def __init__(self) -> None:
        self.nodes: dict[tuple[str, str], dict[str, Any]] = {}
        self.history: list[tuple[str, str, str, Optional[dict[str, Any]]]] = []
        self.unavailable = False
        self._failures: dict[str, list[Exception]] = {}
        self._always: dict[str, Exception] = {}
        self._lock = threading.Lock()

    def fail_next(self, record_id: str, *errors: Exception) -> None:
        self._failures.setdefault(str(record_id), []).extend(errors)

    def fail_always(self, record_id: str, error: Exception) -> None:
        self._always[str(record_id)] = error

    def _maybe_fail(self, record_id: str) -> None:
        with self._lock:
            if self.unavailable:
                raise TargetUnavailableError("graph store is down")
            if record_id in self._always:
                raise self._always[record_id]
            planned = self._failures.get(record_id)
            if planned:
                raise planned.pop(0)

    def upsert(self, label: str, record_id: str, properties: dict[str, Any]) -> None:
        self._maybe_fail(record_id)
        with self._lock:
            self.nodes[(label, record_id)] = dict(properties, id=record_id)
            self.history.append(("upsert", label, record_id, dict(properties)))

    def delete(self, label: str, record_id: str) -> None:
        self._maybe_fail(record_id)
        with self._lock:
            self.nodes.pop((label, record_id), None)
            self.history.append(("delete", label, record_id, None))

    def fetch(self, label: str, record_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            node = self.nodes.get((label, record_id))
            return dict(node) if node else None

    def verify(self) -> None:
        if self.unavailable:
            raise TargetUnavailableError("graph store is down")

    def upsert_counts(self) -> Counter:
        return Counter(rid for op, _, rid, _ in self.history if op == "upsert")


class InMemorySource:
    """Relational source stand-in serving keyset pages from lists of rows."""

    def __init__(self, tables: Optional[dict[str, list[dict[str, Any]]]] = None) -> None:
        self.tables = tables or {}
        self.reads: list[tuple[Any, int]] = []
        self.fail_reads = False
        self.on_page: Optional[Callable[[int], None]] = None

    def count_rows(self, table: str) -> int:
        return len(self.tables.get(table, []))

    def fetch_page(self, table: str, key_column: str, after_key: Any, limit: int) -> list[dict[str, Any]]:
        if self.fail_reads:
            raise PostgresQueryError("connection reset by peer")
        rows = sorted(self.tables.get(table, []), key=lambda r: r[key_column])
        if after_key is not None:
            rows = [r for r in rows if r[key_column] > after_key]
        page = [dict(r) for r in rows[:limit]]
        self.reads.append((after_key, len(page)))
        if self.on_page:
            self.on_page(len(self.reads))
        return page

    def fetch_record(self, table: str, key_column: str, record_id: Any) -> Optional[dict[str, Any]]:
        for row in self.tables.get(table, []):
            if str(row[key_column]) == str(record_id):
                return dict(row)
        return None


class RecordingNotifier:
    def __init__(self) -> None:
        self.failures: list[tuple[str, str]] = []

    def event_failed(self, event, error: str) -> None:
        self.failures.append((event.id, error))


def make_rows(n: int, start: int = 1) -> list[dict[str, Any]]:
    return [
        {"id": i, "name": f"Asset {i}", "status": "active", "location": {"lat": 52.0, "lng": 4.5}}
        for i in range(start, start + n)
    ]


@pytest.fixture(autouse=True)
def engine_db(tmp_path, monkeypatch):
    """Point the engine at a fresh database for each test."""
    path = tmp_path / "engine.db"
    monkeypatch.setenv("SYNC_DB_PATH", str(path))
    monkeypatch.delenv("SYNC_DISPATCHER_ENABLED", raising=False)
    get_settings.cache_clear()
    init_db()
    yield path
    get_settings.cache_clear()


@pytest.fixture
def target() -> InMemoryTarget:
    return InMemoryTarget()


@pytest.fixture
def source() -> InMemorySource:
    return InMemorySource()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
