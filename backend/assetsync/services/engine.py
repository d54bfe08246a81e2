from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from assetsync.config import Settings, get_settings
from assetsync.services.batch_coordinator import PRESET_MIGRATIONS, BatchMigrationCoordinator
from assetsync.services.conflict_resolver import ConflictResolver
from assetsync.services.dispatcher import DispatcherConfig, RealTimeDispatcher
from assetsync.services.graph_client import GraphClient
from assetsync.services.notifications import LoggingNotifier, Notifier, WebhookNotifier
from assetsync.services.postgres_service import PostgresCredentials, PostgresSource, SourceReader
from assetsync.services.target_adapter import GraphTargetAdapter, TargetStore

logger = logging.getLogger(__name__)

# Source table -> graph label, shared by the dispatcher and the migration presets.
DEFAULT_LABELS: dict[str, str] = {p["source_table"]: p["target_container"] for p in PRESET_MIGRATIONS.values()}


@dataclass
class SyncEngine:
    dispatcher: RealTimeDispatcher
    coordinator: BatchMigrationCoordinator
    resolver: ConflictResolver
    target: TargetStore
    source: SourceReader
    notifier: Notifier
    settings: Settings
    client: Optional[GraphClient] = None

    def close(self) -> None:
        self.dispatcher.close()
        if isinstance(self.notifier, WebhookNotifier):
            self.notifier.close()
        if self.client is not None:
            self.client.close()


def build_engine(
    settings: Settings,
    target: TargetStore | None = None,
    source: SourceReader | None = None,
    notifier: Notifier | None = None,
) -> SyncEngine:
    client: Optional[GraphClient] = None
    if target is None:
        client = GraphClient(
            settings.neo4j_uri,
            settings.neo4j_user,
            settings.neo4j_password,
            database=settings.neo4j_database,
            timeout_seconds=settings.target_timeout_seconds,
        )
        target = GraphTargetAdapter(client)
    if source is None:
        source = PostgresSource(PostgresCredentials.from_settings(settings))
    if notifier is None:
        notifier = WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else LoggingNotifier()

    resolver = ConflictResolver(settings.conflict_policy)
    dispatcher = RealTimeDispatcher(
        target,
        resolver=resolver,
        config=DispatcherConfig.from_settings(settings, labels=DEFAULT_LABELS),
        notifier=notifier,
    )
    coordinator = BatchMigrationCoordinator(source, target)
    logger.info(
        f"Sync engine ready: policy={settings.conflict_policy} workers={settings.worker_count} "
        f"batch={settings.batch_size}"
    )
    return SyncEngine(
        dispatcher=dispatcher,
        coordinator=coordinator,
        resolver=resolver,
        target=target,
        source=source,
        notifier=notifier,
        settings=settings,
        client=client,
    )


_ENGINE: Optional[SyncEngine] = None
_LOCK = threading.Lock()


def get_engine() -> SyncEngine:
    global _ENGINE
    with _LOCK:
        if _ENGINE is None:
            _ENGINE = build_engine(get_settings())
        return _ENGINE


def set_engine(engine: SyncEngine | None) -> None:
    global _ENGINE
    with _LOCK:
        _ENGINE = engine


def reset_engine() -> None:
    global _ENGINE
    with _LOCK:
        engine, _ENGINE = _ENGINE, None
    if engine is not None:
        engine.close()
