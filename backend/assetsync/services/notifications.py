from __future__ import annotations

import logging
from typing import Protocol

import httpx

from assetsync.db.session import to_iso
from assetsync.models.sync_event import SyncEvent

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def event_failed(self, event: SyncEvent, error: str) -> None: ...


def _failure_body(event: SyncEvent, error: str) -> dict:
    return {
        "kind": "sync_event_failed",
        "eventId": event.id,
        "type": event.type,
        "table": event.table,
        "recordId": event.record_id,
        "retryCount": event.retry_count,
        "error": error,
        "timestamp": to_iso(event.timestamp) if event.timestamp else None,
    }


class LoggingNotifier:
    def event_failed(self, event: SyncEvent, error: str) -> None:
        logger.error(
            f"Sync event {event.id} ({event.type} {event.table}:{event.record_id}) "
            f"failed after {event.retry_count} retries: {error}"
        )


class WebhookNotifier:
    """POSTs a JSON notice for each terminally failed event.

    Delivery problems are logged; they never change the event's outcome.
    """

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.Client | None = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._fallback = LoggingNotifier()

    def event_failed(self, event: SyncEvent, error: str) -> None:
        self._fallback.event_failed(event, error)
        try:
            resp = self._client.post(self.url, json=_failure_body(event, error))
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(f"Failure notification for {event.id} not delivered to {self.url}: {exc}")

    def close(self) -> None:
        self._client.close()
