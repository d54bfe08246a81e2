from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from assetsync.db.session import parse_datetime, to_iso
from assetsync.services.errors import PermanentValidationError
from assetsync.services.graph_client import GraphClient

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Relational bookkeeping columns and their graph-side names.
_TIMESTAMP_FIELDS = {"created_at": "createdAt", "updated_at": "updatedAt"}


class TargetStore(Protocol):
    def upsert(self, label: str, record_id: str, properties: dict[str, Any]) -> None: ...

    def delete(self, label: str, record_id: str) -> None: ...

    def fetch(self, label: str, record_id: str) -> dict[str, Any] | None: ...

    def verify(self) -> None: ...


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _coerce_value(v: Any) -> Any:
    if isinstance(v, (dict, list, tuple)):
        return json.dumps(v, ensure_ascii=False, sort_keys=True, default=_json_default)
    if isinstance(v, (str, bool, int, float)):
        return v
    return _json_default(v)


def transform_record(
    record_id: str,
    payload: Any,
    modified_at: datetime | None = None,
) -> dict[str, Any]:
    """Turn a canonical payload into the property map stored on a graph node.

    created_at/updated_at become createdAt/updatedAt; updatedAt falls back to
    ``modified_at`` so replaying the same event always writes the same values.
    """
    if not record_id or not str(record_id).strip():
        raise PermanentValidationError("record id is required")
    if not isinstance(payload, dict):
        raise PermanentValidationError(f"payload for {record_id} must be an object, got {type(payload).__name__}")

    props: dict[str, Any] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or not key:
            raise PermanentValidationError(f"payload for {record_id} has an invalid field name: {key!r}")
        if key in _TIMESTAMP_FIELDS or key in _TIMESTAMP_FIELDS.values():
            continue
        if value is None:
            continue
        try:
            props[key] = _coerce_value(value)
        except (TypeError, ValueError) as exc:
            raise PermanentValidationError(f"payload for {record_id} is not serializable: {exc}") from exc

    for column, prop in _TIMESTAMP_FIELDS.items():
        value = parse_datetime(payload.get(column)) or parse_datetime(payload.get(prop))
        if value is None and prop == "updatedAt":
            value = modified_at
        if value is not None:
            props[prop] = to_iso(value)

    props["id"] = str(record_id)
    return props


def validate_label(label: str) -> str:
    if not label or not _LABEL_RE.match(label):
        raise PermanentValidationError(f"invalid graph label: {label!r}")
    return label


class GraphTargetAdapter:
    """Idempotent writes of canonical records to Neo4j nodes keyed by ``id``."""

    def __init__(self, client: GraphClient):
        self.client = client

    def upsert(self, label: str, record_id: str, properties: dict[str, Any]) -> None:
        validate_label(label)
        props = dict(properties)
        props["id"] = str(record_id)
        # SET n = $props replaces every property, so a replay lands on the same node state.
        query = f"MERGE (n:`{label}` {{id: $id}}) SET n = $props RETURN n.id AS id"
        self.client.execute_write(query, {"id": str(record_id), "props": props})
        logger.debug(f"Upserted {label}:{record_id}")

    def delete(self, label: str, record_id: str) -> None:
        validate_label(label)
        # MATCH on an absent node matches nothing, so deletes are safe to repeat.
        query = f"MATCH (n:`{label}` {{id: $id}}) DETACH DELETE n"
        self.client.execute_write(query, {"id": str(record_id)})
        logger.debug(f"Deleted {label}:{record_id}")

    def fetch(self, label: str, record_id: str) -> dict[str, Any] | None:
        validate_label(label)
        query = f"MATCH (n:`{label}` {{id: $id}}) RETURN properties(n) AS props"
        rows = self.client.execute_read(query, {"id": str(record_id)})
        if not rows:
            return None
        return dict(rows[0].get("props") or {})

    def verify(self) -> None:
        self.client.verify()
