from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DB_PATH = Path(__file__).resolve().parent / "db" / "internal.db"

CONFLICT_POLICIES = ("source_wins", "target_wins", "timestamp_wins", "manual")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Runtime configuration for the sync engine, read from the environment."""

    db_path: Path = DEFAULT_DB_PATH

    # Secondary (graph) store
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""
    neo4j_database: str | None = None
    target_timeout_seconds: float = 10.0

    # Primary (relational) store
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_database: str = "assets"
    pg_user: str = "postgres"
    pg_password: str = ""
    pg_sslmode: str = "disable"

    # Real-time dispatcher
    dispatcher_enabled: bool = False
    batch_size: int = 100
    worker_count: int = 4
    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    lease_seconds: float = 60.0
    poll_interval: float = 5.0
    conflict_policy: str = "timestamp_wins"
    detect_conflicts: bool = True

    # Retention
    event_retention_days: int = 30
    job_retention_days: int = 7

    notify_webhook_url: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        policy = os.environ.get("SYNC_CONFLICT_POLICY", "timestamp_wins").strip().lower()
        if policy not in CONFLICT_POLICIES:
            raise ValueError(
                f"SYNC_CONFLICT_POLICY must be one of {', '.join(CONFLICT_POLICIES)}, got {policy!r}"
            )

        return cls(
            db_path=Path(os.environ.get("SYNC_DB_PATH") or DEFAULT_DB_PATH),
            neo4j_uri=os.environ.get("NEO4J_URI", "bolt://localhost:7687"),
            neo4j_user=os.environ.get("NEO4J_USER", "neo4j"),
            neo4j_password=os.environ.get("NEO4J_PASSWORD", ""),
            neo4j_database=os.environ.get("NEO4J_DATABASE") or None,
            target_timeout_seconds=float(os.environ.get("TARGET_TIMEOUT_SECONDS", "10")),
            pg_host=os.environ.get("PG_HOST", "localhost"),
            pg_port=int(os.environ.get("PG_PORT", "5432")),
            pg_database=os.environ.get("PG_DATABASE", "assets"),
            pg_user=os.environ.get("PG_USER", "postgres"),
            pg_password=os.environ.get("PG_PASSWORD", ""),
            pg_sslmode=os.environ.get("PG_SSLMODE", "disable"),
            dispatcher_enabled=_env_bool("SYNC_DISPATCHER_ENABLED", False),
            batch_size=int(os.environ.get("SYNC_BATCH_SIZE", "100")),
            worker_count=int(os.environ.get("SYNC_WORKER_COUNT", "4")),
            max_retries=int(os.environ.get("SYNC_MAX_RETRIES", "3")),
            retry_delay=float(os.environ.get("SYNC_RETRY_DELAY", "1.0")),
            max_retry_delay=float(os.environ.get("SYNC_MAX_RETRY_DELAY", "30.0")),
            lease_seconds=float(os.environ.get("SYNC_LEASE_SECONDS", "60")),
            poll_interval=float(os.environ.get("SYNC_POLL_INTERVAL", "5")),
            conflict_policy=policy,
            detect_conflicts=_env_bool("SYNC_DETECT_CONFLICTS", True),
            event_retention_days=int(os.environ.get("SYNC_EVENT_RETENTION_DAYS", "30")),
            job_retention_days=int(os.environ.get("SYNC_JOB_RETENTION_DAYS", "7")),
            notify_webhook_url=os.environ.get("SYNC_NOTIFY_WEBHOOK_URL") or None,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()
