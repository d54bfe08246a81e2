from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from assetsync.config import Settings


class PostgresServiceError(Exception):
    pass


class PostgresConnectionError(PostgresServiceError):
    pass


class PostgresQueryError(PostgresServiceError):
    pass


@dataclass
class PostgresCredentials:
    host: str
    port: int
    database: str
    username: str
    password: str
    sslmode: str = "disable"  # disable | prefer | require

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresCredentials":
        return cls(
            host=settings.pg_host,
            port=settings.pg_port,
            database=settings.pg_database,
            username=settings.pg_user,
            password=settings.pg_password,
            sslmode=settings.pg_sslmode,
        )


class SourceReader(Protocol):
    def count_rows(self, table: str) -> int: ...

    def fetch_page(self, table: str, key_column: str, after_key: Any, limit: int) -> list[dict[str, Any]]: ...

    def fetch_record(self, table: str, key_column: str, record_id: Any) -> Optional[dict[str, Any]]: ...


def _connect(creds: PostgresCredentials) -> psycopg.Connection:
    try:
        conn = psycopg.connect(
            host=creds.host,
            port=creds.port,
            dbname=creds.database,
            user=creds.username,
            password=creds.password,
            sslmode=creds.sslmode,
            connect_timeout=10,
            application_name="assetsync",
            row_factory=dict_row,
        )
        return conn
    except Exception as exc:
        raise PostgresConnectionError(f"Unable to connect to Postgres: {exc}") from exc


def _table_identifier(table: str) -> sql.Identifier:
    """'schema.table' or 'table' as a quoted identifier."""
    parts = [p for p in table.split(".") if p]
    if not parts or len(parts) > 2:
        raise PostgresQueryError(f"Invalid table name: {table!r}")
    return sql.Identifier(*parts)


def count_rows(creds: PostgresCredentials, table: str) -> int:
    conn = _connect(creds)
    try:
        with conn.cursor() as cur:
            cur.execute(sql.SQL("SELECT COUNT(*) AS n FROM {}").format(_table_identifier(table)))
            row = cur.fetchone()
            return int(row["n"]) if row else 0
    except psycopg.Error as exc:
        raise PostgresQueryError(f"Count on {table} failed: {exc}") from exc
    finally:
        conn.close()


def fetch_page(
    creds: PostgresCredentials,
    table: str,
    key_column: str,
    after_key: Any,
    limit: int,
) -> list[dict[str, Any]]:
    """
    Keyset page: rows with key > after_key, ordered by key.
    after_key=None starts from the beginning.
    """
    table_id = _table_identifier(table)
    key_id = sql.Identifier(key_column)

    if after_key is None:
        stmt = sql.SQL("SELECT * FROM {} ORDER BY {} LIMIT %s").format(table_id, key_id)
        params: tuple[Any, ...] = (limit,)
    else:
        stmt = sql.SQL("SELECT * FROM {} WHERE {} > %s ORDER BY {} LIMIT %s").format(table_id, key_id, key_id)
        params = (after_key, limit)

    conn = _connect(creds)
    try:
        with conn.cursor() as cur:
            cur.execute(stmt, params)
            return [dict(r) for r in cur.fetchall()]
    except psycopg.Error as exc:
        raise PostgresQueryError(f"Page read on {table} failed: {exc}") from exc
    finally:
        conn.close()


def fetch_record(
    creds: PostgresCredentials,
    table: str,
    key_column: str,
    record_id: Any,
) -> Optional[dict[str, Any]]:
    stmt = sql.SQL("SELECT * FROM {} WHERE {} = %s").format(_table_identifier(table), sql.Identifier(key_column))
    conn = _connect(creds)
    try:
        with conn.cursor() as cur:
            cur.execute(stmt, (record_id,))
            row = cur.fetchone()
            return dict(row) if row else None
    except psycopg.Error as exc:
        raise PostgresQueryError(f"Read of {table}:{record_id} failed: {exc}") from exc
    finally:
        conn.close()


class PostgresSource:
    """SourceReader over the primary Postgres store."""

    def __init__(self, creds: PostgresCredentials):
        self.creds = creds

    def count_rows(self, table: str) -> int:
        return count_rows(self.creds, table)

    def fetch_page(self, table: str, key_column: str, after_key: Any, limit: int) -> list[dict[str, Any]]:
        return fetch_page(self.creds, table, key_column, after_key, limit)

    def fetch_record(self, table: str, key_column: str, record_id: Any) -> Optional[dict[str, Any]]:
        return fetch_record(self.creds, table, key_column, record_id)
