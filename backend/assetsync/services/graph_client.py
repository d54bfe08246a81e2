"""
Neo4j Graph Client

Connection management and low-level Cypher execution against the secondary
(graph) store. Driver exceptions are translated into the sync engine's error
taxonomy so callers only ever see transient or permanent failures.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from neo4j import Driver, GraphDatabase, Session, unit_of_work
from neo4j.exceptions import (
    AuthError,
    ClientError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from assetsync.services.errors import (
    PermanentValidationError,
    TargetUnavailableError,
    TransientTargetError,
)

logger = logging.getLogger(__name__)


def translate_error(exc: Exception) -> Exception:
    """Map a neo4j driver exception onto the engine's error classes."""
    if isinstance(exc, (ServiceUnavailable, SessionExpired)):
        return TargetUnavailableError(f"Graph store unavailable: {exc}")
    if isinstance(exc, AuthError):
        return TargetUnavailableError(f"Graph store rejected credentials: {exc}")
    if isinstance(exc, TransientError):
        return TransientTargetError(f"Transient graph store error: {exc}")
    if isinstance(exc, ClientError):
        code = getattr(exc, "code", None) or ""
        if "TransactionTimedOut" in code:
            return TransientTargetError(f"Graph store call timed out: {exc}")
        return PermanentValidationError(f"Graph store rejected statement: {exc}")
    if isinstance(exc, (Neo4jError, DriverError)):
        return TransientTargetError(f"Graph store error: {exc}")
    if isinstance(exc, (TimeoutError, OSError)):
        return TransientTargetError(f"Graph store call failed: {exc}")
    return exc


class GraphClient:
    """
    Neo4j client used by the target store adapter.
    """

    def __init__(
        self,
        uri: str,
        user: str,
        password: str,
        database: Optional[str] = None,
        timeout_seconds: float = 10.0,
        driver: Optional[Driver] = None,
    ):
        """
        Create the driver. No network traffic happens until the first query
        or an explicit verify().

        Args:
            uri: Neo4j connection URI (e.g., bolt://localhost:7687)
            user: Database username
            password: Database password
            database: Optional database name (server default when None)
            timeout_seconds: Upper bound for every transaction and connection attempt
            driver: Pre-built driver, mainly for tests
        """
        self.uri = uri
        self.user = user
        self.database = database
        self.timeout_seconds = timeout_seconds
        logger.info(f"Initializing GraphClient for {uri}")
        self._driver: Optional[Driver] = driver or GraphDatabase.driver(
            uri,
            auth=(user, password),
            connection_timeout=timeout_seconds,
            connection_acquisition_timeout=timeout_seconds,
        )

    def close(self) -> None:
        """Close the Neo4j driver connection."""
        if self._driver:
            self._driver.close()
            self._driver = None
            logger.info("Neo4j connection closed")

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        if not self._driver:
            raise TargetUnavailableError("GraphClient is closed")

        session = self._driver.session(database=self.database) if self.database else self._driver.session()
        try:
            yield session
        finally:
            session.close()

    def verify(self) -> None:
        """Raise TargetUnavailableError unless the server answers."""
        if not self._driver:
            raise TargetUnavailableError("GraphClient is closed")
        try:
            self._driver.verify_connectivity()
        except Exception as exc:
            raise translate_error(exc) from exc

    def execute_read(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a read query in a managed transaction bounded by the client timeout.

        Returns:
            List of result records as dictionaries
        """
        logger.debug(f"Executing read: {query[:100]}...")

        @unit_of_work(timeout=self.timeout_seconds)
        def _work(tx):
            return tx.run(query, parameters or {}).data()

        try:
            with self.get_session() as session:
                return session.execute_read(_work)
        except (TransientTargetError, PermanentValidationError):
            raise
        except Exception as exc:
            logger.error(f"Read query failed: {exc}")
            raise translate_error(exc) from exc

    def execute_write(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a write query (MERGE, SET, DELETE) in a managed transaction.

        Returns:
            List of result records as dictionaries
        """
        logger.debug(f"Executing write: {query[:100]}...")

        @unit_of_work(timeout=self.timeout_seconds)
        def _work(tx):
            return tx.run(query, parameters or {}).data()

        try:
            with self.get_session() as session:
                return session.execute_write(_work)
        except (TransientTargetError, PermanentValidationError):
            raise
        except Exception as exc:
            logger.error(f"Write transaction failed: {exc}")
            raise translate_error(exc) from exc

    def health_check(self) -> bool:
        try:
            result = self.execute_read("RETURN 1 AS health")
            return len(result) > 0 and result[0].get("health") == 1
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
