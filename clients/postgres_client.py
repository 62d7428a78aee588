"""
PostgreSQL client with connection pooling.

Uses psycopg2 with ThreadedConnectionPool. Single statements autocommit
through execute*(); multi-statement units of work go through transaction(),
which commits on success and rolls back on any exception.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

# Global type registration flag
_types_registered = False


def _convert_params(params: Tuple | Dict | None) -> Tuple | Dict | None:
    """Convert UUID objects to strings."""
    if params is None:
        return None

    def convert(value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, list):
            return [convert(v) for v in value]
        if isinstance(value, tuple):
            return tuple(convert(v) for v in value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        return value

    return convert(params)


class Transaction:
    """
    Cursor wrapper handed out by PostgresClient.transaction().

    Same query helpers as PostgresClient, all on one connection.
    """

    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        self._cursor.execute(query, _convert_params(params))
        if self._cursor.description:
            return [dict(row) for row in self._cursor.fetchall()]
        return []

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        results = self.execute(query, params)
        return results[0] if results else None


class PostgresClient:
    """
    PostgreSQL client.

    Usage:
        db = PostgresClient(database_url)
        rows = db.execute("SELECT * FROM service_tickets WHERE status = %s", ("intake",))

        with db.transaction() as tx:
            tx.execute("UPDATE ...", (...))
            tx.execute("INSERT ...", (...))
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str, minconn: int = 2, maxconn: int = 20):
        self._database_url = database_url
        self._minconn = minconn
        self._maxconn = maxconn
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._minconn,
                    maxconn=self._maxconn,
                    dsn=self._database_url,
                    connect_timeout=30,
                )

                global _types_registered
                if not _types_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    psycopg2.extras.register_uuid()
                    _types_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            conn = pool.getconn()
            if conn is None:
                raise RuntimeError("Could not get connection from pool")
            yield conn
        finally:
            if conn:
                pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Run several statements atomically.

        Commits when the block exits normally, rolls back and re-raises
        otherwise.
        """
        with self.get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    yield Transaction(cur)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_returning(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        return self.execute(query, params)

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
