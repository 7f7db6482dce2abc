"""PostgreSQL database client for local development.

Provides a connection pool over a local PostgreSQL database carrying the same
``profiles`` table as the hosted Supabase project (see ``db/schema.sql``).
The pool is opened by the application lifespan and closed at shutdown.
"""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Generator

import psycopg2
from psycopg2 import pool, sql
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)


def local_db_enabled() -> bool:
    return os.getenv("USE_LOCAL_DB", "0") == "1"


class PostgresClient:
    """PostgreSQL database client with connection pooling."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        maxconn: int = 10,
    ) -> None:
        try:
            self._pool = pool.SimpleConnectionPool(
                minconn=1,
                maxconn=maxconn,
                host=host or os.getenv("POSTGRES_HOST", "localhost"),
                port=port or int(os.getenv("POSTGRES_PORT", "5432")),
                database=database or os.getenv("POSTGRES_DB", "aeroscout"),
                user=user or os.getenv("POSTGRES_USER", "aeroscout"),
                password=password or os.getenv("POSTGRES_PASSWORD", "aeroscout_dev_password"),
            )
        except psycopg2.Error as exc:  # pragma: no cover - needs a server
            raise RuntimeError(f"Failed to initialize PostgreSQL connection pool: {exc}") from exc
        logger.info("PostgreSQL pool opened")

    @contextmanager
    def get_connection(self) -> Generator[Any, None, None]:
        """Borrow a connection, committing on success and rolling back on error."""
        conn = self._pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def get_cursor(self, dict_cursor: bool = True) -> Generator[Any, None, None]:
        with self.get_connection() as conn:
            cursor_factory = RealDictCursor if dict_cursor else None
            cursor = conn.cursor(cursor_factory=cursor_factory)
            try:
                yield cursor
            finally:
                cursor.close()

    def fetch_one(self, query: str | sql.Composable, params: tuple = ()) -> dict[str, Any] | None:
        """Run a query and return its first row.

        Args:
            query: SQL query string.
            params: Query parameters.

        Returns:
            Single row as dictionary or None if no results.
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            result = cursor.fetchone()
            return dict(result) if result else None

    def execute_returning(self, query: str | sql.Composable, params: tuple = ()) -> dict[str, Any]:
        """Run an INSERT/UPDATE with a RETURNING clause.

        Raises:
            RuntimeError: If the statement matched no row.
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            result = cursor.fetchone()
            if not result:
                raise RuntimeError("Statement did not return a row")
            return dict(result)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        logger.info("PostgreSQL pool closed")
