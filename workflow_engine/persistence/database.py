"""
PostgreSQL connection pool shared by the execution store.

Each call borrows a pooled connection for the length of a single
transaction. Consumer threads and request threads share the pool.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from workflow_engine.config import Config, get_config

logger = logging.getLogger(__name__)


class Database:
    """
    Thread-safe pool of PostgreSQL connections.

    Rows come back as dicts (RealDictCursor). Every statement runs with the
    configured statement timeout, so a stuck query fails and counts against
    the database breaker instead of holding a worker thread forever.
    """

    def __init__(self, database_url: Optional[str] = None, config: Optional[Config] = None):
        config = config or get_config()
        self.dsn = database_url or config.DATABASE_URL
        self.max_connections = config.DATABASE_POOL_SIZE + config.DATABASE_MAX_OVERFLOW
        self.connect_timeout = config.DATABASE_CONNECT_TIMEOUT
        self.statement_timeout_ms = config.DATABASE_STATEMENT_TIMEOUT_MS
        self._pool: Optional[pool.ThreadedConnectionPool] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Open the pool. Safe to call more than once."""
        if self._pool is not None:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.max_connections,
                dsn=self.dsn,
                connect_timeout=self.connect_timeout,
                application_name="workflow-engine",
                options=f"-c statement_timeout={self.statement_timeout_ms}",
            )
        except Exception as e:
            logger.error(f"Could not open database pool: {e}")
            raise
        logger.info(f"Database pool open (max {self.max_connections} connections)")

    def close(self) -> None:
        if self._pool is not None:
            logger.info("Closing database pool")
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def get_cursor(self) -> Generator:
        """
        Borrow a connection and yield a dict cursor inside one transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises, so several statements in one block apply together:

            with db.get_cursor() as cur:
                cur.execute("UPDATE ...")
                cur.execute("INSERT INTO ...")
        """
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                try:
                    yield cursor
                except Exception:
                    conn.rollback()
                    raise
                conn.commit()
        finally:
            self._pool.putconn(conn)

    def execute_script(self, sql: str) -> None:
        """Run a multi-statement DDL script in a single transaction."""
        with self.get_cursor() as cur:
            cur.execute(sql)

    def execute(self, query: str, params: tuple = None) -> list:
        """Run a statement and return every row it produced."""
        with self.get_cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall() if cur.description else []

    def execute_one(self, query: str, params: tuple = None) -> Optional[dict]:
        """Run a statement and return its first row, or None."""
        with self.get_cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone() if cur.description else None

    def health_check(self) -> bool:
        """Return True when a trivial query round-trips."""
        try:
            row = self.execute_one("SELECT 1 AS healthy")
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return row is not None and row.get("healthy") == 1
