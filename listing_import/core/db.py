"""Database helpers for the importer."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2 import pool

from listing_import.core.config import ConfigError, get_settings

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise ConfigError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


def close_pool() -> None:
    global _connection_pool
    if _connection_pool is not None:
        _connection_pool.closeall()
        _connection_pool = None
        logger.info("Database connection pool closed")


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        # Connections broken mid-transaction are discarded rather than reused.
        pg_pool.putconn(conn, close=bool(getattr(conn, "closed", False)))


@contextmanager
def transaction():
    """Yield a connection whose work is committed on success and rolled back on error."""
    with get_connection() as conn:
        try:
            yield conn
        except Exception:
            if not getattr(conn, "closed", False):
                conn.rollback()
            raise
        else:
            conn.commit()


@contextmanager
def savepoint(conn, name: str) -> Iterator[None]:
    """Scope a unit of work inside the current transaction.

    A failure rolls back to the savepoint so the surrounding transaction
    stays usable, then re-raises.
    """
    with conn.cursor() as cur:
        cur.execute(f"SAVEPOINT {name}")
    try:
        yield
    except Exception:
        if not getattr(conn, "closed", False):
            with conn.cursor() as cur:
                cur.execute(f"ROLLBACK TO SAVEPOINT {name}")
        raise
    else:
        with conn.cursor() as cur:
            cur.execute(f"RELEASE SAVEPOINT {name}")
