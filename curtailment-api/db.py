"""
PostgreSQL connection pool.

Every thread that talks to the database borrows its own connection through
get_connection(); the pool is created lazily on first use.
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Optional

import psycopg2
import psycopg2.pool

logger = logging.getLogger("curtailment.db")

DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    "postgresql://curtailment@localhost:5432/curtailment",
)

_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()
_pool_args = {"dsn": DATABASE_URL, "minconn": 1, "maxconn": 10}


def configure(database_url: str, minconn: int = 1, maxconn: int = 10):
    """Set pool parameters; closes an existing pool so the next call reconnects."""
    global _pool
    with _pool_lock:
        _pool_args.update(dsn=database_url, minconn=minconn, maxconn=maxconn)
        if _pool is not None and not _pool.closed:
            _pool.closeall()
        _pool = None


def _get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Lazy-initialize the connection pool."""
    global _pool
    with _pool_lock:
        if _pool is None or _pool.closed:
            _pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=_pool_args["minconn"],
                maxconn=_pool_args["maxconn"],
                dsn=_pool_args["dsn"],
            )
            logger.info("Opened connection pool (max %d)", _pool_args["maxconn"])
        return _pool


@contextmanager
def get_connection():
    """Context manager for PostgreSQL connections from the pool."""
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        pool.putconn(conn)


def close_pool():
    global _pool
    with _pool_lock:
        if _pool is not None and not _pool.closed:
            _pool.closeall()
        _pool = None
