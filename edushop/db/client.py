from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

from edushop.config import settings
from edushop.domain.errors import PersistenceError

logger = logging.getLogger(__name__)

_pool: ThreadedConnectionPool | None = None


def init_pool() -> None:
    global _pool
    if _pool is not None:
        return
    if not settings.db_enabled:
        return
    _pool = ThreadedConnectionPool(1, 10, dsn=settings.db_dsn)


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def _checkout() -> psycopg2.extensions.connection:
    if _pool is None:
        raise PersistenceError("Database pool not initialized")
    # Retry once when the pool hands back a connection the server already closed
    for attempt in range(2):
        conn = _pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute(sql.SQL("SET search_path TO {}").format(sql.Identifier(settings.db_schema)))
            return conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            _pool.putconn(conn, close=True)
            if attempt == 1:
                raise
    raise psycopg2.OperationalError("no healthy connection available")


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection | None]:
    """Yield a pooled connection; commit on success, roll back on error.

    Yields ``None`` when the database is not configured.
    """
    if _pool is None:
        init_pool()
    if _pool is None:
        yield None
        return
    conn = _checkout()
    try:
        yield conn
        conn.commit()
    except Exception:
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            logger.info("rollback failed", extra={"error": str(exc)})
        raise
    finally:
        _pool.putconn(conn)
