"""PostgreSQL connection helpers shared by the reader, loader and checkpoint store."""

import logging
from contextlib import contextmanager
from typing import Iterator, Type

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from .errors import MigrationError, StoreTimeout
from .models.migration import DatabaseConfig

logger = logging.getLogger(__name__)


def create_pool(config: DatabaseConfig, unavailable: Type[MigrationError]) -> ThreadedConnectionPool:
    """
    Open a thread-safe connection pool.

    Every connection carries a ``statement_timeout`` so each store call has a
    deadline; hitting it surfaces as :class:`StoreTimeout`.

    Args:
        config: Connection settings
        unavailable: Error raised when the server cannot be reached
    """
    if not config.dsn:
        raise unavailable("No database DSN configured")
    try:
        return ThreadedConnectionPool(
            config.pool_min,
            config.pool_max,
            dsn=config.dsn,
            connect_timeout=config.connect_timeout,
            options=f"-c statement_timeout={config.statement_timeout_ms}",
        )
    except psycopg2.OperationalError as e:
        raise unavailable(f"Cannot connect to database: {e}") from e


@contextmanager
def pooled_cursor(
    pool: ThreadedConnectionPool,
    unavailable: Type[MigrationError],
    commit: bool = False,
) -> Iterator[psycopg2.extras.RealDictCursor]:
    """
    Borrow a connection and yield a dict cursor.

    The transaction is committed on success when ``commit`` is set and rolled
    back otherwise. Driver errors are translated into the migration error
    taxonomy; broken connections are discarded instead of returned.
    """
    try:
        conn = pool.getconn()
    except psycopg2.OperationalError as e:
        raise unavailable(f"Cannot obtain connection: {e}") from e
    except psycopg2.pool.PoolError as e:
        raise unavailable(f"Connection pool exhausted: {e}") from e

    broken = False
    try:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            yield cur
        if commit:
            conn.commit()
        else:
            conn.rollback()
    except psycopg2.errors.QueryCanceled as e:
        conn.rollback()
        raise StoreTimeout(f"Statement timed out: {e}") from e
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        broken = True
        raise unavailable(f"Database connection lost: {e}") from e
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        pool.putconn(conn, close=broken or bool(conn.closed))
