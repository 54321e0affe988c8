"""Legacy reader for the production PostgreSQL database."""

import logging
from typing import Any, Dict, List, Optional, Set

from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

from .base import BaseExtractor
from ..db import create_pool, pooled_cursor
from ..errors import SourceUnavailable
from ..models.migration import DatabaseConfig
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PostgresExtractor(BaseExtractor):
    """
    Read-only access to the legacy dispatch schema.

    Pages use keyset pagination (``WHERE id > %s ORDER BY id LIMIT %s``),
    which stays correct while production traffic keeps inserting rows.
    No snapshot is assumed.
    """

    def __init__(
        self,
        config: DatabaseConfig,
        retry_policy: Optional[RetryPolicy] = None,
        pool: Optional[ThreadedConnectionPool] = None
    ):
        super().__init__(retry_policy)
        self.config = config
        self._pool = pool

    @property
    def pool(self) -> ThreadedConnectionPool:
        if self._pool is None:
            self._pool = create_pool(self.config, SourceUnavailable)
        return self._pool

    def _fetch_rows(self, table: str, after_cursor: Optional[int], limit: int) -> List[Dict[str, Any]]:
        query = sql.SQL("SELECT * FROM {} WHERE id > %s ORDER BY id ASC LIMIT %s").format(sql.Identifier(table))
        with pooled_cursor(self.pool, SourceUnavailable) as cur:
            cur.execute(query, (after_cursor if after_cursor is not None else 0, limit))
            return [dict(r) for r in cur.fetchall()]

    def _fetch_where_in(self, table: str, column: str, values: List[Any]) -> List[Dict[str, Any]]:
        query = sql.SQL("SELECT * FROM {} WHERE {} = ANY(%s) ORDER BY id ASC").format(
            sql.Identifier(table), sql.Identifier(column)
        )
        with pooled_cursor(self.pool, SourceUnavailable) as cur:
            cur.execute(query, (list(values),))
            return [dict(r) for r in cur.fetchall()]

    def columns(self, table: str) -> Set[str]:
        with pooled_cursor(self.pool, SourceUnavailable) as cur:
            cur.execute(
                "SELECT column_name FROM information_schema.columns WHERE table_name = %s",
                (table,),
            )
            return {r["column_name"] for r in cur.fetchall()}

    def count(self, table: str) -> int:
        query = sql.SQL("SELECT COUNT(*) AS count FROM {}").format(sql.Identifier(table))
        with pooled_cursor(self.pool, SourceUnavailable) as cur:
            cur.execute(query)
            return cur.fetchone()["count"]

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
