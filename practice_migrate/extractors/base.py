"""Base legacy reader interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set
import logging

from ..errors import SchemaMismatch
from ..models.legacy import LEGACY_MODELS, model_for
from ..models.record import SourceRow
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One keyset page of a legacy table."""
    table: str
    rows: List[SourceRow] = field(default_factory=list)
    after_cursor: Optional[int] = None
    next_cursor: Optional[int] = None
    page_size: int = 0

    @property
    def has_more(self) -> bool:
        """A short page means the table is exhausted as of this read."""
        return len(self.rows) == self.page_size and self.page_size > 0


class BaseExtractor(ABC):
    """
    Base class for legacy readers.

    Readers page through one legacy table at a time ordered by primary key
    ascending. The cursor is the last primary key returned, so re-reading
    from a checkpointed cursor yields no gaps or duplicates even while the
    source keeps receiving inserts.

    Subclasses implement the raw row access; this class adds retries,
    schema checks and conversion to :class:`SourceRow`.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize the reader.

        Args:
            retry_policy: Policy applied to every store call
        """
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def _fetch_rows(self, table: str, after_cursor: Optional[int], limit: int) -> List[Dict[str, Any]]:
        """Rows of ``table`` with ``id > after_cursor``, ordered by ``id``, at most ``limit``."""

    @abstractmethod
    def _fetch_where_in(self, table: str, column: str, values: List[Any]) -> List[Dict[str, Any]]:
        """Rows of ``table`` whose ``column`` is one of ``values``, ordered by ``id``."""

    @abstractmethod
    def columns(self, table: str) -> Set[str]:
        """Column names currently exposed by ``table``."""

    @abstractmethod
    def count(self, table: str) -> int:
        """Number of rows in ``table``."""

    def close(self) -> None:
        """Release connections held by the reader."""

    def read_page(self, table: str, after_cursor: Optional[int], page_size: int) -> Page:
        """
        Read the next page of a table.

        Args:
            table: Legacy table name
            after_cursor: Last primary key already processed (None to start)
            page_size: Maximum rows to return

        Returns:
            Page whose ``next_cursor`` resumes right after its last row
        """
        self._check_table(table)
        raw_rows = self.retry_policy.call(
            self._fetch_rows, table, after_cursor, page_size,
            description=f"read {table} after {after_cursor}",
        )
        rows = [self._to_row(table, raw) for raw in raw_rows]
        next_cursor = rows[-1].source_id if rows else after_cursor
        logger.debug(f"Read {len(rows)} rows from {table} after cursor {after_cursor}")
        return Page(
            table=table,
            rows=rows,
            after_cursor=after_cursor,
            next_cursor=next_cursor,
            page_size=page_size,
        )

    def iter_pages(self, table: str, page_size: int, after_cursor: Optional[int] = None) -> Iterator[Page]:
        """Yield pages until the table is exhausted."""
        cursor = after_cursor
        while True:
            page = self.read_page(table, cursor, page_size)
            if page.rows:
                yield page
            if not page.has_more:
                break
            cursor = page.next_cursor

    def fetch_related(self, table: str, column: str, values: Iterable[Any]) -> List[SourceRow]:
        """
        Resolve join partners for a page.

        Args:
            table: Legacy table holding the partners
            column: Column matched against ``values``
            values: Keys taken from the driving records

        Returns:
            Matching rows ordered by primary key
        """
        self._check_table(table)
        wanted = sorted({v for v in values if v is not None})
        if not wanted:
            return []
        raw_rows = self.retry_policy.call(
            self._fetch_where_in, table, column, wanted,
            description=f"fetch {table}.{column}",
        )
        return [self._to_row(table, raw) for raw in raw_rows]

    def check_schema(self, table: str) -> None:
        """
        Verify the live table still exposes every expected column.

        Raises:
            SchemaMismatch: If expected columns are absent
        """
        expected = model_for(table).expected_columns()
        live = self.retry_policy.call(self.columns, table, description=f"columns of {table}")
        if not live:
            logger.warning(f"No columns reported for {table}; skipping schema check")
            return
        missing = sorted(expected - live)
        if missing:
            raise SchemaMismatch(
                f"Legacy table {table} is missing columns: {', '.join(missing)}",
                table=table,
                missing_columns=missing,
            )

    def _check_table(self, table: str) -> None:
        if table not in LEGACY_MODELS:
            raise ValueError(f"Unknown legacy table: {table}")

    def _to_row(self, table: str, raw: Dict[str, Any]) -> SourceRow:
        return SourceRow(source_table=table, source_id=int(raw["id"]), data=dict(raw))
