"""Legacy reader over JSON table dumps."""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .base import BaseExtractor
from ..errors import SourceUnavailable
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class JSONExtractor(BaseExtractor):
    """
    Reader for offline dumps: one ``<table>.json`` file per legacy table,
    each holding a list of row objects.

    Rows can also be handed over directly with ``tables``, which is how
    tests and previews feed the engine.
    """

    def __init__(
        self,
        source_dir: Optional[str] = None,
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize the JSON reader.

        Args:
            source_dir: Directory containing ``<table>.json`` files
            tables: In-memory rows by table name (takes precedence over files)
            retry_policy: Policy applied to every read
        """
        super().__init__(retry_policy)
        self.source_dir = Path(source_dir) if source_dir else None
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        for table, rows in (tables or {}).items():
            self._tables[table] = sorted(rows, key=lambda r: r["id"])

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            if table not in self._tables:
                self._tables[table] = self._load_file(table)
            return self._tables[table]

    def _load_file(self, table: str) -> List[Dict[str, Any]]:
        if self.source_dir is None:
            return []
        file_path = self.source_dir / f"{table}.json"
        if not file_path.exists():
            logger.warning(f"No dump found for {table} at {file_path}")
            return []
        try:
            with open(file_path, encoding="utf-8") as f:
                rows = json.load(f)
        except OSError as e:
            raise SourceUnavailable(f"Cannot read {file_path}: {e}") from e
        if not isinstance(rows, list):
            raise SourceUnavailable(f"{file_path} does not contain a list of rows")
        logger.info(f"Loaded {len(rows)} {table} rows from {file_path}")
        return sorted(rows, key=lambda r: r["id"])

    def add_rows(self, table: str, rows: List[Dict[str, Any]]) -> None:
        """Append rows to a table, as concurrent production inserts would."""
        with self._lock:
            existing = self._tables.setdefault(table, [])
            existing.extend(rows)
            existing.sort(key=lambda r: r["id"])

    def _fetch_rows(self, table: str, after_cursor: Optional[int], limit: int) -> List[Dict[str, Any]]:
        rows = self._rows(table)
        if after_cursor is not None:
            rows = [r for r in rows if r["id"] > after_cursor]
        return [dict(r) for r in rows[:limit]]

    def _fetch_where_in(self, table: str, column: str, values: List[Any]) -> List[Dict[str, Any]]:
        wanted = set(values)
        return [dict(r) for r in self._rows(table) if r.get(column) in wanted]

    def columns(self, table: str) -> Set[str]:
        names: Set[str] = set()
        for row in self._rows(table):
            names.update(row.keys())
        return names

    def count(self, table: str) -> int:
        return len(self._rows(table))
