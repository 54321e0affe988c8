"""In-memory target store, used for local runs and tests."""

import copy
import itertools
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .base import BaseLoader, WriteOutcome
from ..errors import TargetUnavailable, WriteFailed
from ..models.record import TargetEntityDraft, utcnow
from ..models.schema import EntityType
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class MemoryLoader(BaseLoader):
    """
    Loader that keeps target rows in dictionaries keyed by natural key.

    Every write records a global sequence number so callers can check the
    order entities were written in. ``fail_on`` injects per-record failures:
    it is called with each draft and may raise.
    """

    def __init__(
        self,
        dry_run: bool = False,
        concurrency: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        fail_on: Optional[Callable[[TargetEntityDraft], None]] = None
    ):
        super().__init__(dry_run=dry_run, concurrency=concurrency, retry_policy=retry_policy)
        self.tables: Dict[EntityType, Dict[str, Dict[str, Any]]] = {e: {} for e in EntityType}
        self.embeddings: Dict[str, Tuple[str, List[float]]] = {}
        self.write_log: List[Tuple[int, str]] = []
        self.available = True
        self.integrity_checks = True
        self.fail_on = fail_on
        self._sequence = itertools.count(1)
        self._store_lock = threading.Lock()

    def ping(self) -> None:
        if not self.available:
            raise TargetUnavailable("Memory target marked unavailable")

    def set_integrity_checks(self, enabled: bool) -> None:
        self.integrity_checks = enabled

    def upsert_record(self, draft: TargetEntityDraft) -> WriteOutcome:
        self.ping()
        if self.fail_on is not None:
            self.fail_on(draft)

        if self.integrity_checks:
            for field_name, key in draft.references.items():
                if key and not self._exists(key):
                    raise WriteFailed(
                        draft.natural_key,
                        f"foreign key {field_name} -> {key} does not exist",
                        retryable=False,
                    )

        row = {
            "legacy_key": draft.natural_key,
            **copy.deepcopy(draft.fields),
            **dict(draft.references),
            "legacy_provenance": list(draft.provenance),
        }
        with self._store_lock:
            table = self.tables[draft.entity_type]
            current = table.get(draft.natural_key)
            if current is not None and current["row"] == row:
                return WriteOutcome.UNCHANGED
            sequence = next(self._sequence)
            table[draft.natural_key] = {"row": row, "sequence": sequence, "written_at": utcnow()}
            self.write_log.append((sequence, draft.natural_key))
        return WriteOutcome.UPDATED if current is not None else WriteOutcome.INSERTED

    def _exists(self, natural_key: str) -> bool:
        entity_type = EntityType(natural_key.split(":", 1)[0])
        with self._store_lock:
            return natural_key in self.tables[entity_type]

    def existing_keys(self, entity_type: EntityType, keys: Iterable[str]) -> Set[str]:
        self.ping()
        with self._store_lock:
            return {key for key in keys if key in self.tables[entity_type]}

    def fetch_rows(self, entity_type: EntityType, after_key: Optional[str], limit: int) -> List[Dict[str, Any]]:
        self.ping()
        with self._store_lock:
            keys = sorted(k for k in self.tables[entity_type] if after_key is None or k > after_key)
            return [copy.deepcopy(self.tables[entity_type][k]["row"]) for k in keys[:limit]]

    def save_embeddings(self, entity_type: EntityType, rows: List[Tuple[str, str, List[float]]]) -> None:
        self.ping()
        with self._store_lock:
            for key, model, vector in rows:
                self.embeddings[key] = (model, list(vector))

    # Convenience accessors

    def rows(self, entity_type: EntityType) -> Dict[str, Dict[str, Any]]:
        with self._store_lock:
            return {k: v["row"] for k, v in self.tables[entity_type].items()}

    def count(self, entity_type: EntityType) -> int:
        with self._store_lock:
            return len(self.tables[entity_type])

    def first_write(self, entity_type: EntityType) -> Optional[int]:
        with self._store_lock:
            sequences = [v["sequence"] for v in self.tables[entity_type].values()]
        return min(sequences) if sequences else None

    def last_write(self, entity_type: EntityType) -> Optional[int]:
        with self._store_lock:
            sequences = [v["sequence"] for v in self.tables[entity_type].values()]
        return max(sequences) if sequences else None
