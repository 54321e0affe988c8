"""Base loader interface for the target store."""

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import BatchAborted, MigrationError, StoreTimeout, TargetUnavailable, WriteFailed
from ..models.record import DataQualityIssue, IssueKind, TargetEntityDraft, utcnow
from ..models.schema import ENTITY_PLANS, EntityType, entity_of_key
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    """What an idempotent upsert did."""
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STAGED = "staged"


@dataclass
class LoadResult:
    """Result of loading one batch."""
    entity_type: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    staged: int = 0
    skipped: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)
    issues: List[DataQualityIssue] = field(default_factory=list)
    loaded_keys: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_attempted(self) -> int:
        return self.inserted + self.updated + self.unchanged + self.staged + len(self.failed)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def stats(self) -> Dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "staged": self.staged,
            "skipped": self.skipped,
            "failed": len(self.failed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            **self.stats(),
            "failures": self.failed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


class BaseLoader(ABC):
    """
    Base class for target store loaders.

    Loaders upsert drafts keyed by natural key, so loading the same batch
    twice leaves the store unchanged. Before writing, every reference of a
    draft is checked against natural keys already loaded: a missing
    required reference turns the draft into a recorded skip, a missing
    optional reference is written as NULL.

    Writes for one natural key are serialized; different keys of a batch
    are written in parallel up to ``concurrency``.
    """

    def __init__(
        self,
        dry_run: bool = False,
        concurrency: int = 4,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize the loader.

        Args:
            dry_run: If True, stage keys in memory instead of writing
            concurrency: Maximum parallel writes within a batch
            retry_policy: Policy for per-record writes
        """
        self.dry_run = dry_run
        self.concurrency = max(1, concurrency)
        self.retry_policy = retry_policy or RetryPolicy()
        self._known_keys: Dict[EntityType, Set[str]] = {}
        self._lock = threading.Lock()

    @abstractmethod
    def upsert_record(self, draft: TargetEntityDraft) -> WriteOutcome:
        """
        Insert or update one draft keyed by its natural key.

        Returns:
            INSERTED, UPDATED, or UNCHANGED when the stored row already
            holds the same values

        Raises:
            WriteFailed: The record was rejected (constraint violation, bad data)
            TargetUnavailable: The store could not be reached
        """

    @abstractmethod
    def existing_keys(self, entity_type: EntityType, keys: Iterable[str]) -> Set[str]:
        """Subset of ``keys`` already present in the store."""

    @abstractmethod
    def ping(self) -> None:
        """Raise TargetUnavailable when the store cannot be reached."""

    @abstractmethod
    def fetch_rows(self, entity_type: EntityType, after_key: Optional[str], limit: int) -> List[Dict[str, Any]]:
        """Loaded rows ordered by natural key (``legacy_key``) after ``after_key``."""

    @abstractmethod
    def save_embeddings(self, entity_type: EntityType, rows: List[Tuple[str, str, List[float]]]) -> None:
        """Store ``(natural_key, model, vector)`` rows."""

    def set_integrity_checks(self, enabled: bool) -> None:
        """Relax (False) or restore (True) foreign key enforcement during bulk load."""

    def close(self) -> None:
        """Release connections held by the loader."""

    # ------------------------------------------------------------------
    # Referential integrity
    # ------------------------------------------------------------------

    def known_keys(self, entity_type: EntityType, keys: Iterable[str]) -> Set[str]:
        """Keys loaded (or staged) in this process or found in the store."""
        keys = set(keys)
        with self._lock:
            cached = self._known_keys.setdefault(entity_type, set())
            found = keys & cached
        missing = keys - found
        if missing:
            in_store = self.retry_policy.call(
                self.existing_keys, entity_type, missing,
                description=f"look up {entity_type.value} keys",
            )
            with self._lock:
                self._known_keys[entity_type].update(in_store)
            found |= in_store
        return found

    def remember_keys(self, entity_type: EntityType, keys: Iterable[str]) -> None:
        with self._lock:
            self._known_keys.setdefault(entity_type, set()).update(keys)

    def check_references(
        self,
        drafts: List[TargetEntityDraft],
    ) -> Tuple[List[TargetEntityDraft], List[DataQualityIssue], int]:
        """
        Resolve references of a batch against loaded natural keys.

        Returns:
            (drafts to write, issues, number of drafts skipped)
        """
        wanted: Dict[EntityType, Set[str]] = {}
        for draft in drafts:
            for key in draft.depends_on:
                wanted.setdefault(entity_of_key(key), set()).add(key)
        present: Set[str] = set()
        for entity_type, keys in wanted.items():
            present |= self.known_keys(entity_type, keys)

        writable = []
        issues = []
        skipped = 0
        for draft in drafts:
            plan = ENTITY_PLANS[draft.entity_type]
            references = dict(draft.references)
            skip_reason = None
            for link in plan.references:
                key = references.get(link.field)
                if key and key in present:
                    continue
                if link.required:
                    skip_reason = (
                        f"required reference {link.field} -> {key} was not loaded"
                        if key else f"required reference {link.field} is empty"
                    )
                    break
                if key:
                    references[link.field] = None
                    issues.append(DataQualityIssue(
                        kind=IssueKind.REFERENCE_NULLED,
                        entity_type=draft.entity_type.value,
                        reference=draft.natural_key,
                        reason=f"optional reference {link.field} -> {key} was not loaded; set to NULL",
                        details={"field": link.field, "target": key},
                    ))

            if skip_reason:
                skipped += 1
                issues.append(DataQualityIssue(
                    kind=IssueKind.REFERENCE_SKIP,
                    entity_type=draft.entity_type.value,
                    reference=draft.natural_key,
                    reason=skip_reason,
                ))
                logger.warning(f"Skipping {draft.natural_key}: {skip_reason}")
                continue

            if references != draft.references:
                draft = replace(draft, references=references)
            writable.append(draft)

        return writable, issues, skipped

    # ------------------------------------------------------------------
    # Batch loading
    # ------------------------------------------------------------------

    def load_batch(
        self,
        entity_type: EntityType,
        drafts: List[TargetEntityDraft],
        batch_number: int = 0
    ) -> LoadResult:
        """
        Load a batch of drafts.

        Args:
            entity_type: Entity type of every draft in the batch
            drafts: Drafts to upsert
            batch_number: Batch number, used in error reports

        Returns:
            LoadResult with per-outcome counts and failures by natural key

        Raises:
            BatchAborted: The store became unreachable; nothing of the batch
                can be trusted and it must be retried from its start
        """
        result = LoadResult(entity_type=entity_type.value)
        result.started_at = utcnow()

        try:
            if not self.dry_run:
                self.retry_policy.call(self.ping, description=f"ping target for {entity_type.value}")
            writable, issues, skipped = self.check_references(drafts)
        except MigrationError as e:
            if e.retryable:
                raise BatchAborted(entity_type.value, batch_number, e) from e
            raise
        result.issues.extend(issues)
        result.skipped = skipped

        # Serialize per natural key, parallelize across keys.
        by_key: "OrderedDict[str, List[TargetEntityDraft]]" = OrderedDict()
        for draft in writable:
            by_key.setdefault(draft.natural_key, []).append(draft)

        if self.concurrency > 1 and len(by_key) > 1:
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                outcomes = list(pool.map(self._write_key, by_key.values()))
        else:
            outcomes = [self._write_key(group) for group in by_key.values()]

        unavailable = None
        for key, key_outcomes in zip(by_key.keys(), outcomes):
            for outcome in key_outcomes:
                if isinstance(outcome, WriteOutcome):
                    setattr(result, outcome.value, getattr(result, outcome.value) + 1)
                    if key not in result.loaded_keys:
                        result.loaded_keys.append(key)
                elif isinstance(outcome, (TargetUnavailable, StoreTimeout)):
                    unavailable = outcome
                else:
                    result.failed.append({"natural_key": key, "error": str(outcome)})
                    result.issues.append(DataQualityIssue(
                        kind=IssueKind.WRITE_FAILED,
                        entity_type=entity_type.value,
                        reference=key,
                        reason=str(outcome),
                    ))

        result.completed_at = utcnow()
        if unavailable is not None:
            raise BatchAborted(entity_type.value, batch_number, unavailable)

        self.remember_keys(entity_type, result.loaded_keys)
        logger.info(
            f"Loaded {entity_type.value} batch {batch_number}: {result.inserted} inserted, "
            f"{result.updated} updated, {result.unchanged} unchanged, {result.staged} staged, "
            f"{result.skipped} skipped, {len(result.failed)} failed"
        )
        return result

    def _write_key(self, drafts: List[TargetEntityDraft]) -> List[Any]:
        """Write all drafts of one natural key in order; never raises."""
        outcomes: List[Any] = []
        for draft in drafts:
            try:
                outcomes.append(self.retry_policy.call(
                    self._write, draft, description=f"upsert {draft.natural_key}",
                ))
            except (TargetUnavailable, StoreTimeout) as e:
                outcomes.append(e)
                break
            except Exception as e:
                logger.error(f"Failed to load record {draft.natural_key}: {e}")
                if not isinstance(e, WriteFailed):
                    e = WriteFailed(draft.natural_key, str(e), retryable=False)
                outcomes.append(e)
        return outcomes

    def _write(self, draft: TargetEntityDraft) -> WriteOutcome:
        if self.dry_run:
            return WriteOutcome.STAGED
        return self.upsert_record(draft)
