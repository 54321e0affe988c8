"""Exception taxonomy for the migration engine.

Every error carries two class-level flags the engine uses to decide what to
do with it:

- ``retryable``: the operation may succeed if attempted again (connection
  drops, timeouts). The shared :class:`~practice_migrate.services.retry.RetryPolicy`
  retries these.
- ``fatal``: the failure signals a structural problem (schema drift, broken
  load order) and aborts the entity type or the run instead of a single
  record or batch.

Row-level outcomes such as quarantined records, transform skips and
ambiguous dedup matches are *not* raised; they are returned as values and
recorded as :class:`~practice_migrate.models.record.DataQualityIssue` entries.
"""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base class for all migration errors."""

    retryable = False
    fatal = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "fatal": self.fatal,
            "details": self.details,
        }


class SourceUnavailable(MigrationError):
    """Legacy store could not be reached or the read timed out."""

    retryable = True


class StoreTimeout(MigrationError):
    """A store call exceeded its deadline."""

    retryable = True


class SchemaMismatch(MigrationError):
    """Expected legacy columns are absent or the record shape drifted."""

    fatal = True

    def __init__(self, message: str, table: str = "", missing_columns: Optional[List[str]] = None):
        super().__init__(message, {"table": table, "missing_columns": missing_columns or []})
        self.table = table
        self.missing_columns = missing_columns or []


class QuarantineThresholdExceeded(SchemaMismatch):
    """Too many records of one batch failed validation."""

    def __init__(self, table: str, quarantined: int, total: int, threshold: float):
        rate = quarantined / total if total else 0.0
        super().__init__(
            f"Quarantine rate {rate:.1%} for {table} exceeds threshold {threshold:.1%} "
            f"({quarantined}/{total} records)",
            table=table,
        )
        self.details.update({"quarantined": quarantined, "total": total, "threshold": threshold})
        self.quarantined = quarantined
        self.total = total
        self.threshold = threshold


class RecordInvalid(MigrationError):
    """A single legacy record violates its table invariants."""

    def __init__(self, reference: str, reasons: List[str]):
        super().__init__(f"{reference}: {'; '.join(reasons)}", {"reference": reference, "reasons": reasons})
        self.reference = reference
        self.reasons = reasons


class TransformSkip(MigrationError):
    """A record cannot be turned into a target draft."""


class WriteFailed(MigrationError):
    """A single upsert failed (constraint violation, transient error)."""

    retryable = True

    def __init__(self, natural_key: str, message: str, retryable: bool = True):
        super().__init__(f"{natural_key}: {message}", {"natural_key": natural_key})
        self.natural_key = natural_key
        self.retryable = retryable


class TargetUnavailable(MigrationError):
    """Target store could not be reached."""

    retryable = True


class BatchAborted(MigrationError):
    """A batch could not be completed and must be retried from its start."""

    retryable = True

    def __init__(self, entity_type: str, batch_number: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Batch {batch_number} of {entity_type} aborted: {cause}",
            {"entity_type": entity_type, "batch_number": batch_number},
        )
        self.entity_type = entity_type
        self.batch_number = batch_number
        self.cause = cause


class DependencyUnmet(MigrationError):
    """An entity type was scheduled before the entity types it references completed."""

    fatal = True

    def __init__(self, entity_type: str, missing: List[str]):
        super().__init__(
            f"Cannot load {entity_type}: dependencies not completed: {', '.join(missing)}",
            {"entity_type": entity_type, "missing": missing},
        )
        self.entity_type = entity_type
        self.missing = missing


class CheckpointConflict(MigrationError):
    """Illegal checkpoint transition or a second in-progress batch."""


class MigrationCancelled(MigrationError):
    """The run was cancelled between batches."""


class EnrichmentFailed(MigrationError):
    """Embedding or knowledge-base call failed."""

    retryable = True
