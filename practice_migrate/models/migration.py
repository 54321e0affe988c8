"""Migration execution models: configuration, run aggregate and checkpoints."""

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .record import DataQualityIssue, IssueKind, utcnow


class Phase(str, Enum):
    """Phases of a migration run."""
    INIT = "init"
    PREPARE = "prepare"
    EXTRACT = "extract"
    TRANSFORM = "transform"
    DEDUP = "dedup"
    VALIDATE = "validate"
    LOAD = "load"
    ENRICH = "enrich"
    REPORT = "report"
    DONE = "done"
    FAILED = "failed"


# Phases tracked in MigrationRun.phase_statuses, in execution order.
PIPELINE_PHASES: List[Phase] = [
    Phase.PREPARE,
    Phase.EXTRACT,
    Phase.TRANSFORM,
    Phase.DEDUP,
    Phase.VALIDATE,
    Phase.LOAD,
    Phase.ENRICH,
    Phase.REPORT,
]

# Phases that may be switched off by configuration.
SKIPPABLE_PHASES = {Phase.DEDUP, Phase.VALIDATE, Phase.LOAD, Phase.ENRICH}

# Phase an issue is attributed to when aggregating phase statuses.
ISSUE_PHASE: Dict[IssueKind, Phase] = {
    IssueKind.QUARANTINED: Phase.EXTRACT,
    IssueKind.TRANSFORM_SKIP: Phase.TRANSFORM,
    IssueKind.DEDUP_AUDIT: Phase.DEDUP,
    IssueKind.DEDUP_AMBIGUOUS: Phase.DEDUP,
    IssueKind.INVALID_DRAFT: Phase.VALIDATE,
    IssueKind.REFERENCE_SKIP: Phase.LOAD,
    IssueKind.REFERENCE_NULLED: Phase.LOAD,
    IssueKind.WRITE_FAILED: Phase.LOAD,
    IssueKind.ENRICHMENT_FAILED: Phase.ENRICH,
}


class PhaseStatus(str, Enum):
    """Status of a phase or of one entity type."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a migration run."""
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def succeeded(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_WARNINGS)

    @property
    def resumable(self) -> bool:
        return self in (RunStatus.RUNNING, RunStatus.PARTIAL, RunStatus.FAILED, RunStatus.CANCELLED)


class BatchStatus(str, Enum):
    """Checkpoint state of one batch."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


# Allowed checkpoint transitions.
BATCH_TRANSITIONS: Dict[BatchStatus, set] = {
    BatchStatus.PENDING: {BatchStatus.IN_PROGRESS},
    BatchStatus.IN_PROGRESS: {BatchStatus.DONE, BatchStatus.FAILED},
    BatchStatus.FAILED: {BatchStatus.PENDING},
    BatchStatus.DONE: set(),
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class DatabaseConfig:
    """Connection settings for a PostgreSQL store."""
    dsn: Optional[str] = None
    connect_timeout: int = 10
    statement_timeout_ms: int = 30000
    pool_min: int = 1
    pool_max: int = 4

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dsn": "***" if self.dsn else None,
            "connect_timeout": self.connect_timeout,
            "statement_timeout_ms": self.statement_timeout_ms,
            "pool_min": self.pool_min,
            "pool_max": self.pool_max,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DatabaseConfig":
        data = data or {}
        return cls(
            dsn=data.get("dsn"),
            connect_timeout=data.get("connect_timeout", 10),
            statement_timeout_ms=data.get("statement_timeout_ms", 30000),
            pool_min=data.get("pool_min", 1),
            pool_max=data.get("pool_max", 4),
        )


@dataclass
class RetryConfig:
    """Bounded backoff shared by reader, loader and enrichment clients."""
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "backoff_factor": self.backoff_factor,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryConfig":
        data = data or {}
        return cls(
            max_attempts=data.get("max_attempts", 3),
            base_delay=data.get("base_delay", 0.5),
            backoff_factor=data.get("backoff_factor", 2.0),
            max_delay=data.get("max_delay", 30.0),
        )


@dataclass
class DedupConfig:
    """
    Patient deduplication policy.

    Confidence per tier and the merge/review thresholds are business
    decisions, so all of them are configuration.
    """
    enabled: bool = True
    cross_office: bool = False
    exact_confidence: float = 1.0
    fuzzy_confidence: float = 0.8
    ambiguous_confidence: float = 0.6
    fuzzy_max_distance: int = 1
    ambiguous_max_distance: int = 2
    auto_merge_threshold: float = 0.8
    review_threshold: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "cross_office": self.cross_office,
            "exact_confidence": self.exact_confidence,
            "fuzzy_confidence": self.fuzzy_confidence,
            "ambiguous_confidence": self.ambiguous_confidence,
            "fuzzy_max_distance": self.fuzzy_max_distance,
            "ambiguous_max_distance": self.ambiguous_max_distance,
            "auto_merge_threshold": self.auto_merge_threshold,
            "review_threshold": self.review_threshold,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DedupConfig":
        data = data or {}
        defaults = cls()
        return cls(**{k: data.get(k, getattr(defaults, k)) for k in defaults.to_dict()})


@dataclass
class EnrichmentConfig:
    """Embedding and knowledge-base settings."""
    enabled: bool = False
    failure_policy: str = "defer"  # retry | defer
    entities: List[str] = field(default_factory=lambda: ["case", "case_message"])
    batch_size: int = 50
    timeout: float = 30.0
    embedding_url: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_api_key: Optional[str] = None
    knowledge_base_url: Optional[str] = None
    knowledge_base_api_key: Optional[str] = None
    dataset_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "failure_policy": self.failure_policy,
            "entities": self.entities,
            "batch_size": self.batch_size,
            "timeout": self.timeout,
            "embedding_url": self.embedding_url,
            "embedding_model": self.embedding_model,
            "knowledge_base_url": self.knowledge_base_url,
            "dataset_id": self.dataset_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EnrichmentConfig":
        data = data or {}
        policy = data.get("failure_policy", "defer")
        if policy not in ("retry", "defer"):
            raise ValueError(f"Unknown enrichment failure_policy: {policy}")
        return cls(
            enabled=data.get("enabled", False),
            failure_policy=policy,
            entities=data.get("entities", ["case", "case_message"]),
            batch_size=data.get("batch_size", 50),
            timeout=data.get("timeout", 30.0),
            embedding_url=data.get("embedding_url"),
            embedding_model=data.get("embedding_model", "text-embedding-3-small"),
            embedding_api_key=data.get("embedding_api_key"),
            knowledge_base_url=data.get("knowledge_base_url"),
            knowledge_base_api_key=data.get("knowledge_base_api_key"),
            dataset_id=data.get("dataset_id"),
        )


@dataclass
class MigrationConfig:
    """Configuration for a migration."""
    name: str = "legacy-dispatch"

    # Stores
    legacy: DatabaseConfig = field(default_factory=DatabaseConfig)
    target: DatabaseConfig = field(default_factory=DatabaseConfig)
    source_dir: Optional[str] = None  # JSON table dumps instead of a live legacy store
    checkpoint_backend: str = "file"  # file | postgres
    checkpoint_dir: str = "./data/checkpoints"

    # Execution options
    dry_run: bool = False
    batch_size: int = 500
    transform_workers: int = 4
    load_concurrency: int = 4
    entity_concurrency: int = 1
    batch_retries: int = 2
    continue_on_error: bool = True
    relax_integrity: bool = False
    skip_phases: List[str] = field(default_factory=list)
    skip_entities: List[str] = field(default_factory=list)
    only_entities: List[str] = field(default_factory=list)

    # Data options
    source_timezone: str = "UTC"
    default_currency: str = "USD"
    quarantine_threshold: float = 0.5
    quarantine_min_batch: int = 20

    retry: RetryConfig = field(default_factory=RetryConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    # Output
    output_dir: str = "./data"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets masked)."""
        return {
            "name": self.name,
            "legacy": self.legacy.to_dict(),
            "target": self.target.to_dict(),
            "source_dir": self.source_dir,
            "checkpoint_backend": self.checkpoint_backend,
            "checkpoint_dir": self.checkpoint_dir,
            "dry_run": self.dry_run,
            "batch_size": self.batch_size,
            "transform_workers": self.transform_workers,
            "load_concurrency": self.load_concurrency,
            "entity_concurrency": self.entity_concurrency,
            "batch_retries": self.batch_retries,
            "continue_on_error": self.continue_on_error,
            "relax_integrity": self.relax_integrity,
            "skip_phases": self.skip_phases,
            "skip_entities": self.skip_entities,
            "only_entities": self.only_entities,
            "source_timezone": self.source_timezone,
            "default_currency": self.default_currency,
            "quarantine_threshold": self.quarantine_threshold,
            "quarantine_min_batch": self.quarantine_min_batch,
            "retry": self.retry.to_dict(),
            "dedup": self.dedup.to_dict(),
            "enrichment": self.enrichment.to_dict(),
            "output_dir": self.output_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        skip_phases = list(data.get("skip_phases", []))
        for phase in skip_phases:
            if Phase(phase) not in SKIPPABLE_PHASES:
                raise ValueError(f"Phase cannot be skipped: {phase}")

        return cls(
            name=data.get("name", "legacy-dispatch"),
            legacy=DatabaseConfig.from_dict(data.get("legacy")),
            target=DatabaseConfig.from_dict(data.get("target")),
            source_dir=data.get("source_dir"),
            checkpoint_backend=data.get("checkpoint_backend", "file"),
            checkpoint_dir=data.get("checkpoint_dir", "./data/checkpoints"),
            dry_run=data.get("dry_run", False),
            batch_size=data.get("batch_size", 500),
            transform_workers=data.get("transform_workers", 4),
            load_concurrency=data.get("load_concurrency", 4),
            entity_concurrency=data.get("entity_concurrency", 1),
            batch_retries=data.get("batch_retries", 2),
            continue_on_error=data.get("continue_on_error", True),
            relax_integrity=data.get("relax_integrity", False),
            skip_phases=skip_phases,
            skip_entities=list(data.get("skip_entities", [])),
            only_entities=list(data.get("only_entities", [])),
            source_timezone=data.get("source_timezone", "UTC"),
            default_currency=data.get("default_currency", "USD"),
            quarantine_threshold=data.get("quarantine_threshold", 0.5),
            quarantine_min_batch=data.get("quarantine_min_batch", 20),
            retry=RetryConfig.from_dict(data.get("retry")),
            dedup=DedupConfig.from_dict(data.get("dedup")),
            enrichment=EnrichmentConfig.from_dict(data.get("enrichment")),
            output_dir=data.get("output_dir", "./data"),
        )

    @classmethod
    def from_file(cls, path: str) -> "MigrationConfig":
        with open(Path(path)) as f:
            return cls.from_dict(json.load(f))

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "MigrationConfig":
        """Fill connection strings and API keys from the environment when set."""
        env = os.environ if environ is None else environ
        self.legacy.dsn = env.get("LEGACY_DATABASE_URL", self.legacy.dsn)
        self.target.dsn = env.get("TARGET_DATABASE_URL", self.target.dsn)
        self.enrichment.embedding_api_key = env.get("EMBEDDING_API_KEY", self.enrichment.embedding_api_key)
        self.enrichment.knowledge_base_api_key = env.get(
            "KNOWLEDGE_BASE_API_KEY", self.enrichment.knowledge_base_api_key
        )
        return self

    def phase_enabled(self, phase: Phase) -> bool:
        return phase.value not in self.skip_phases


@dataclass
class Checkpoint:
    """Progress of one batch of one entity type within a run."""
    run_id: str
    entity_type: str
    batch_number: int
    status: BatchStatus = BatchStatus.PENDING
    records_processed: int = 0
    records_failed: int = 0
    start_cursor: Optional[Any] = None
    end_cursor: Optional[Any] = None
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    error_summary: Optional[str] = None
    stats: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "batch_number": self.batch_number,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "start_cursor": self.start_cursor,
            "end_cursor": self.end_cursor,
            "attempts": self.attempts,
            "last_attempt_at": _iso(self.last_attempt_at),
            "error_summary": self.error_summary,
            "stats": self.stats,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            run_id=data["run_id"],
            entity_type=data["entity_type"],
            batch_number=data["batch_number"],
            status=BatchStatus(data.get("status", "pending")),
            records_processed=data.get("records_processed", 0),
            records_failed=data.get("records_failed", 0),
            start_cursor=data.get("start_cursor"),
            end_cursor=data.get("end_cursor"),
            attempts=data.get("attempts", 0),
            last_attempt_at=_parse_iso(data.get("last_attempt_at")),
            error_summary=data.get("error_summary"),
            stats=data.get("stats") or {},
        )


@dataclass
class EntityTotals:
    """Per-entity counters accumulated across batches."""
    extracted: int = 0
    quarantined: int = 0
    skipped: int = 0
    merged: int = 0
    invalid: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    staged: int = 0  # dry-run writes
    failed: int = 0
    batches: int = 0

    @property
    def migrated(self) -> int:
        return self.inserted + self.updated + self.unchanged

    def add(self, stats: Mapping[str, int]) -> None:
        for name, value in stats.items():
            if hasattr(self, name) and name != "migrated":
                setattr(self, name, getattr(self, name) + value)

    def to_dict(self) -> Dict[str, int]:
        return {
            "extracted": self.extracted,
            "quarantined": self.quarantined,
            "skipped": self.skipped,
            "merged": self.merged,
            "invalid": self.invalid,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "migrated": self.migrated,
            "staged": self.staged,
            "failed": self.failed,
            "batches": self.batches,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, int]) -> "EntityTotals":
        totals = cls()
        totals.add({k: v for k, v in data.items() if k != "migrated"})
        return totals


@dataclass
class MigrationRun:
    """
    Top-level aggregate of one migration run.

    Owned by the orchestrator and persisted in the checkpoint store after
    every batch, so a later invocation can detect and resume it.
    """
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: RunStatus = RunStatus.RUNNING
    current_phase: Phase = Phase.INIT
    dry_run: bool = False
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    phase_statuses: Dict[str, PhaseStatus] = field(
        default_factory=lambda: {p.value: PhaseStatus.PENDING for p in PIPELINE_PHASES}
    )
    entity_statuses: Dict[str, PhaseStatus] = field(default_factory=dict)
    totals_by_entity: Dict[str, EntityTotals] = field(default_factory=dict)
    source_counts: Dict[str, int] = field(default_factory=dict)
    issues: List[DataQualityIssue] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def enrichment_pending(self) -> bool:
        """Loaded successfully, but some enrichment batches still wait for a follow-up run."""
        return (
            self.status == RunStatus.COMPLETED_WITH_WARNINGS
            and any(i.kind == IssueKind.ENRICHMENT_FAILED for i in self.issues)
        )

    @property
    def resumable(self) -> bool:
        return self.status.resumable or self.enrichment_pending

    def totals(self, entity_type: str) -> EntityTotals:
        return self.totals_by_entity.setdefault(entity_type, EntityTotals())

    def add_error(self, phase: Phase, error: Exception, entity_type: Optional[str] = None) -> None:
        self.errors.append({
            "phase": phase.value,
            "entity_type": entity_type,
            "error": str(error),
            "type": type(error).__name__,
            "timestamp": utcnow().isoformat(),
        })

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "name": self.name,
            "status": self.status.value,
            "current_phase": self.current_phase.value,
            "dry_run": self.dry_run,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "phase_statuses": {k: v.value for k, v in self.phase_statuses.items()},
            "entity_statuses": {k: v.value for k, v in self.entity_statuses.items()},
            "totals_by_entity": {k: v.to_dict() for k, v in self.totals_by_entity.items()},
            "source_counts": self.source_counts,
            "issues": [i.to_dict() for i in self.issues],
            "errors": self.errors,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRun":
        """Create from dictionary representation."""
        run = cls(
            run_id=data["run_id"],
            name=data.get("name", ""),
            status=RunStatus(data.get("status", "running")),
            current_phase=Phase(data.get("current_phase", "init")),
            dry_run=data.get("dry_run", False),
            started_at=_parse_iso(data.get("started_at")) or utcnow(),
            completed_at=_parse_iso(data.get("completed_at")),
            entity_statuses={k: PhaseStatus(v) for k, v in data.get("entity_statuses", {}).items()},
            totals_by_entity={
                k: EntityTotals.from_dict(v) for k, v in data.get("totals_by_entity", {}).items()
            },
            source_counts=data.get("source_counts", {}),
            issues=[DataQualityIssue.from_dict(i) for i in data.get("issues", [])],
            errors=data.get("errors", []),
        )
        run.phase_statuses.update({k: PhaseStatus(v) for k, v in data.get("phase_statuses", {}).items()})
        return run
