"""Data models for the migration engine."""

from .schema import (
    EntityType,
    EntitySchema,
    EntityPlan,
    FieldDefinition,
    FieldType,
    ENTITY_PLANS,
    LOAD_ORDER,
    TARGET_SCHEMAS,
    load_waves,
)
from .legacy import LegacyRecord, LEGACY_MODELS
from .record import (
    SourceRow,
    Quarantined,
    Skip,
    RelatedRecords,
    TargetEntityDraft,
    CanonicalIdentity,
    DataQualityIssue,
    IssueKind,
)
from .migration import (
    BatchStatus,
    Checkpoint,
    EntityTotals,
    MigrationConfig,
    MigrationRun,
    Phase,
    PhaseStatus,
    RunStatus,
)

__all__ = [
    "EntityType",
    "EntitySchema",
    "EntityPlan",
    "FieldDefinition",
    "FieldType",
    "ENTITY_PLANS",
    "LOAD_ORDER",
    "TARGET_SCHEMAS",
    "load_waves",
    "LegacyRecord",
    "LEGACY_MODELS",
    "SourceRow",
    "Quarantined",
    "Skip",
    "RelatedRecords",
    "TargetEntityDraft",
    "CanonicalIdentity",
    "DataQualityIssue",
    "IssueKind",
    "BatchStatus",
    "Checkpoint",
    "EntityTotals",
    "MigrationConfig",
    "MigrationRun",
    "Phase",
    "PhaseStatus",
    "RunStatus",
]
