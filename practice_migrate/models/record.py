"""Record models flowing through the pipeline."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .legacy import LegacyRecord
from .schema import EntityType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceRow:
    """A raw row as read from the legacy store."""
    source_table: str
    source_id: int
    data: Dict[str, Any]
    extracted_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def ref(self) -> str:
        return f"{self.source_table}:{self.source_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "source_id": self.source_id,
            "data": self.data,
            "extracted_at": self.extracted_at.isoformat(),
        }


@dataclass(frozen=True)
class Quarantined:
    """A row (or draft) set aside because it failed validation."""
    reference: str
    reasons: Tuple[str, ...]
    row: Optional[SourceRow] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"reference": self.reference, "reasons": list(self.reasons)}


@dataclass(frozen=True)
class Skip:
    """The transformer could not produce a draft for these records."""
    reason: str
    provenance: Tuple[str, ...] = ()


@dataclass
class RelatedRecords:
    """A driving legacy record plus its resolved join partners (``None`` when absent)."""
    primary: LegacyRecord
    joined: Dict[str, Any] = field(default_factory=dict)  # record, None, or a list for many-joins


@dataclass
class TargetEntityDraft:
    """A candidate row for the target schema."""
    entity_type: EntityType
    natural_key: str
    fields: Dict[str, Any] = field(default_factory=dict)
    references: Dict[str, Optional[str]] = field(default_factory=dict)  # field -> natural key
    provenance: List[str] = field(default_factory=list)

    @property
    def depends_on(self) -> Set[str]:
        return {key for key in self.references.values() if key}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "natural_key": self.natural_key,
            "fields": self.fields,
            "references": self.references,
            "provenance": self.provenance,
        }


class MergeReason(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    NEW = "new"


@dataclass
class CanonicalIdentity:
    """One real-world patient and every legacy identity collapsed into it."""
    patient_key: str
    source_keys: List[str]
    confidence: float = 1.0
    merge_reason: MergeReason = MergeReason.NEW
    needs_audit: bool = False
    scope: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    phone_last4: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_key": self.patient_key,
            "source_keys": list(self.source_keys),
            "confidence": self.confidence,
            "merge_reason": self.merge_reason.value,
            "needs_audit": self.needs_audit,
            "scope": self.scope,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "date_of_birth": self.date_of_birth,
            "phone_last4": self.phone_last4,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalIdentity":
        return cls(
            patient_key=data["patient_key"],
            source_keys=list(data.get("source_keys", [])),
            confidence=data.get("confidence", 1.0),
            merge_reason=MergeReason(data.get("merge_reason", "new")),
            needs_audit=data.get("needs_audit", False),
            scope=data.get("scope", ""),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            date_of_birth=data.get("date_of_birth", ""),
            phone_last4=data.get("phone_last4", ""),
        )


class IssueKind(str, Enum):
    """Kinds of data-quality issues collected into the report."""
    QUARANTINED = "quarantined"
    TRANSFORM_SKIP = "transform_skip"
    DEDUP_AUDIT = "dedup_audit"
    DEDUP_AMBIGUOUS = "dedup_ambiguous"
    INVALID_DRAFT = "invalid_draft"
    REFERENCE_SKIP = "reference_skip"
    REFERENCE_NULLED = "reference_nulled"
    WRITE_FAILED = "write_failed"
    ENRICHMENT_FAILED = "enrichment_failed"


@dataclass
class DataQualityIssue:
    """One record-level problem, addressed by natural key or ``table:id``."""
    kind: IssueKind
    entity_type: str
    reference: str
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity_type": self.entity_type,
            "reference": self.reference,
            "reason": self.reason,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataQualityIssue":
        return cls(
            kind=IssueKind(data["kind"]),
            entity_type=data.get("entity_type", ""),
            reference=data.get("reference", ""),
            reason=data.get("reason", ""),
            details=data.get("details", {}),
        )


@dataclass
class FieldError:
    """A validation error for a single draft field."""
    field: str
    message: str
    error_type: str = "validation"
    value: Optional[Any] = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"
