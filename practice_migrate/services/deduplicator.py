"""Patient identity deduplication across legacy offices."""

import logging
import threading
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from ..models.migration import DedupConfig
from ..models.record import (
    CanonicalIdentity,
    DataQualityIssue,
    IssueKind,
    MergeReason,
    TargetEntityDraft,
)
from ..models.schema import EntityType

logger = logging.getLogger(__name__)

# Draft reference fields that point at a patient.
PATIENT_REFERENCE_FIELDS = ("patient_id",)

# Fields copied from a merged duplicate when the canonical draft lacks them.
_FILLABLE_FIELDS = (
    "email", "phone", "address", "emergency_contact", "insurance_info", "medical_notes", "date_of_birth",
)


def levenshtein_distance(s1: str, s2: str) -> int:
    """Calculate Levenshtein edit distance between two strings.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance as an integer
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if not s2:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def normalize_name(value: Optional[str]) -> str:
    """Case-folded name without accents, punctuation or spaces."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value.casefold())
    return "".join(ch for ch in decomposed if ch.isalnum())


def phone_last4(value: Optional[str]) -> str:
    digits = "".join(ch for ch in (value or "") if ch.isdigit())
    return digits[-4:]


def source_order(natural_key: str) -> Tuple[int, str]:
    """Sort key putting the earliest legacy id first."""
    head, _, tail = natural_key.rpartition(":")
    try:
        return int(tail), head
    except ValueError:
        return 0, natural_key


class Fingerprint(NamedTuple):
    scope: str
    first_name: str
    last_name: str
    date_of_birth: str
    phone_last4: str

    @property
    def matchable(self) -> bool:
        return bool(self.first_name and self.last_name and self.date_of_birth)


@dataclass
class DedupResult:
    """Outcome of deduplicating one batch of patient drafts."""
    drafts: List[TargetEntityDraft] = field(default_factory=list)
    merged: List[Tuple[str, str]] = field(default_factory=list)  # (source key, canonical key)
    issues: List[DataQualityIssue] = field(default_factory=list)


class PatientDeduplicator:
    """
    Collapses legacy patient identities that represent the same person.

    Tiers, applied against identities already seen in this run:

    1. Exact: same normalized first name, last name, date of birth and
       phone last 4 digits -> ``exact_confidence``.
    2. Fuzzy: same last name and date of birth, first names within
       ``fuzzy_max_distance`` edits -> ``fuzzy_confidence``, flagged for audit.
    3. Ambiguous: same last name and date of birth, first names within
       ``ambiguous_max_distance`` edits -> ``ambiguous_confidence``.

    A record merges when its best confidence reaches
    ``auto_merge_threshold``. Below that but at or above
    ``review_threshold`` it stays a distinct identity and is reported for
    manual review. Matching is scoped to the patient's office unless
    ``cross_office`` is enabled.

    Records are always processed in ascending legacy id, so the earliest id
    becomes the canonical key and any ordering of the same input yields the
    same identities. Once a source key is assigned it is never reassigned.
    """

    def __init__(self, config: Optional[DedupConfig] = None):
        self.config = config or DedupConfig()
        self._identities: Dict[str, CanonicalIdentity] = {}
        self._by_source: Dict[str, str] = {}
        self._buckets: Dict[Tuple[str, str], List[str]] = {}
        self._changed: Set[str] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def restore(self, identities: Iterable[CanonicalIdentity]) -> None:
        """Reload identities persisted by an earlier attempt of the run."""
        with self._lock:
            for identity in identities:
                self._index(identity)
        logger.info(f"Restored {len(self._identities)} canonical patient identities")

    def identities(self) -> List[CanonicalIdentity]:
        with self._lock:
            return sorted(self._identities.values(), key=lambda i: source_order(i.patient_key))

    def drain_changed(self) -> List[CanonicalIdentity]:
        """Identities created or merged into since the last call."""
        with self._lock:
            changed = sorted(
                (self._identities[key] for key in self._changed),
                key=lambda i: source_order(i.patient_key),
            )
            self._changed.clear()
            return changed

    def canonical_key(self, source_key: str) -> str:
        return self._by_source.get(source_key, source_key)

    def _index(self, identity: CanonicalIdentity) -> None:
        self._identities[identity.patient_key] = identity
        for key in identity.source_keys:
            self._by_source[key] = identity.patient_key
        if identity.last_name and identity.date_of_birth:
            bucket = self._buckets.setdefault((identity.last_name, identity.date_of_birth), [])
            if identity.patient_key not in bucket:
                bucket.append(identity.patient_key)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def fingerprint(self, draft: TargetEntityDraft) -> Fingerprint:
        fields = draft.fields
        scope = "" if self.config.cross_office else (draft.references.get("practice_id") or "")
        return Fingerprint(
            scope=scope,
            first_name=normalize_name(fields.get("first_name")),
            last_name=normalize_name(fields.get("last_name")),
            date_of_birth=fields.get("date_of_birth") or "",
            phone_last4=phone_last4(fields.get("phone")),
        )

    def score(self, identity: CanonicalIdentity, fp: Fingerprint) -> float:
        """Confidence that ``fp`` describes the same patient as ``identity``."""
        cfg = self.config
        if identity.last_name != fp.last_name or identity.date_of_birth != fp.date_of_birth:
            return 0.0
        if identity.first_name == fp.first_name and identity.phone_last4 == fp.phone_last4:
            return cfg.exact_confidence
        distance = levenshtein_distance(identity.first_name, fp.first_name)
        if distance <= cfg.fuzzy_max_distance:
            return cfg.fuzzy_confidence
        if distance <= cfg.ambiguous_max_distance:
            return cfg.ambiguous_confidence
        return 0.0

    def _best_match(
        self,
        fp: Fingerprint,
        before: Optional[str] = None
    ) -> Tuple[Optional[CanonicalIdentity], float]:
        """Best candidate for ``fp``; with ``before``, only identities of earlier legacy ids count."""
        if not fp.matchable:
            return None, 0.0
        best: Optional[CanonicalIdentity] = None
        best_score = 0.0
        for patient_key in self._buckets.get((fp.last_name, fp.date_of_birth), []):
            if before is not None and source_order(patient_key) >= source_order(before):
                continue
            identity = self._identities[patient_key]
            if not self.config.cross_office and identity.scope != fp.scope:
                continue
            score = self.score(identity, fp)
            if score > best_score or (
                score == best_score and best is not None
                and source_order(patient_key) < source_order(best.patient_key)
            ):
                best, best_score = identity, score
        return best, best_score

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def deduplicate(self, drafts: List[TargetEntityDraft]) -> DedupResult:
        """
        Assign canonical identities to a batch of patient drafts.

        Args:
            drafts: Patient drafts of one batch, in any order

        Returns:
            DedupResult with the canonical drafts to load (in legacy id
            order), the merged source keys and audit/review issues
        """
        result = DedupResult()
        batch_canonicals: Dict[str, TargetEntityDraft] = {}

        with self._lock:
            for draft in sorted(drafts, key=lambda d: source_order(d.natural_key)):
                key = draft.natural_key

                if key in self._by_source:
                    # Batch retried after a failure: keep earlier assignments, repeat their effects.
                    self._replay(key, draft, batch_canonicals, result)
                    continue

                fp = self.fingerprint(draft)
                match, confidence = self._best_match(fp)

                if match is not None and confidence >= self.config.auto_merge_threshold:
                    self._merge(match, key, confidence, draft, batch_canonicals.get(match.patient_key), result)
                    continue

                if match is not None and confidence >= self.config.review_threshold:
                    self._flag_for_review(key, match, confidence, result)

                self._index(CanonicalIdentity(
                    patient_key=key,
                    source_keys=[key],
                    confidence=1.0,
                    merge_reason=MergeReason.NEW,
                    scope=fp.scope,
                    first_name=fp.first_name,
                    last_name=fp.last_name,
                    date_of_birth=fp.date_of_birth,
                    phone_last4=fp.phone_last4,
                ))
                self._changed.add(key)
                batch_canonicals[key] = draft
                result.drafts.append(draft)

        if result.merged:
            logger.info(f"Deduplicated patients: {len(drafts)} -> {len(result.drafts)}")
        return result

    def _merge(
        self,
        identity: CanonicalIdentity,
        source_key: str,
        confidence: float,
        draft: TargetEntityDraft,
        canonical_draft: Optional[TargetEntityDraft],
        result: DedupResult
    ) -> None:
        reason = MergeReason.EXACT if confidence >= self.config.exact_confidence else MergeReason.FUZZY
        identity.source_keys.append(source_key)
        if identity.merge_reason == MergeReason.NEW or confidence < identity.confidence:
            identity.confidence = confidence
            identity.merge_reason = reason
        if reason == MergeReason.FUZZY:
            identity.needs_audit = True
        self._by_source[source_key] = identity.patient_key
        self._changed.add(identity.patient_key)
        self._apply_merge(identity, source_key, confidence, reason, draft, canonical_draft, result)
        logger.debug(f"Merged {source_key} into {identity.patient_key} ({reason.value}, {confidence:.2f})")

    def _replay(
        self,
        key: str,
        draft: TargetEntityDraft,
        batch_canonicals: Dict[str, TargetEntityDraft],
        result: DedupResult
    ) -> None:
        """
        Reproduce the outcome of a key assigned by an earlier attempt.

        Scores depend only on the two fingerprints, so rescoring against the
        stored identity yields the confidence of the original decision.
        """
        canonical = self._by_source[key]
        fp = self.fingerprint(draft)

        if canonical == key:
            match, confidence = self._best_match(fp, before=key)
            if match is not None and self.config.review_threshold <= confidence < self.config.auto_merge_threshold:
                self._flag_for_review(key, match, confidence, result)
            batch_canonicals[key] = draft
            result.drafts.append(draft)
            return

        identity = self._identities[canonical]
        confidence = self.score(identity, fp)
        reason = MergeReason.EXACT if confidence >= self.config.exact_confidence else MergeReason.FUZZY
        self._apply_merge(identity, key, confidence, reason, draft, batch_canonicals.get(canonical), result)

    def _flag_for_review(
        self,
        key: str,
        match: CanonicalIdentity,
        confidence: float,
        result: DedupResult
    ) -> None:
        result.issues.append(DataQualityIssue(
            kind=IssueKind.DEDUP_AMBIGUOUS,
            entity_type=EntityType.PATIENT.value,
            reference=key,
            reason=f"possible duplicate of {match.patient_key} needs manual review",
            details={"candidate": match.patient_key, "confidence": confidence},
        ))
        logger.warning(f"Ambiguous match {key} ~ {match.patient_key} ({confidence:.2f}), kept distinct")

    def _apply_merge(
        self,
        identity: CanonicalIdentity,
        source_key: str,
        confidence: float,
        reason: MergeReason,
        draft: TargetEntityDraft,
        canonical_draft: Optional[TargetEntityDraft],
        result: DedupResult
    ) -> None:
        """Batch-level effects of a merge: the merged pair, audit issue and gap filling."""
        result.merged.append((source_key, identity.patient_key))

        if reason == MergeReason.FUZZY:
            result.issues.append(DataQualityIssue(
                kind=IssueKind.DEDUP_AUDIT,
                entity_type=EntityType.PATIENT.value,
                reference=source_key,
                reason=f"fuzzy-merged into {identity.patient_key}",
                details={"canonical": identity.patient_key, "confidence": confidence},
            ))

        if canonical_draft is not None:
            for name in _FILLABLE_FIELDS:
                if canonical_draft.fields.get(name) is None and draft.fields.get(name) is not None:
                    canonical_draft.fields[name] = draft.fields[name]
            for ref in draft.provenance:
                if ref not in canonical_draft.provenance:
                    canonical_draft.provenance.append(ref)

    def rewrite(self, draft: TargetEntityDraft) -> TargetEntityDraft:
        """Point every patient reference of ``draft`` at its canonical identity."""
        changed = {}
        for name in PATIENT_REFERENCE_FIELDS:
            ref = draft.references.get(name)
            if ref and self._by_source.get(ref, ref) != ref:
                changed[name] = self._by_source[ref]
        if not changed:
            return draft
        return replace(draft, references={**draft.references, **changed})
