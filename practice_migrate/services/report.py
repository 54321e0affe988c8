"""Migration report built from a finished run."""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models.migration import MigrationRun, Phase, PhaseStatus
from ..models.record import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EntityReport:
    """Counts for one entity type."""
    entity_type: str
    status: str
    source_count: Optional[int]
    extracted: int = 0
    migrated: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    staged: int = 0
    skipped: int = 0
    failed: int = 0
    quarantined: int = 0
    merged: int = 0
    invalid: int = 0
    batches: int = 0

    @property
    def accounted(self) -> int:
        """Source rows with a recorded outcome: loaded, staged, or counted as not loaded."""
        return (self.migrated + self.staged + self.quarantined + self.skipped
                + self.merged + self.invalid + self.failed)

    @property
    def unaccounted(self) -> Optional[int]:
        """Source rows with no outcome; negative when the source grew during the run."""
        if self.source_count is None:
            return None
        return self.source_count - self.accounted

    @property
    def reconciled(self) -> bool:
        return self.unaccounted in (None, 0)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.__dict__)
        data["accounted"] = self.accounted
        data["unaccounted"] = self.unaccounted
        return data


@dataclass
class MigrationReport:
    """
    Summary of a migration run.

    Enumerates every quarantined, skipped and failed record by natural key
    (or ``table:id`` for records that never became a draft) and reason.
    """
    run: MigrationRun
    entities: List[EntityReport] = field(default_factory=list)
    generated_at: Any = field(default_factory=utcnow)

    @classmethod
    def from_run(cls, run: MigrationRun) -> "MigrationReport":
        report = cls(run=run)
        names = list(run.entity_statuses) + [n for n in run.totals_by_entity if n not in run.entity_statuses]
        for name in names:
            if name.startswith("enrich."):
                continue
            totals = run.totals(name)
            status = run.entity_statuses.get(name)
            report.entities.append(EntityReport(
                entity_type=name,
                status=status.value if status else "pending",
                source_count=run.source_counts.get(name),
                extracted=totals.extracted,
                migrated=totals.migrated,
                inserted=totals.inserted,
                updated=totals.updated,
                unchanged=totals.unchanged,
                staged=totals.staged,
                skipped=totals.skipped,
                failed=totals.failed,
                quarantined=totals.quarantined,
                merged=totals.merged,
                invalid=totals.invalid,
                batches=totals.batches,
            ))
        return report

    def unreconciled(self) -> List[EntityReport]:
        """Finished entity types whose source count and outcomes disagree."""
        finished = [e for e in self.entities if e.status in ("completed", "completed_with_warnings")]
        if self.run.phase_statuses.get(Phase.LOAD.value) == PhaseStatus.SKIPPED:
            # Nothing was loaded; only extraction can be checked.
            return [e for e in finished if e.source_count is not None and e.extracted != e.source_count]
        return [e for e in finished if not e.reconciled]

    def issue_counts(self) -> Dict[str, int]:
        return dict(Counter(issue.kind.value for issue in self.run.issues))

    def to_dict(self) -> Dict[str, Any]:
        run = self.run
        return {
            "run_id": run.run_id,
            "name": run.name,
            "status": run.status.value,
            "dry_run": run.dry_run,
            "started_at": run.started_at,
            "completed_at": run.completed_at,
            "duration_seconds": run.duration_seconds,
            "generated_at": self.generated_at,
            "phase_statuses": {k: v.value for k, v in run.phase_statuses.items()},
            "entity_statuses": {k: v.value for k, v in run.entity_statuses.items()},
            "entities": [e.to_dict() for e in self.entities],
            "reconciliation": {
                "balanced": not self.unreconciled(),
                "unreconciled": {e.entity_type: e.unaccounted for e in self.unreconciled()},
            },
            "issue_counts": self.issue_counts(),
            "issues": [i.to_dict() for i in run.issues],
            "errors": run.errors,
        }

    def save(self, output_dir: str) -> Path:
        """Write the report as JSON under ``<output_dir>/reports``."""
        reports_dir = Path(output_dir) / "reports"
        reports_dir.mkdir(parents=True, exist_ok=True)
        filepath = reports_dir / f"migration_report_{self.run.run_id}.json"
        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")
        return filepath

    def summary_text(self) -> str:
        """Human-readable summary for the CLI."""
        run = self.run
        lines = [
            f"Run {run.run_id} ({run.name}): {run.status.value.upper()}"
            + (" [DRY RUN]" if run.dry_run else ""),
        ]
        if run.duration_seconds is not None:
            lines.append(f"Duration: {run.duration_seconds:.1f}s")
        lines.append("")
        lines.append(f"{'Entity':<16} {'Status':<24} {'Source':>7} {'Migrated':>9} {'Skipped':>8} "
                     f"{'Failed':>7} {'Quarant.':>9} {'Merged':>7}")
        for e in self.entities:
            migrated = e.staged if run.dry_run else e.migrated
            source = "-" if e.source_count is None else e.source_count
            lines.append(
                f"{e.entity_type:<16} {e.status:<24} {source:>7} {migrated:>9} {e.skipped:>8} "
                f"{e.failed:>7} {e.quarantined:>9} {e.merged:>7}"
            )
        mismatches = self.unreconciled()
        if mismatches:
            lines.append("")
            lines.append("Unreconciled: " + ", ".join(
                f"{e.entity_type} source={e.source_count} accounted={e.accounted}" for e in mismatches
            ))
        counts = self.issue_counts()
        if counts:
            lines.append("")
            lines.append("Issues: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        if run.errors:
            lines.append("")
            lines.append("Errors:")
            for error in run.errors[:10]:
                scope = f"{error['phase']}/{error['entity_type']}" if error.get("entity_type") else error["phase"]
                lines.append(f"  [{scope}] {error['type']}: {error['error']}")
        return "\n".join(lines)
