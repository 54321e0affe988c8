"""Pydantic models for API responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.migration import Checkpoint, MigrationRun
from ..services.report import MigrationReport


class IssueResponse(BaseModel):
    kind: str
    entity_type: str
    reference: str
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)


class EntityCountsResponse(BaseModel):
    entity_type: str
    status: str
    source_count: Optional[int] = None
    extracted: int = 0
    migrated: int = 0
    staged: int = 0
    skipped: int = 0
    failed: int = 0
    quarantined: int = 0
    merged: int = 0


class RunResponse(BaseModel):
    run_id: str
    name: str
    status: str
    current_phase: str
    dry_run: bool
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    phase_statuses: Dict[str, str]
    entity_statuses: Dict[str, str]
    entities: List[EntityCountsResponse]
    issue_counts: Dict[str, int]
    issues: List[IssueResponse]
    errors: List[Dict[str, Any]]

    @classmethod
    def from_run(cls, run: MigrationRun) -> "RunResponse":
        report = MigrationReport.from_run(run)
        return cls(
            run_id=run.run_id,
            name=run.name,
            status=run.status.value,
            current_phase=run.current_phase.value,
            dry_run=run.dry_run,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            phase_statuses={k: v.value for k, v in run.phase_statuses.items()},
            entity_statuses={k: v.value for k, v in run.entity_statuses.items()},
            entities=[EntityCountsResponse(**_entity_counts(e.to_dict())) for e in report.entities],
            issue_counts=report.issue_counts(),
            issues=[IssueResponse(**i.to_dict()) for i in run.issues],
            errors=run.errors,
        )


class RunSummaryResponse(BaseModel):
    run_id: str
    name: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None


class RunListResponse(BaseModel):
    runs: List[RunSummaryResponse]
    total: int


class CheckpointResponse(BaseModel):
    entity_type: str
    batch_number: int
    status: str
    records_processed: int
    records_failed: int
    start_cursor: Optional[Any] = None
    end_cursor: Optional[Any] = None
    attempts: int
    last_attempt_at: Optional[datetime] = None
    error_summary: Optional[str] = None

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointResponse":
        return cls(
            entity_type=checkpoint.entity_type,
            batch_number=checkpoint.batch_number,
            status=checkpoint.status.value,
            records_processed=checkpoint.records_processed,
            records_failed=checkpoint.records_failed,
            start_cursor=checkpoint.start_cursor,
            end_cursor=checkpoint.end_cursor,
            attempts=checkpoint.attempts,
            last_attempt_at=checkpoint.last_attempt_at,
            error_summary=checkpoint.error_summary,
        )


class CheckpointListResponse(BaseModel):
    run_id: str
    checkpoints: List[CheckpointResponse]
    total: int


def _entity_counts(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k in EntityCountsResponse.model_fields}
