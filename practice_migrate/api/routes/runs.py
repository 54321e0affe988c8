"""Read-only migration run endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ..models import (
    CheckpointListResponse,
    CheckpointResponse,
    RunListResponse,
    RunResponse,
    RunSummaryResponse,
)
from ...services.checkpoint import CheckpointStore

router = APIRouter()


def get_checkpoint_store(request: Request) -> CheckpointStore:
    """Checkpoint store configured on the application."""
    return request.app.state.checkpoint_store


@router.get("", response_model=RunListResponse)
async def list_runs(name: Optional[str] = None, store: CheckpointStore = Depends(get_checkpoint_store)):
    """List recorded migration runs, most recent first."""
    runs = [r for r in store.list_runs() if name is None or r.name == name]
    runs.sort(key=lambda r: r.started_at, reverse=True)
    summaries = [
        RunSummaryResponse(
            run_id=r.run_id,
            name=r.name,
            status=r.status.value,
            started_at=r.started_at,
            completed_at=r.completed_at,
        )
        for r in runs
    ]
    return RunListResponse(runs=summaries, total=len(summaries))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, store: CheckpointStore = Depends(get_checkpoint_store)):
    """Get the status, counts and issues of a run."""
    run = store.load_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse.from_run(run)


@router.get("/{run_id}/checkpoints", response_model=CheckpointListResponse)
async def get_checkpoints(
    run_id: str,
    entity_type: Optional[str] = None,
    store: CheckpointStore = Depends(get_checkpoint_store)
):
    """Get the batch checkpoints of a run."""
    if store.load_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    checkpoints = [CheckpointResponse.from_checkpoint(c) for c in store.list_checkpoints(run_id, entity_type)]
    return CheckpointListResponse(run_id=run_id, checkpoints=checkpoints, total=len(checkpoints))
