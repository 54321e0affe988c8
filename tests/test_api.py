"""Tests for the run status API."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from practice_migrate.api.main import create_app
from practice_migrate.models.migration import MigrationConfig, MigrationRun, PhaseStatus, RunStatus
from practice_migrate.models.record import DataQualityIssue, IssueKind


@pytest.fixture
def client(checkpoint_store):
    first = MigrationRun(run_id="run-a", name="nightly", status=RunStatus.COMPLETED_WITH_WARNINGS)
    first.entity_statuses["patient"] = PhaseStatus.COMPLETED_WITH_WARNINGS
    first.totals("patient").add({"extracted": 10, "inserted": 9, "quarantined": 1})
    first.issues.append(DataQualityIssue(
        kind=IssueKind.QUARANTINED,
        entity_type="patient",
        reference="dispatch_patient:7",
        reason="status: Input should be less than or equal to 10",
    ))
    second = MigrationRun(
        run_id="run-b", name="backfill", status=RunStatus.PARTIAL,
        started_at=first.started_at + timedelta(hours=1),
    )
    checkpoint_store.save_run(first)
    checkpoint_store.save_run(second)

    checkpoint_store.mark_batch_started("run-a", "patient", 1, None)
    checkpoint_store.mark_batch_completed("run-a", "patient", 1, 10, {"extracted": 10, "quarantined": 1})
    checkpoint_store.mark_batch_started("run-a", "case", 1, None)

    return TestClient(create_app(checkpoint_store))


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_list_runs_most_recent_first(client):
    data = client.get("/api/runs").json()

    assert data["total"] == 2
    assert [r["run_id"] for r in data["runs"]] == ["run-b", "run-a"]


def test_list_runs_by_name(client):
    data = client.get("/api/runs", params={"name": "nightly"}).json()

    assert [r["run_id"] for r in data["runs"]] == ["run-a"]


def test_get_run(client):
    response = client.get("/api/runs/run-a")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed_with_warnings"
    assert data["issue_counts"] == {"quarantined": 1}
    assert data["issues"][0]["reference"] == "dispatch_patient:7"
    patient = next(e for e in data["entities"] if e["entity_type"] == "patient")
    assert patient["migrated"] == 9
    assert patient["quarantined"] == 1


def test_unknown_run(client):
    assert client.get("/api/runs/nope").status_code == 404
    assert client.get("/api/runs/nope/checkpoints").status_code == 404


def test_checkpoints(client):
    data = client.get("/api/runs/run-a/checkpoints").json()

    assert data["run_id"] == "run-a"
    assert data["total"] == 2
    assert [(c["entity_type"], c["status"]) for c in data["checkpoints"]] == [
        ("case", "in_progress"),
        ("patient", "done"),
    ]


def test_checkpoints_of_one_entity(client):
    data = client.get("/api/runs/run-a/checkpoints", params={"entity_type": "patient"}).json()

    assert data["total"] == 1
    assert data["checkpoints"][0]["end_cursor"] == 10
    assert data["checkpoints"][0]["records_failed"] == 1


def test_app_builds_its_store_from_config(tmp_path):
    config = MigrationConfig(checkpoint_dir=str(tmp_path / "checkpoints"))

    client = TestClient(create_app(config=config))

    assert client.get("/api/runs").json() == {"runs": [], "total": 0}
