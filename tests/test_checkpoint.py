"""Tests for the file-backed checkpoint store."""

from datetime import timedelta

import pytest

from practice_migrate.errors import CheckpointConflict
from practice_migrate.models.migration import BatchStatus, MigrationRun, RunStatus
from practice_migrate.models.record import CanonicalIdentity, DataQualityIssue, IssueKind, MergeReason
from practice_migrate.services.checkpoint import FileCheckpointStore

RUN = "run-1"


def complete(store, batch_number, start, end, **stats):
    store.mark_batch_started(RUN, "patient", batch_number, start)
    return store.mark_batch_completed(RUN, "patient", batch_number, end, stats)


class TestBatchTransitions:

    def test_started_then_completed(self, checkpoint_store):
        started = checkpoint_store.mark_batch_started(RUN, "patient", 1, None)
        assert started.status == BatchStatus.IN_PROGRESS
        assert started.attempts == 1

        done = checkpoint_store.mark_batch_completed(RUN, "patient", 1, 10, {"extracted": 10, "quarantined": 2})

        assert done.status == BatchStatus.DONE
        assert done.end_cursor == 10
        assert done.records_processed == 10
        assert done.records_failed == 2

    def test_done_batch_is_never_restarted(self, checkpoint_store):
        complete(checkpoint_store, 1, None, 10)

        with pytest.raises(CheckpointConflict):
            checkpoint_store.mark_batch_started(RUN, "patient", 1, None)

    def test_done_batch_cannot_complete_twice(self, checkpoint_store):
        complete(checkpoint_store, 1, None, 10)

        with pytest.raises(CheckpointConflict):
            checkpoint_store.mark_batch_completed(RUN, "patient", 1, 10)

    def test_completing_unknown_batch_conflicts(self, checkpoint_store):
        with pytest.raises(CheckpointConflict):
            checkpoint_store.mark_batch_completed(RUN, "patient", 4, 10)

    def test_one_batch_in_progress_per_entity_type(self, checkpoint_store):
        checkpoint_store.mark_batch_started(RUN, "patient", 1, None)

        with pytest.raises(CheckpointConflict):
            checkpoint_store.mark_batch_started(RUN, "patient", 2, 10)
        checkpoint_store.mark_batch_started(RUN, "case", 1, None)

    def test_failed_batch_is_retried_from_its_start(self, checkpoint_store):
        checkpoint_store.mark_batch_started(RUN, "patient", 1, 30)
        failed = checkpoint_store.mark_batch_failed(RUN, "patient", 1, "connection reset")
        assert failed.status == BatchStatus.FAILED
        assert failed.error_summary == "connection reset"

        retried = checkpoint_store.mark_batch_started(RUN, "patient", 1, 30)

        assert retried.status == BatchStatus.IN_PROGRESS
        assert retried.attempts == 2
        assert retried.start_cursor == 30
        assert retried.error_summary is None

    def test_pending_batch_cannot_fail(self, checkpoint_store):
        with pytest.raises(CheckpointConflict):
            checkpoint_store.mark_batch_failed(RUN, "patient", 1, "boom")


class TestResumeQueries:

    def test_fresh_entity_starts_from_the_beginning(self, checkpoint_store):
        assert checkpoint_store.get_resume_point(RUN, "patient") is None
        assert checkpoint_store.next_batch_number(RUN, "patient") == 1

    def test_resume_after_last_contiguous_done_batch(self, checkpoint_store):
        complete(checkpoint_store, 1, None, 10)
        complete(checkpoint_store, 2, 10, 20)
        checkpoint_store.mark_batch_started(RUN, "patient", 3, 20)
        checkpoint_store.mark_batch_failed(RUN, "patient", 3, "timeout")

        assert checkpoint_store.get_resume_point(RUN, "patient") == 20
        assert checkpoint_store.next_batch_number(RUN, "patient") == 3

    def test_completed_totals_sum_done_batches(self, checkpoint_store):
        complete(checkpoint_store, 1, None, 10, extracted=10, inserted=9, quarantined=1)
        complete(checkpoint_store, 2, 10, 20, extracted=10, inserted=10)

        totals = checkpoint_store.completed_totals(RUN, "patient")

        assert totals.extracted == 20
        assert totals.inserted == 19
        assert totals.quarantined == 1

    def test_interrupted_batches_become_failed(self, checkpoint_store):
        complete(checkpoint_store, 1, None, 10)
        checkpoint_store.mark_batch_started(RUN, "patient", 2, 10)

        assert checkpoint_store.reset_interrupted(RUN) == 1

        statuses = [c.status for c in checkpoint_store.list_checkpoints(RUN, "patient")]
        assert statuses == [BatchStatus.DONE, BatchStatus.FAILED]
        assert checkpoint_store.mark_batch_started(RUN, "patient", 2, 10).attempts == 2

    def test_state_survives_a_restart(self, checkpoint_store, checkpoint_dir):
        complete(checkpoint_store, 1, None, 10)
        checkpoint_store.mark_batch_started(RUN, "patient", 2, 10)

        reopened = FileCheckpointStore(str(checkpoint_dir))

        assert reopened.get_resume_point(RUN, "patient") == 10
        assert [c.status for c in reopened.list_checkpoints(RUN)] == [BatchStatus.DONE, BatchStatus.IN_PROGRESS]

    def test_checkpoints_ordered_by_batch_number(self, checkpoint_store):
        for number in range(1, 12):
            complete(checkpoint_store, number, number - 1, number)

        numbers = [c.batch_number for c in checkpoint_store.list_checkpoints(RUN, "patient")]

        assert numbers == list(range(1, 12))


class TestRuns:

    def test_save_and_load_run(self, checkpoint_store):
        run = MigrationRun(run_id=RUN, name="nightly", dry_run=True)
        run.totals("patient").add({"extracted": 3, "inserted": 2})

        checkpoint_store.save_run(run)
        loaded = FileCheckpointStore(str(checkpoint_store.directory)).load_run(RUN)

        assert loaded.name == "nightly"
        assert loaded.dry_run
        assert loaded.totals("patient").inserted == 2
        assert loaded.started_at == run.started_at

    def test_unknown_run(self, checkpoint_store):
        assert checkpoint_store.load_run("missing") is None

    def test_latest_resumable_run(self, checkpoint_store):
        done = MigrationRun(run_id="a", name="nightly", status=RunStatus.COMPLETED)
        older = MigrationRun(run_id="b", name="nightly", status=RunStatus.PARTIAL)
        newer = MigrationRun(
            run_id="c", name="nightly", status=RunStatus.CANCELLED,
            started_at=older.started_at + timedelta(minutes=5),
        )
        other = MigrationRun(
            run_id="d", name="other", status=RunStatus.FAILED,
            started_at=older.started_at + timedelta(minutes=10),
        )
        for run in (done, older, newer, other):
            checkpoint_store.save_run(run)

        assert checkpoint_store.latest_resumable_run("nightly").run_id == "c"
        assert checkpoint_store.latest_resumable_run().run_id == "d"
        assert {r.run_id for r in checkpoint_store.list_runs()} == {"a", "b", "c", "d"}

    def test_dry_runs_resume_only_as_dry_runs(self, checkpoint_store):
        real = MigrationRun(run_id="real", name="nightly", status=RunStatus.PARTIAL)
        staged = MigrationRun(
            run_id="staged", name="nightly", status=RunStatus.CANCELLED, dry_run=True,
            started_at=real.started_at + timedelta(minutes=5),
        )
        checkpoint_store.save_run(real)
        checkpoint_store.save_run(staged)

        assert checkpoint_store.latest_resumable_run("nightly").run_id == "real"
        assert checkpoint_store.latest_resumable_run("nightly", dry_run=True).run_id == "staged"

    def test_run_with_pending_enrichment_is_resumable(self, checkpoint_store):
        warned = MigrationRun(run_id="warned", name="nightly", status=RunStatus.COMPLETED_WITH_WARNINGS)
        pending = MigrationRun(
            run_id="pending", name="nightly", status=RunStatus.COMPLETED_WITH_WARNINGS,
            started_at=warned.started_at - timedelta(minutes=5),
        )
        pending.issues.append(DataQualityIssue(
            kind=IssueKind.ENRICHMENT_FAILED,
            entity_type="case",
            reference="enrich.case:2",
            reason="Embedding request failed",
        ))
        checkpoint_store.save_run(warned)
        checkpoint_store.save_run(pending)

        assert not warned.resumable
        assert pending.resumable
        assert checkpoint_store.latest_resumable_run("nightly").run_id == "pending"

    def test_identities_round_trip(self, checkpoint_store):
        identity = CanonicalIdentity(
            patient_key="patient:dispatch_patient:1",
            source_keys=["patient:dispatch_patient:1", "patient:dispatch_patient:2"],
            confidence=0.8,
            merge_reason=MergeReason.FUZZY,
            needs_audit=True,
            last_name="doe",
            date_of_birth="1980-05-17",
        )

        checkpoint_store.save_identities(RUN, [identity])

        assert checkpoint_store.load_identities(RUN) == [identity]

    def test_identities_upsert_by_patient_key(self, checkpoint_store):
        first = CanonicalIdentity(
            patient_key="patient:dispatch_patient:1",
            source_keys=["patient:dispatch_patient:1"],
            last_name="doe",
        )
        other = CanonicalIdentity(patient_key="patient:dispatch_patient:3", source_keys=["patient:dispatch_patient:3"])
        checkpoint_store.save_identities(RUN, [first, other])

        merged = CanonicalIdentity(
            patient_key="patient:dispatch_patient:1",
            source_keys=["patient:dispatch_patient:1", "patient:dispatch_patient:2"],
            confidence=1.0,
            merge_reason=MergeReason.EXACT,
            last_name="doe",
        )
        checkpoint_store.save_identities(RUN, [merged])
        checkpoint_store.save_identities(RUN, [])

        loaded = FileCheckpointStore(str(checkpoint_store.directory)).load_identities(RUN)

        assert sorted(i.patient_key for i in loaded) == ["patient:dispatch_patient:1", "patient:dispatch_patient:3"]
        assert [i for i in loaded if i.patient_key == merged.patient_key] == [merged]

    def test_torn_last_identity_line_is_ignored(self, checkpoint_store, checkpoint_dir):
        key = "patient:dispatch_patient:1"
        identity = CanonicalIdentity(patient_key=key, source_keys=[key])
        checkpoint_store.save_identities(RUN, [identity])
        with open(checkpoint_dir / f"identities_{RUN}.jsonl", "a") as f:
            f.write('{"patient_key": "patient:dispa')

        assert checkpoint_store.load_identities(RUN) == [identity]


class TestFileLayout:

    def test_each_checkpoint_is_its_own_file(self, checkpoint_store, checkpoint_dir):
        complete(checkpoint_store, 1, None, 10)
        checkpoint_store.mark_batch_started(RUN, "case", 1, None)

        files = sorted(p.relative_to(checkpoint_dir).as_posix() for p in checkpoint_dir.rglob("*.json"))

        assert files == [f"run_{RUN}/case/1.json", f"run_{RUN}/patient/1.json"]

    def test_saving_a_checkpoint_leaves_the_run_file_alone(self, checkpoint_store, checkpoint_dir):
        checkpoint_store.save_run(MigrationRun(run_id=RUN, name="nightly"))
        run_file = checkpoint_dir / f"run_{RUN}.json"
        before = run_file.read_text()

        complete(checkpoint_store, 1, None, 10, extracted=10)

        assert run_file.read_text() == before
        assert [r.run_id for r in checkpoint_store.list_runs()] == [RUN]
