"""Tests for the loader: idempotent upserts, reference checks and failure handling."""

import threading
import uuid
from decimal import Decimal

import pytest

from factories import no_wait_policy
from practice_migrate.errors import BatchAborted, TargetUnavailable, WriteFailed
from practice_migrate.loaders.memory_loader import MemoryLoader
from practice_migrate.loaders.postgres_loader import TARGET_NAMESPACE, PostgresLoader, target_id
from practice_migrate.models.migration import DatabaseConfig
from practice_migrate.models.record import IssueKind, TargetEntityDraft
from practice_migrate.models.schema import EntityType


def order_type(id, name="Retainer"):
    return TargetEntityDraft(
        entity_type=EntityType.ORDER_TYPE,
        natural_key=f"order_type:dispatch_course:{id}",
        fields={"name": name, "base_price": Decimal("10.00")},
        provenance=[f"dispatch_course:{id}"],
    )


def profile(id):
    return TargetEntityDraft(
        entity_type=EntityType.PROFILE,
        natural_key=f"profile:auth_user:{id}",
        fields={"username": f"user{id}"},
    )


def patient(id, profile_id):
    return TargetEntityDraft(
        entity_type=EntityType.PATIENT,
        natural_key=f"patient:dispatch_patient:{id}",
        fields={"first_name": "Mary"},
        references={"profile_id": f"profile:auth_user:{profile_id}"},
    )


def case(id, patient_id, practice_id=None):
    return TargetEntityDraft(
        entity_type=EntityType.CASE,
        natural_key=f"case:dispatch_instruction:{id}",
        fields={"case_number": f"C{id:06d}"},
        references={
            "patient_id": f"patient:dispatch_patient:{patient_id}",
            "practice_id": f"practice:dispatch_office:{practice_id}" if practice_id else None,
        },
    )


@pytest.fixture
def loader():
    return MemoryLoader(concurrency=4, retry_policy=no_wait_policy())


@pytest.fixture
def loaded_patient(loader):
    loader.load_batch(EntityType.PROFILE, [profile(1)], 1)
    loader.load_batch(EntityType.PATIENT, [patient(1, 1)], 1)
    return loader


class TestIdempotentUpsert:

    def test_reloading_a_batch_changes_nothing(self, loader):
        batch = [order_type(i) for i in range(1, 6)]

        first = loader.load_batch(EntityType.ORDER_TYPE, batch, 1)
        snapshot = loader.rows(EntityType.ORDER_TYPE)
        second = loader.load_batch(EntityType.ORDER_TYPE, batch, 1)

        assert first.inserted == 5
        assert second.inserted == 0
        assert second.unchanged == 5
        assert loader.rows(EntityType.ORDER_TYPE) == snapshot
        assert len(loader.write_log) == 5

    def test_changed_values_are_updated(self, loader):
        loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 1)

        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(1, name="Night guard")], 2)

        assert result.updated == 1
        assert loader.rows(EntityType.ORDER_TYPE)["order_type:dispatch_course:1"]["name"] == "Night guard"

    def test_same_key_twice_in_one_batch_is_written_in_order(self, loader):
        result = loader.load_batch(
            EntityType.ORDER_TYPE, [order_type(1, name="First"), order_type(1, name="Second")], 1
        )

        assert (result.inserted, result.updated) == (1, 1)
        assert result.loaded_keys == ["order_type:dispatch_course:1"]
        assert loader.rows(EntityType.ORDER_TYPE)["order_type:dispatch_course:1"]["name"] == "Second"

    def test_stats(self, loader):
        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 1)

        assert result.stats() == {
            "inserted": 1, "updated": 0, "unchanged": 0, "staged": 0, "skipped": 0, "failed": 0,
        }
        assert result.total_attempted == 1
        assert result.duration_seconds is not None


class TestReferences:

    def test_missing_required_reference_skips_the_record(self, loaded_patient):
        result = loaded_patient.load_batch(EntityType.CASE, [case(1, 1), case(2, 99)], 1)

        assert result.inserted == 1
        assert result.skipped == 1
        assert [i.kind for i in result.issues] == [IssueKind.REFERENCE_SKIP]
        assert result.issues[0].reference == "case:dispatch_instruction:2"
        assert "case:dispatch_instruction:2" not in loaded_patient.rows(EntityType.CASE)

    def test_missing_optional_reference_is_nulled(self, loaded_patient):
        result = loaded_patient.load_batch(EntityType.CASE, [case(1, 1, practice_id=5)], 1)

        assert result.inserted == 1
        assert [i.kind for i in result.issues] == [IssueKind.REFERENCE_NULLED]
        assert result.issues[0].details == {"field": "practice_id", "target": "practice:dispatch_office:5"}
        assert loaded_patient.rows(EntityType.CASE)["case:dispatch_instruction:1"]["practice_id"] is None

    def test_references_resolve_against_rows_loaded_before(self, loader):
        loader.tables[EntityType.PROFILE]["profile:auth_user:1"] = {"row": {}, "sequence": 0, "written_at": None}

        result = loader.load_batch(EntityType.PATIENT, [patient(1, 1)], 1)

        assert result.inserted == 1

    def test_entity_with_no_references_is_never_skipped(self, loader):
        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 1)

        assert result.skipped == 0
        assert result.issues == []


class TestFailures:

    def test_record_failure_does_not_abort_the_batch(self):
        def reject(draft):
            if draft.natural_key.endswith(":3"):
                raise WriteFailed(draft.natural_key, "value too long", retryable=False)

        loader = MemoryLoader(concurrency=2, retry_policy=no_wait_policy(), fail_on=reject)

        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(i) for i in range(1, 6)], 1)

        assert result.inserted == 4
        assert [f["natural_key"] for f in result.failed] == ["order_type:dispatch_course:3"]
        assert [i.kind for i in result.issues] == [IssueKind.WRITE_FAILED]
        assert "order_type:dispatch_course:3" not in result.loaded_keys

    def test_unexpected_errors_are_recorded_per_record(self):
        def explode(draft):
            raise RuntimeError("driver bug")

        loader = MemoryLoader(concurrency=1, retry_policy=no_wait_policy(), fail_on=explode)

        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 1)

        assert len(result.failed) == 1
        assert "driver bug" in result.failed[0]["error"]

    def test_transient_record_failure_is_retried(self):
        calls = []
        lock = threading.Lock()

        def flaky(draft):
            with lock:
                calls.append(draft.natural_key)
                if len(calls) == 1:
                    raise WriteFailed(draft.natural_key, "deadlock detected")

        loader = MemoryLoader(concurrency=1, retry_policy=no_wait_policy(), fail_on=flaky)

        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 1)

        assert result.inserted == 1
        assert calls == ["order_type:dispatch_course:1", "order_type:dispatch_course:1"]

    def test_unreachable_target_aborts_the_batch(self, loader):
        loader.available = False

        with pytest.raises(BatchAborted) as exc_info:
            loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 7)

        assert exc_info.value.retryable
        assert exc_info.value.batch_number == 7

    def test_target_lost_mid_batch_aborts_the_batch(self):
        def drop(draft):
            if draft.natural_key.endswith(":2"):
                raise TargetUnavailable("connection reset")

        loader = MemoryLoader(concurrency=1, retry_policy=no_wait_policy(), fail_on=drop)

        with pytest.raises(BatchAborted):
            loader.load_batch(EntityType.ORDER_TYPE, [order_type(i) for i in range(1, 4)], 1)

    def test_foreign_key_violation_fails_the_record(self, loader):
        loader.remember_keys(EntityType.PROFILE, ["profile:auth_user:1"])

        result = loader.load_batch(EntityType.PATIENT, [patient(1, 1)], 1)

        assert len(result.failed) == 1
        assert "foreign key" in result.failed[0]["error"]

    def test_relaxed_integrity_allows_out_of_order_rows(self, loader):
        loader.remember_keys(EntityType.PROFILE, ["profile:auth_user:1"])
        loader.set_integrity_checks(False)

        result = loader.load_batch(EntityType.PATIENT, [patient(1, 1)], 1)

        assert result.inserted == 1


class TestDryRun:

    def test_dry_run_stages_without_writing(self):
        loader = MemoryLoader(dry_run=True, retry_policy=no_wait_policy())

        profiles = loader.load_batch(EntityType.PROFILE, [profile(1)], 1)
        patients = loader.load_batch(EntityType.PATIENT, [patient(1, 1)], 1)

        assert profiles.staged == 1
        assert patients.staged == 1
        assert patients.skipped == 0
        assert loader.count(EntityType.PROFILE) == 0
        assert loader.count(EntityType.PATIENT) == 0
        assert loader.write_log == []


class TestPostgresLoaderOffline:

    def test_target_id_is_stable_per_natural_key(self):
        key = "case:dispatch_instruction:3"

        assert target_id(key) == target_id(key)
        assert target_id(key) == str(uuid.uuid5(TARGET_NAMESPACE, key))
        assert target_id(key) != target_id("case:dispatch_instruction:4")

    def test_row_values_translate_references_to_target_ids(self):
        loader = PostgresLoader(DatabaseConfig())
        draft = case(1, 1, practice_id=2)

        values = loader._row_values(draft)

        assert values["patient_id"] == target_id("patient:dispatch_patient:1")
        assert values["practice_id"] == target_id("practice:dispatch_office:2")
        assert values["assigned_practitioner_id"] is None
        assert values["case_number"] == "C000001"
        assert values["title"] is None

    def test_dry_run_never_connects(self):
        loader = PostgresLoader(DatabaseConfig(), dry_run=True, retry_policy=no_wait_policy())

        result = loader.load_batch(EntityType.ORDER_TYPE, [order_type(1), order_type(2)], 1)

        assert result.staged == 2
        assert loader._pool is None

    def test_missing_dsn_aborts_the_batch(self):
        loader = PostgresLoader(DatabaseConfig(), retry_policy=no_wait_policy(max_attempts=1))

        with pytest.raises(BatchAborted) as exc_info:
            loader.load_batch(EntityType.ORDER_TYPE, [order_type(1)], 1)

        assert isinstance(exc_info.value.cause, TargetUnavailable)
