"""Tests for the legacy readers."""

import json

import pytest

from factories import make_instruction, make_patient, make_user, no_wait_policy
from practice_migrate.errors import SchemaMismatch, SourceUnavailable
from practice_migrate.extractors.json_extractor import JSONExtractor


def patients(ids):
    return [make_patient(i, 1000 + i) for i in ids]


@pytest.fixture
def reader():
    return JSONExtractor(tables={"dispatch_patient": patients(range(1, 26))}, retry_policy=no_wait_policy())


class TestKeysetPagination:

    def test_pages_in_primary_key_order(self, reader):
        pages = list(reader.iter_pages("dispatch_patient", 10))

        assert [len(p.rows) for p in pages] == [10, 10, 5]
        assert [p.next_cursor for p in pages] == [10, 20, 25]
        assert [r.source_id for p in pages for r in p.rows] == list(range(1, 26))

    def test_short_page_ends_the_table(self, reader):
        page = reader.read_page("dispatch_patient", 20, 10)

        assert len(page.rows) == 5
        assert not page.has_more

    def test_empty_page_keeps_the_cursor(self, reader):
        page = reader.read_page("dispatch_patient", 25, 10)

        assert page.rows == []
        assert page.next_cursor == 25

    def test_rows_are_unordered_in_the_source(self):
        reader = JSONExtractor(tables={"dispatch_patient": patients([7, 3, 5, 1])}, retry_policy=no_wait_policy())

        page = reader.read_page("dispatch_patient", None, 10)

        assert [r.source_id for r in page.rows] == [1, 3, 5, 7]
        assert page.rows[0].ref == "dispatch_patient:1"

    def test_inserts_during_the_read_are_neither_lost_nor_duplicated(self, reader):
        seen = []
        cursor = None
        while True:
            page = reader.read_page("dispatch_patient", cursor, 10)
            seen.extend(r.source_id for r in page.rows)
            if page.next_cursor == 10:
                # Production keeps inserting while we read.
                reader.add_rows("dispatch_patient", patients(range(26, 31)))
            if not page.has_more:
                break
            cursor = page.next_cursor

        assert seen == list(range(1, 31))

    def test_resume_from_cursor(self, reader):
        pages = list(reader.iter_pages("dispatch_patient", 10, after_cursor=20))

        assert [r.source_id for p in pages for r in p.rows] == list(range(21, 26))


class TestRelatedRows:

    def test_fetch_related_by_column(self):
        reader = JSONExtractor(tables={
            "dispatch_instruction": [make_instruction(3, 2), make_instruction(1, 1), make_instruction(2, 1)],
        })

        rows = reader.fetch_related("dispatch_instruction", "patient_id", [1, 1, None])

        assert [r.source_id for r in rows] == [1, 2]

    def test_fetch_related_without_values(self, reader):
        assert reader.fetch_related("dispatch_instruction", "patient_id", [None]) == []


class TestSchemaChecks:

    def test_expected_columns_present(self, reader):
        reader.check_schema("dispatch_patient")

    def test_dropped_column_is_a_schema_mismatch(self):
        rows = [make_user(1)]
        del rows[0]["username"]
        reader = JSONExtractor(tables={"auth_user": rows})

        with pytest.raises(SchemaMismatch) as exc_info:
            reader.check_schema("auth_user")

        assert exc_info.value.missing_columns == ["username"]
        assert exc_info.value.fatal

    def test_unknown_table(self, reader):
        with pytest.raises(ValueError):
            reader.read_page("dispatch_invoice", None, 10)


class TestDumpFiles:

    def test_reads_table_dumps_from_directory(self, tmp_path):
        (tmp_path / "dispatch_patient.json").write_text(json.dumps(patients([2, 1])))

        reader = JSONExtractor(str(tmp_path))

        assert reader.count("dispatch_patient") == 2
        assert reader.count("auth_user") == 0
        assert [r.source_id for r in reader.read_page("dispatch_patient", None, 10).rows] == [1, 2]

    def test_malformed_dump(self, tmp_path):
        (tmp_path / "dispatch_patient.json").write_text(json.dumps({"rows": []}))

        reader = JSONExtractor(str(tmp_path))

        with pytest.raises(SourceUnavailable):
            reader.count("dispatch_patient")


class FlakyReader(JSONExtractor):
    """Drops the connection on the first ``failures`` reads."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    def _fetch_rows(self, table, after_cursor, limit):
        if self.failures:
            self.failures -= 1
            raise SourceUnavailable("server closed the connection unexpectedly")
        return super()._fetch_rows(table, after_cursor, limit)


def test_transient_read_failures_are_retried():
    reader = FlakyReader(2, tables={"dispatch_patient": patients([1, 2])}, retry_policy=no_wait_policy(3))

    page = reader.read_page("dispatch_patient", None, 10)

    assert len(page.rows) == 2


def test_persistent_read_failure_surfaces():
    reader = FlakyReader(5, tables={"dispatch_patient": patients([1])}, retry_policy=no_wait_policy(2))

    with pytest.raises(SourceUnavailable):
        reader.read_page("dispatch_patient", None, 10)
