"""Tests for the command line interface."""

import json

import pytest

from factories import build_tables
from practice_migrate import cli
from practice_migrate.models.migration import MigrationRun, RunStatus
from practice_migrate.services.checkpoint import FileCheckpointStore


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the CLI away from the real environment, .env files and SIGINT handler."""
    for name in ("LEGACY_DATABASE_URL", "TARGET_DATABASE_URL", "EMBEDDING_API_KEY", "KNOWLEDGE_BASE_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: None)


@pytest.fixture
def config_file(tmp_path):
    source_dir = tmp_path / "dump"
    source_dir.mkdir()
    for table, rows in build_tables(4).items():
        (source_dir / f"{table}.json").write_text(json.dumps(rows))

    path = tmp_path / "migration.json"
    path.write_text(json.dumps({
        "name": "cli-test",
        "source_dir": str(source_dir),
        "checkpoint_dir": str(tmp_path / "checkpoints"),
        "output_dir": str(tmp_path / "output"),
        "batch_size": 3,
        "transform_workers": 1,
        "retry": {"max_attempts": 1, "base_delay": 0.0},
    }))
    return path


def test_dry_run_migration(config_file, tmp_path, capsys):
    exit_code = cli.main(["migrate", "--config", str(config_file), "--dry-run"])

    assert exit_code == 0
    assert "MIGRATION COMPLETED" in capsys.readouterr().out
    runs = FileCheckpointStore(str(tmp_path / "checkpoints")).list_runs()
    assert len(runs) == 1
    assert runs[0].dry_run
    assert runs[0].totals("patient").staged == 4
    assert list((tmp_path / "output" / "reports").glob("migration_report_*.json"))


def test_validate_command(config_file, tmp_path):
    exit_code = cli.main(["validate", "--config", str(config_file), "--only-entity", "profile"])

    assert exit_code == 0
    run = FileCheckpointStore(str(tmp_path / "checkpoints")).list_runs()[0]
    assert run.totals("profile").extracted == 6
    assert run.entity_statuses["patient"].value == "skipped"


def test_resume_without_unfinished_run(config_file, capsys):
    exit_code = cli.main(["migrate", "--config", str(config_file), "--dry-run", "--resume"])

    assert exit_code == 1
    assert "No unfinished run to resume" in capsys.readouterr().out


def test_status_lists_runs(tmp_path, capsys):
    store = FileCheckpointStore(str(tmp_path / "checkpoints"))
    store.save_run(MigrationRun(run_id="abc", name="nightly", status=RunStatus.PARTIAL))
    config = tmp_path / "status.json"
    config.write_text(json.dumps({"checkpoint_dir": str(tmp_path / "checkpoints")}))

    assert cli.main(["status", "--config", str(config)]) == 0
    assert "abc" in capsys.readouterr().out

    assert cli.main(["status", "abc", "--config", str(config)]) == 0
    assert "PARTIAL" in capsys.readouterr().out

    assert cli.main(["status", "missing", "--config", str(config)]) == 1


def test_bad_config_is_reported(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"skip_phases": ["extract"]}))

    assert cli.main(["migrate", "--config", str(path)]) == 1


class TestLoadConfig:

    def parse(self, *argv):
        return cli.build_parser().parse_args(["migrate", *argv])

    def test_phases_selects_optional_phases(self):
        config = cli.load_config(self.parse("--phases", "validate,load"))

        assert config.skip_phases == ["dedup", "enrich"]

    def test_unknown_phase(self):
        with pytest.raises(ValueError):
            cli.load_config(self.parse("--phases", "load,teleport"))

    def test_flags_override_the_file(self, config_file):
        config = cli.load_config(self.parse(
            "--config", str(config_file), "--batch-size", "50", "--skip-entity", "order",
            "--skip-phase", "enrich", "--stop-on-error",
        ))

        assert config.batch_size == 50
        assert config.skip_entities == ["order"]
        assert config.skip_phases == ["enrich"]
        assert config.continue_on_error is False
        assert config.name == "cli-test"

    def test_environment_supplies_connection_strings(self, monkeypatch):
        monkeypatch.setenv("TARGET_DATABASE_URL", "postgresql://target/db")

        config = cli.load_config(self.parse())

        assert config.target.dsn == "postgresql://target/db"
        assert config.continue_on_error is True
