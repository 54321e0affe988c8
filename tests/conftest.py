"""Test configuration and shared fixtures."""

import pytest

from factories import no_wait_policy
from practice_migrate.extractors.json_extractor import JSONExtractor
from practice_migrate.loaders.memory_loader import MemoryLoader
from practice_migrate.models.migration import MigrationConfig, RetryConfig
from practice_migrate.orchestrator import MigrationOrchestrator
from practice_migrate.services.checkpoint import FileCheckpointStore


@pytest.fixture
def retry_policy():
    return no_wait_policy()


@pytest.fixture
def memory_loader(retry_policy):
    return MemoryLoader(concurrency=1, retry_policy=retry_policy)


@pytest.fixture
def checkpoint_dir(tmp_path):
    return tmp_path / "checkpoints"


@pytest.fixture
def checkpoint_store(checkpoint_dir):
    return FileCheckpointStore(str(checkpoint_dir))


@pytest.fixture
def make_config(tmp_path, checkpoint_dir):
    """Build a MigrationConfig writing everything under tmp_path."""
    def factory(**overrides):
        values = {
            "name": "test-migration",
            "checkpoint_dir": str(checkpoint_dir),
            "output_dir": str(tmp_path / "output"),
            "batch_size": 10,
            "transform_workers": 1,
            "load_concurrency": 1,
            "retry": RetryConfig(max_attempts=2, base_delay=0.0),
        }
        values.update(overrides)
        return MigrationConfig(**values)
    return factory


@pytest.fixture
def make_orchestrator(make_config, checkpoint_dir, retry_policy):
    """
    Build an orchestrator over in-memory legacy tables.

    Every orchestrator built by one test shares the checkpoint directory, so
    a second orchestrator sees the runs of the first, as a restarted
    process would.
    """
    def factory(tables, loader=None, reader=None, enricher=None, **config_overrides):
        config = make_config(**config_overrides)
        reader = reader or JSONExtractor(tables=tables, retry_policy=retry_policy)
        loader = loader or MemoryLoader(concurrency=1, retry_policy=retry_policy)
        store = FileCheckpointStore(str(checkpoint_dir))
        return MigrationOrchestrator(config, reader, loader, store, enricher=enricher)
    return factory
