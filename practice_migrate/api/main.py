"""FastAPI application entry point."""

import os
from typing import Optional

from fastapi import FastAPI

from .routes import runs
from ..models.migration import MigrationConfig
from ..services.checkpoint import CheckpointStore, FileCheckpointStore
from ..services.pg_checkpoint import PostgresCheckpointStore


def _store_from_config(config: MigrationConfig) -> CheckpointStore:
    if config.checkpoint_backend == "postgres":
        return PostgresCheckpointStore(config.target)
    return FileCheckpointStore(config.checkpoint_dir)


def create_app(store: Optional[CheckpointStore] = None, config: Optional[MigrationConfig] = None) -> FastAPI:
    """
    Create the status API.

    Args:
        store: Checkpoint store to read runs from
        config: Used to build the store when none is given; defaults to the
            file named by ``PRACTICE_MIGRATE_CONFIG`` plus environment overrides
    """
    if store is None:
        if config is None:
            path = os.environ.get("PRACTICE_MIGRATE_CONFIG")
            config = MigrationConfig.from_file(path) if path else MigrationConfig()
            config.apply_env()
        store = _store_from_config(config)

    app = FastAPI(
        title="Practice Migration Status API",
        description="Read-only status of migration runs and their checkpoints",
        version="0.1.0",
    )
    app.state.checkpoint_store = store

    app.include_router(runs.router, prefix="/api/runs", tags=["runs"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
