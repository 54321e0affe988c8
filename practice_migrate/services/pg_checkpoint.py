"""Checkpoint store backed by migration tracking tables in PostgreSQL."""

import logging
from typing import List, Optional

from psycopg2.extras import Json, execute_values
from psycopg2.pool import ThreadedConnectionPool

from .checkpoint import CheckpointStore
from ..db import create_pool, pooled_cursor
from ..errors import TargetUnavailable
from ..models.migration import Checkpoint, DatabaseConfig, MigrationRun
from ..models.record import CanonicalIdentity

logger = logging.getLogger(__name__)

TRACKING_SCHEMA = """
CREATE TABLE IF NOT EXISTS migration_runs (
    run_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS migration_checkpoints (
    run_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    batch_number INTEGER NOT NULL,
    status TEXT NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (run_id, entity_type, batch_number)
);

CREATE TABLE IF NOT EXISTS migration_identities (
    run_id TEXT NOT NULL,
    patient_key TEXT NOT NULL,
    payload JSONB NOT NULL,
    PRIMARY KEY (run_id, patient_key)
);
"""


class PostgresCheckpointStore(CheckpointStore):
    """Checkpoint store living next to the target data."""

    def __init__(self, config: DatabaseConfig, pool: Optional[ThreadedConnectionPool] = None):
        super().__init__()
        self.config = config
        self._pool = pool

    @property
    def pool(self) -> ThreadedConnectionPool:
        if self._pool is None:
            self._pool = create_pool(self.config, TargetUnavailable)
        return self._pool

    def ensure_schema(self) -> None:
        """Create the tracking tables when missing."""
        with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
            cur.execute(TRACKING_SCHEMA)
        logger.info("Migration tracking tables ready")

    def _get_checkpoint(self, run_id: str, entity_type: str, batch_number: int) -> Optional[Checkpoint]:
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute(
                "SELECT payload FROM migration_checkpoints "
                "WHERE run_id = %s AND entity_type = %s AND batch_number = %s",
                (run_id, entity_type, batch_number),
            )
            row = cur.fetchone()
        return Checkpoint.from_dict(row["payload"]) if row else None

    def _put_checkpoint(self, checkpoint: Checkpoint) -> None:
        with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
            cur.execute(
                """
                INSERT INTO migration_checkpoints (run_id, entity_type, batch_number, status, payload)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (run_id, entity_type, batch_number) DO UPDATE SET
                    status = EXCLUDED.status,
                    payload = EXCLUDED.payload,
                    updated_at = now()
                """,
                (
                    checkpoint.run_id,
                    checkpoint.entity_type,
                    checkpoint.batch_number,
                    checkpoint.status.value,
                    Json(checkpoint.to_dict()),
                ),
            )

    def list_checkpoints(self, run_id: str, entity_type: Optional[str] = None) -> List[Checkpoint]:
        query = "SELECT payload FROM migration_checkpoints WHERE run_id = %s"
        params = [run_id]
        if entity_type:
            query += " AND entity_type = %s"
            params.append(entity_type)
        query += " ORDER BY entity_type, batch_number"
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute(query, params)
            return [Checkpoint.from_dict(r["payload"]) for r in cur.fetchall()]

    def save_run(self, run: MigrationRun) -> None:
        with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
            cur.execute(
                """
                INSERT INTO migration_runs (run_id, name, status, started_at, payload)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (run_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    payload = EXCLUDED.payload,
                    updated_at = now()
                """,
                (run.run_id, run.name, run.status.value, run.started_at, Json(run.to_dict())),
            )

    def load_run(self, run_id: str) -> Optional[MigrationRun]:
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute("SELECT payload FROM migration_runs WHERE run_id = %s", (run_id,))
            row = cur.fetchone()
        return MigrationRun.from_dict(row["payload"]) if row else None

    def list_runs(self) -> List[MigrationRun]:
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute("SELECT payload FROM migration_runs ORDER BY started_at")
            return [MigrationRun.from_dict(r["payload"]) for r in cur.fetchall()]

    def save_identities(self, run_id: str, identities: List[CanonicalIdentity]) -> None:
        if not identities:
            return
        with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
            execute_values(
                cur,
                """
                INSERT INTO migration_identities (run_id, patient_key, payload) VALUES %s
                ON CONFLICT (run_id, patient_key) DO UPDATE SET payload = EXCLUDED.payload
                """,
                [(run_id, i.patient_key, Json(i.to_dict())) for i in identities],
            )

    def load_identities(self, run_id: str) -> List[CanonicalIdentity]:
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute(
                "SELECT payload FROM migration_identities WHERE run_id = %s ORDER BY patient_key",
                (run_id,),
            )
            return [CanonicalIdentity.from_dict(r["payload"]) for r in cur.fetchall()]

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
