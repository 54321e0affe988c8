"""PostgreSQL loader for the target practice-management schema."""

import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, execute_values
from psycopg2.pool import ThreadedConnectionPool

from .base import BaseLoader, WriteOutcome
from ..db import create_pool, pooled_cursor
from ..errors import TargetUnavailable, WriteFailed
from ..models.migration import DatabaseConfig
from ..models.record import TargetEntityDraft
from ..models.schema import ENTITY_PLANS, TARGET_SCHEMAS, EntityType, FieldType
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Namespace for deterministic target primary keys derived from natural keys.
TARGET_NAMESPACE = uuid.UUID("6f1c8e52-3b0e-4d7a-9a57-0f4c2d1e8b93")

_COLUMN_TYPES = {
    FieldType.STRING: "TEXT",
    FieldType.INTEGER: "INTEGER",
    FieldType.DECIMAL: "NUMERIC(12, 2)",
    FieldType.BOOLEAN: "BOOLEAN",
    FieldType.DATE: "DATE",
    FieldType.DATETIME: "TIMESTAMPTZ",
    FieldType.ENUM: "TEXT",
    FieldType.OBJECT: "JSONB",
    FieldType.JSON: "JSONB",
}


def target_id(natural_key: str) -> str:
    """Primary key of the target row for ``natural_key``; stable across runs."""
    return str(uuid.uuid5(TARGET_NAMESPACE, natural_key))


def table_ddl(entity_type: EntityType) -> sql.Composed:
    """CREATE TABLE statement for one target entity."""
    schema = TARGET_SCHEMAS[entity_type]
    columns = [
        sql.SQL("id UUID PRIMARY KEY"),
        sql.SQL("legacy_key TEXT NOT NULL UNIQUE"),
    ]
    for name, field_def in schema.fields.items():
        columns.append(sql.SQL("{} {}{}").format(
            sql.Identifier(name),
            sql.SQL(_COLUMN_TYPES[field_def.type]),
            sql.SQL(" NOT NULL" if field_def.required else ""),
        ))
    for ref in ENTITY_PLANS[entity_type].references:
        columns.append(sql.SQL("{} UUID REFERENCES {} (id)").format(
            sql.Identifier(ref.field),
            sql.Identifier(TARGET_SCHEMAS[ref.entity_type].table),
        ))
    columns.append(sql.SQL("legacy_provenance JSONB NOT NULL DEFAULT '[]'::jsonb"))
    return sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
        sql.Identifier(schema.table), sql.SQL(", ").join(columns)
    )


EMBEDDINGS_DDL = """
CREATE TABLE IF NOT EXISTS embeddings (
    legacy_key TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    model TEXT NOT NULL,
    vector JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class PostgresLoader(BaseLoader):
    """
    Loader writing drafts into the target PostgreSQL schema.

    Each row gets ``id = uuid5(namespace, natural_key)`` and keeps the
    natural key in the unique ``legacy_key`` column. Upserts go through
    ``ON CONFLICT (legacy_key)`` and only touch the row when a value
    actually differs, so replays report ``unchanged``.
    """

    def __init__(
        self,
        config: DatabaseConfig,
        dry_run: bool = False,
        concurrency: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        pool: Optional[ThreadedConnectionPool] = None
    ):
        super().__init__(dry_run=dry_run, concurrency=concurrency, retry_policy=retry_policy)
        self.config = config
        self._pool = pool
        self._relaxed = False

    @property
    def pool(self) -> ThreadedConnectionPool:
        if self._pool is None:
            self._pool = create_pool(self.config, TargetUnavailable)
        return self._pool

    def ensure_schema(self) -> None:
        """Create missing target tables in load order."""
        with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
            for entity_type in TARGET_SCHEMAS:
                cur.execute(table_ddl(entity_type))
            cur.execute(EMBEDDINGS_DDL)
        logger.info("Target schema ready")

    def ping(self) -> None:
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute("SELECT 1")

    def set_integrity_checks(self, enabled: bool) -> None:
        self._relaxed = not enabled
        logger.info(f"Foreign key enforcement {'restored' if enabled else 'relaxed'} for bulk load")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _row_values(self, draft: TargetEntityDraft) -> Dict[str, Any]:
        schema = TARGET_SCHEMAS[draft.entity_type]
        values: Dict[str, Any] = {}
        for name, field_def in schema.fields.items():
            value = draft.fields.get(name)
            if value is not None and field_def.type in (FieldType.OBJECT, FieldType.JSON):
                value = Json(value)
            values[name] = value
        for ref in ENTITY_PLANS[draft.entity_type].references:
            key = draft.references.get(ref.field)
            values[ref.field] = target_id(key) if key else None
        values["legacy_provenance"] = Json(list(draft.provenance))
        return values

    def upsert_record(self, draft: TargetEntityDraft) -> WriteOutcome:
        table = TARGET_SCHEMAS[draft.entity_type].table
        values = self._row_values(draft)
        columns = list(values)

        query = sql.SQL(
            "INSERT INTO {table} AS t (id, legacy_key, {columns}) "
            "VALUES (%s, %s, {placeholders}) "
            "ON CONFLICT (legacy_key) DO UPDATE SET ({columns}) = ({excluded}) "
            "WHERE ({current}) IS DISTINCT FROM ({excluded}) "
            "RETURNING (xmax = 0) AS inserted"
        ).format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            placeholders=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            excluded=sql.SQL(", ").join(sql.SQL("EXCLUDED.{}").format(sql.Identifier(c)) for c in columns),
            current=sql.SQL(", ").join(sql.SQL("t.{}").format(sql.Identifier(c)) for c in columns),
        )
        params = [target_id(draft.natural_key), draft.natural_key] + [values[c] for c in columns]

        try:
            with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
                if self._relaxed:
                    cur.execute("SET LOCAL session_replication_role = replica")
                cur.execute(query, params)
                row = cur.fetchone()
        except (psycopg2.IntegrityError, psycopg2.DataError) as e:
            raise WriteFailed(draft.natural_key, str(e).strip(), retryable=False) from e

        if row is None:
            return WriteOutcome.UNCHANGED
        return WriteOutcome.INSERTED if row["inserted"] else WriteOutcome.UPDATED

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def existing_keys(self, entity_type: EntityType, keys: Iterable[str]) -> Set[str]:
        keys = list(keys)
        if not keys:
            return set()
        query = sql.SQL("SELECT legacy_key FROM {} WHERE legacy_key = ANY(%s)").format(
            sql.Identifier(TARGET_SCHEMAS[entity_type].table)
        )
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute(query, (keys,))
            return {row["legacy_key"] for row in cur.fetchall()}

    def fetch_rows(self, entity_type: EntityType, after_key: Optional[str], limit: int) -> List[Dict[str, Any]]:
        query = sql.SQL(
            "SELECT * FROM {} WHERE %s IS NULL OR legacy_key > %s ORDER BY legacy_key LIMIT %s"
        ).format(sql.Identifier(TARGET_SCHEMAS[entity_type].table))
        with pooled_cursor(self.pool, TargetUnavailable) as cur:
            cur.execute(query, (after_key, after_key, limit))
            return [dict(row) for row in cur.fetchall()]

    def save_embeddings(self, entity_type: EntityType, rows: List[Tuple[str, str, List[float]]]) -> None:
        if not rows:
            return
        with pooled_cursor(self.pool, TargetUnavailable, commit=True) as cur:
            execute_values(
                cur,
                """
                INSERT INTO embeddings (legacy_key, entity_type, model, vector) VALUES %s
                ON CONFLICT (legacy_key) DO UPDATE SET
                    model = EXCLUDED.model,
                    vector = EXCLUDED.vector,
                    created_at = now()
                """,
                [(key, entity_type.value, model, json.dumps(vector)) for key, model, vector in rows],
            )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
