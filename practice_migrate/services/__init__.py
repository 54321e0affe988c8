"""Service layer for the migration engine."""

from .checkpoint import CheckpointStore, FileCheckpointStore
from .deduplicator import PatientDeduplicator
from .enrichment import EmbeddingClient, Enricher, KnowledgeBaseClient
from .pg_checkpoint import PostgresCheckpointStore
from .report import MigrationReport
from .retry import RetryPolicy
from .transformer import TransformEngine
from .validator import DraftValidator, RecordValidator

__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "PatientDeduplicator",
    "EmbeddingClient",
    "Enricher",
    "KnowledgeBaseClient",
    "PostgresCheckpointStore",
    "MigrationReport",
    "RetryPolicy",
    "TransformEngine",
    "DraftValidator",
    "RecordValidator",
]
