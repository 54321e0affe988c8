"""Loaders for the target store."""

from .base import BaseLoader, LoadResult, WriteOutcome
from .memory_loader import MemoryLoader
from .postgres_loader import PostgresLoader, target_id

__all__ = [
    "BaseLoader",
    "LoadResult",
    "WriteOutcome",
    "MemoryLoader",
    "PostgresLoader",
    "target_id",
]
