"""Legacy readers."""

from .base import BaseExtractor, Page
from .json_extractor import JSONExtractor
from .postgres_extractor import PostgresExtractor

__all__ = [
    "BaseExtractor",
    "Page",
    "JSONExtractor",
    "PostgresExtractor",
]
