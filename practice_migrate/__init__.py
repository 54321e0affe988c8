"""
Practice Data Migration

Migrates clinical and practice-management data from the legacy dispatch
schema (Django tables) into the normalized practice schema.

Supports:
- Keyset-paginated extraction from PostgreSQL or JSON table dumps
- Typed validation of legacy rows with quarantine of bad records
- Patient deduplication across offices
- Dependency-ordered, idempotent upserts
- Resumable runs backed by a durable checkpoint store
- Optional embedding and knowledge-base enrichment
"""

__version__ = "0.1.0"
