"""
Local catalog storage.

This module contains:
- CatalogStore: instance-local SQLite store of catalog records
- Version tracking and idempotent schema migrations
- Seed definitions loader used for last-resort rebuilds
"""

from .catalog_store import (
    RECORD_KINDS,
    CatalogNotInitializedError,
    CatalogRecord,
    CatalogStore,
    PublishResult,
    RecordConflict,
)
from .seed import load_seed, parse_seed
from .versioning import (
    BASE_VERSION,
    MIGRATIONS,
    SCHEMA_VERSION,
    Migration,
    MigrationRegistry,
    VersionTriple,
    compatible,
    require_compatible,
)

__all__ = [
    "CatalogStore",
    "CatalogRecord",
    "RecordConflict",
    "PublishResult",
    "CatalogNotInitializedError",
    "RECORD_KINDS",
    "load_seed",
    "parse_seed",
    "VersionTriple",
    "Migration",
    "MigrationRegistry",
    "MIGRATIONS",
    "BASE_VERSION",
    "SCHEMA_VERSION",
    "compatible",
    "require_compatible",
]
