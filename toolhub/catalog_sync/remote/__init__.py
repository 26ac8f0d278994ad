"""
Remote object store abstraction for the catalog sync service.

This module provides a pluggable backend interface supporting:
- S3 and S3-compatible endpoints with conditional writes (production)
- In-memory (for testing and local development)

The remote store holds the shared catalog document, the sync lease and the
per-instance backups. It is the only medium instances share.

Invariants:
    - Lease correctness depends on atomic create-if-absent and overwrite-if-match
    - Backends never downgrade a conditional request to an unconditional one

How to change safely:
    - New backends must implement the ObjectStore protocol
    - Run the lock race tests against any new backend
"""

from .base import (
    ObjectInfo,
    ObjectStore,
    ObjectStoreError,
    ObjectStoreUnavailableError,
    PreconditionFailedError,
    StoredObject,
    create_object_store,
)
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    # Protocol and types
    "ObjectStore",
    "ObjectInfo",
    "StoredObject",
    "ObjectStoreError",
    "ObjectStoreUnavailableError",
    "PreconditionFailedError",
    # Factory
    "create_object_store",
    # Implementations
    "S3ObjectStore",
    "InMemoryObjectStore",
]
