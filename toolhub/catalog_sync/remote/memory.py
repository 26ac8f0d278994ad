"""
In-memory object store implementation for testing.

This module provides a simple in-memory backend for:
- Unit and integration tests (several simulated instances share one store)
- Local development without S3/MinIO

Invariants:
    - All data is lost on process exit
    - Conditional writes have the same semantics as the S3 backend
    - Outages can be injected to exercise failure paths

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with ObjectStore protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field

from .base import (
    ObjectInfo,
    ObjectStoreUnavailableError,
    PreconditionFailedError,
    StoredObject,
)

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    body: bytes
    etag: str
    last_modified_ms: int
    metadata: dict[str, str] = field(default_factory=dict)


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore for testing.

    Attributes:
        available: When False every operation raises ObjectStoreUnavailableError
        failing_operations: Operation names ("get", "put", ...) that fail while set

    Thread safety:
        Uses an asyncio lock, so conditional operations are atomic across
        coroutines sharing this instance.

    Example:
        >>> remote = InMemoryObjectStore()
        >>> await remote.connect()
        >>> await remote.put("k", b"v", if_none_match=True)
        >>> remote.set_available(False)  # simulate an outage
    """

    def __init__(self) -> None:
        self._objects: dict[str, _Entry] = {}
        self._generation = 0
        self._connected = False
        self._lock = asyncio.Lock()
        self.available = True
        self.failing_operations: set[str] = set()
        self.operation_counts: dict[str, int] = {}

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryObjectStore connected")

    async def close(self) -> None:
        """Close (data is kept so other simulated instances can still read it)."""
        self._connected = False
        logger.debug("InMemoryObjectStore closed")

    def set_available(self, available: bool) -> None:
        """Simulate the store going down or coming back."""
        self.available = available

    def _check(self, operation: str) -> None:
        self.operation_counts[operation] = self.operation_counts.get(operation, 0) + 1
        if not self.available or operation in self.failing_operations:
            raise ObjectStoreUnavailableError(f"Object store unavailable during {operation}")

    def _make_etag(self, body: bytes) -> str:
        self._generation += 1
        digest = hashlib.md5(body + str(self._generation).encode("ascii")).hexdigest()
        return f'"{digest}"'

    def _info(self, key: str, entry: _Entry) -> ObjectInfo:
        return ObjectInfo(
            key=key,
            etag=entry.etag,
            size_bytes=len(entry.body),
            last_modified_ms=entry.last_modified_ms,
            metadata=dict(entry.metadata),
        )

    async def head(self, key: str) -> ObjectInfo | None:
        async with self._lock:
            self._check("head")
            entry = self._objects.get(key)
            return self._info(key, entry) if entry else None

    async def get(self, key: str) -> StoredObject | None:
        async with self._lock:
            self._check("get")
            entry = self._objects.get(key)
            if entry is None:
                return None
            return StoredObject(info=self._info(key, entry), body=entry.body)

    async def put(
        self,
        key: str,
        body: bytes,
        *,
        if_none_match: bool = False,
        if_match: str | None = None,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        async with self._lock:
            self._check("put")
            existing = self._objects.get(key)

            if if_none_match and existing is not None:
                raise PreconditionFailedError(f"Object already exists: {key}")
            if if_match is not None and (existing is None or existing.etag != if_match):
                raise PreconditionFailedError(f"ETag mismatch for {key}")

            etag = self._make_etag(body)
            self._objects[key] = _Entry(
                body=bytes(body),
                etag=etag,
                last_modified_ms=int(time.time() * 1000),
                metadata=dict(metadata or {}),
            )
            return etag

    async def delete(self, key: str, *, if_match: str | None = None) -> None:
        async with self._lock:
            self._check("delete")
            existing = self._objects.get(key)
            if existing is None:
                return
            if if_match is not None and existing.etag != if_match:
                raise PreconditionFailedError(f"ETag mismatch for {key}")
            del self._objects[key]

    async def list_prefix(self, prefix: str) -> list[ObjectInfo]:
        async with self._lock:
            self._check("list")
            return [
                self._info(key, entry)
                for key, entry in sorted(self._objects.items())
                if key.startswith(prefix)
            ]

    # Testing helpers

    def keys(self) -> list[str]:
        """All stored keys, sorted."""
        return sorted(self._objects)

    def corrupt(self, key: str, body: bytes) -> None:
        """Overwrite an object body without touching preconditions."""
        entry = self._objects[key]
        entry.body = body
