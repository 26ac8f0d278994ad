"""
Base protocol and types for the remote object store abstraction.

This module defines the ObjectStore protocol that all backends must implement,
along with the object metadata types and store errors.

Invariants:
    - put(if_none_match=True) is an atomic create-if-absent
    - put(if_match=etag) is an atomic overwrite-if-unchanged
    - delete(if_match=etag) only removes the exact version identified by etag
    - Every transport failure surfaces as ObjectStoreUnavailableError

How to change safely:
    - Protocol changes require updating all implementations
    - Never add an implementation that silently ignores preconditions
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Base exception for object store operations."""

    pass


class ObjectStoreUnavailableError(ObjectStoreError):
    """The object store could not be reached or timed out."""

    pass


class PreconditionFailedError(ObjectStoreError):
    """A conditional write or delete lost against a concurrent change."""

    pass


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of a stored object.

    Attributes:
        key: Object key
        etag: Entity tag identifying this exact object version
        size_bytes: Body size in bytes
        last_modified_ms: Last modification time (Unix ms)
        metadata: User metadata attached on write
    """

    key: str
    etag: str
    size_bytes: int
    last_modified_ms: int
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredObject:
    """An object body together with its metadata."""

    info: ObjectInfo
    body: bytes

    @property
    def etag(self) -> str:
        return self.info.etag


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for remote object store backends.

    Consistency contract:
        - Conditional puts and deletes are atomic with respect to each other
        - A get after a successful put returns the new body (read-after-write)

    Example:
        >>> store = S3ObjectStore(s3_config)
        >>> await store.connect()
        >>> etag = await store.put("locks/catalog.lease", b"{}", if_none_match=True)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def head(self, key: str) -> ObjectInfo | None:
        """Return object metadata, or None if the key does not exist.

        Raises:
            ObjectStoreUnavailableError: If the backend is unreachable
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> StoredObject | None:
        """Return the object, or None if the key does not exist.

        Raises:
            ObjectStoreUnavailableError: If the backend is unreachable
        """
        ...

    @abstractmethod
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
        """Write an object, optionally conditionally.

        Args:
            key: Object key
            body: Object body
            if_none_match: Only create; fail if the key already exists
            if_match: Only overwrite the version identified by this ETag
            content_type: Optional content type
            metadata: Optional user metadata

        Returns:
            ETag of the written object

        Raises:
            PreconditionFailedError: If a precondition does not hold
            ObjectStoreUnavailableError: If the backend is unreachable
        """
        ...

    @abstractmethod
    async def delete(self, key: str, *, if_match: str | None = None) -> None:
        """Delete an object. Deleting a missing key is a no-op.

        Raises:
            PreconditionFailedError: If if_match does not identify the current version
            ObjectStoreUnavailableError: If the backend is unreachable
        """
        ...

    @abstractmethod
    async def list_prefix(self, prefix: str) -> list[ObjectInfo]:
        """List objects whose key starts with prefix, sorted by key.

        Raises:
            ObjectStoreUnavailableError: If the backend is unreachable
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_object_store(config: ServerConfig) -> ObjectStore:
    """Factory function to create an object store from configuration.

    Args:
        config: Service configuration

    Returns:
        Appropriate ObjectStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RemoteBackend
    from .memory import InMemoryObjectStore
    from .s3 import S3ObjectStore

    if config.remote_backend == RemoteBackend.S3:
        return S3ObjectStore(config.s3)
    elif config.remote_backend == RemoteBackend.MEMORY:
        logger.warning("Using in-memory object store; catalog is not shared across processes")
        return InMemoryObjectStore()
    else:
        raise ValueError(f"Unsupported remote backend: {config.remote_backend}")
