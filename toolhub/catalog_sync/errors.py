"""
Error types for the catalog sync engine.

This module defines the failure taxonomy shared by the store, the sync
components and the recovery controller:
- CatalogSyncError: Base exception
- LeaseExpiredError: A held lease was lost or reclaimed mid-cycle
- VersionIncompatibleError: Local and remote schema majors differ
- NetworkFailureError: Remote object store unreachable
- IntegrityFailureError: Local SQLite store is corrupt or unusable
- SeedError: Seed definitions could not be loaded

Invariants:
    - All errors inherit from CatalogSyncError
    - Every error maps to exactly one FailureKind
    - Error messages never contain credentials
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(Enum):
    """Classification of a failed sync step, used to drive recovery."""

    LEASE_EXPIRED = "lease_expired"
    VERSION_INCOMPATIBLE = "version_incompatible"
    NETWORK_FAILURE = "network_failure"
    INTEGRITY_FAILURE = "integrity_failure"
    INTERNAL = "internal"


class CatalogSyncError(Exception):
    """Base exception for all catalog sync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    kind: FailureKind = FailureKind.INTERNAL

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CATALOG_SYNC_ERROR"
        self.details = details or {}


class LeaseExpiredError(CatalogSyncError):
    """A lease this instance held is gone, expired or owned by someone else."""

    kind = FailureKind.LEASE_EXPIRED

    def __init__(self, message: str, owner_id: str | None = None) -> None:
        super().__init__(message, code="LEASE_EXPIRED", details={"owner_id": owner_id})
        self.owner_id = owner_id


class VersionIncompatibleError(CatalogSyncError):
    """Local and remote schema versions cannot be reconciled automatically.

    Raised when:
    - Major versions differ
    - A migration plan crosses a major boundary
    """

    kind = FailureKind.VERSION_INCOMPATIBLE

    def __init__(
        self,
        message: str,
        local_version: str | None = None,
        remote_version: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VERSION_INCOMPATIBLE",
            details={"local_version": local_version, "remote_version": remote_version},
        )
        self.local_version = local_version
        self.remote_version = remote_version


class NetworkFailureError(CatalogSyncError):
    """The remote object store could not be reached."""

    kind = FailureKind.NETWORK_FAILURE

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, code="NETWORK_FAILURE", details={"operation": operation})
        self.operation = operation


class IntegrityFailureError(CatalogSyncError):
    """The local store failed a structural health check.

    Attributes:
        problems: Messages reported by the integrity check
    """

    kind = FailureKind.INTEGRITY_FAILURE

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message, code="INTEGRITY_FAILURE", details={"problems": problems or []})
        self.problems = problems or []


class SeedError(CatalogSyncError):
    """Seed definitions are missing or malformed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="SEED_ERROR", details={"path": path})
        self.path = path
