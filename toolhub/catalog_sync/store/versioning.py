"""
Schema version tracking and migrations for the catalog store.

The local store and the remote catalog each carry a VersionTriple. Evolution
follows semver-like rules:
- Equal major versions are compatible; minor/patch differences are migrated
- Different major versions are incompatible and block synchronization
- Migrations are applied lowest to highest and are idempotent

Invariants:
    - VersionTriple ordering is lexicographic (major, minor, patch)
    - plan() never returns a step that crosses a major boundary
    - Re-running a migration on an already-migrated store is a no-op

How to change safely:
    - Add a new Migration with the next minor version for additive changes
    - Guard every DDL statement (IF NOT EXISTS, column existence checks)
    - Never edit a released migration; add a new one instead

Example:
    >>> plan = MIGRATIONS.plan(VersionTriple(1, 0, 0), VersionTriple(1, 2, 0))
    >>> [str(m.version) for m in plan]
    ['1.1.0', '1.2.0']
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field

from ..errors import VersionIncompatibleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class VersionTriple:
    """Schema/data version, totally ordered lexicographically."""

    major: int
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, value: str) -> VersionTriple:
        """Parse "MAJOR.MINOR.PATCH" (missing parts default to 0).

        Raises:
            ValueError: If the string is not a valid version
        """
        parts = value.strip().split(".")
        if not parts or len(parts) > 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid version string: {value!r}")
        numbers = [int(p) for p in parts] + [0] * (3 - len(parts))
        return cls(numbers[0], numbers[1], numbers[2])

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def compatible(local: VersionTriple, remote: VersionTriple) -> bool:
    """Two versions are compatible iff their major components are equal."""
    return local.major == remote.major


def require_compatible(local: VersionTriple, remote: VersionTriple) -> None:
    """Raise VersionIncompatibleError unless local and remote are compatible."""
    if not compatible(local, remote):
        raise VersionIncompatibleError(
            f"Schema major version mismatch: local {local}, remote {remote}. "
            "A manual migration is required before this instance can sync.",
            local_version=str(local),
            remote_version=str(remote),
        )


@dataclass(frozen=True)
class Migration:
    """A single idempotent schema migration step.

    Attributes:
        version: Version the store is at after this step
        description: Human-readable summary
        apply: Callable executing the step on an open connection
    """

    version: VersionTriple
    description: str
    apply: Callable[[sqlite3.Connection], None] = field(compare=False)


class MigrationRegistry:
    """Ordered collection of migrations."""

    def __init__(self) -> None:
        self._migrations: dict[VersionTriple, Migration] = {}

    def register(self, migration: Migration) -> Migration:
        if migration.version in self._migrations:
            raise ValueError(f"Migration {migration.version} already registered")
        self._migrations[migration.version] = migration
        return migration

    @property
    def latest(self) -> VersionTriple | None:
        return max(self._migrations) if self._migrations else None

    def plan(self, from_version: VersionTriple, to_version: VersionTriple) -> list[Migration]:
        """Ordered steps taking a store from from_version to to_version.

        Args:
            from_version: Current version of the store
            to_version: Target version

        Returns:
            Migrations with from_version < version <= to_version, lowest first.
            Empty when to_version <= from_version.

        Raises:
            VersionIncompatibleError: If the major versions differ
        """
        require_compatible(from_version, to_version)
        if to_version <= from_version:
            return []
        return [
            self._migrations[v]
            for v in sorted(self._migrations)
            if from_version < v <= to_version
        ]


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _index_records(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_records_kind ON catalog_records(kind)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_records_author ON catalog_records(author)")


def _conflict_acknowledgement(conn: sqlite3.Connection) -> None:
    if not _column_exists(conn, "sync_conflicts", "acknowledged_at"):
        conn.execute("ALTER TABLE sync_conflicts ADD COLUMN acknowledged_at INTEGER")
    if not _column_exists(conn, "sync_conflicts", "acknowledged_by"):
        conn.execute("ALTER TABLE sync_conflicts ADD COLUMN acknowledged_by TEXT")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_conflicts_status ON sync_conflicts(status, detected_at)"
    )


# Version of the base schema created by CatalogStore._create_schema
BASE_VERSION = VersionTriple(1, 0, 0)

MIGRATIONS = MigrationRegistry()
MIGRATIONS.register(
    Migration(VersionTriple(1, 1, 0), "index catalog records by kind and author", _index_records)
)
MIGRATIONS.register(
    Migration(
        VersionTriple(1, 2, 0),
        "conflict acknowledgement columns",
        _conflict_acknowledgement,
    )
)

# Version a freshly initialized store is migrated to
SCHEMA_VERSION = MIGRATIONS.latest or BASE_VERSION
