"""
Local SQLite catalog store.

This module manages the instance-local SQLite database that stores:
- Catalog records (tools and functions) with per-record version counters
- The base version of every record (last version known to be in the remote)
- The conflict side log for manual reconciliation
- Store metadata (schema version, last sync time, remote generation)

The local store is exclusively owned by its instance between syncs. The
Synchronizer rewrites it only through publish() and fast_forward(), each a
single transaction.

Invariants:
    - One SQLite file per instance
    - All multi-statement writes run inside BEGIN IMMEDIATE ... COMMIT
    - A record is pending iff base_version IS NULL or version != base_version
    - Local mutations always increase the version counter

How to change safely:
    - Schema changes go through store/versioning.py migrations
    - Keep publish() all-or-nothing; readers must never see a partial merge

Table schema:
    store_meta:
        - key TEXT PRIMARY KEY
        - value TEXT

    catalog_records:
        - record_id TEXT PRIMARY KEY
        - kind TEXT ("tool" | "function")
        - payload_json TEXT
        - author TEXT
        - version INTEGER
        - base_version INTEGER NULL
        - updated_at INTEGER (Unix ms)

    sync_conflicts:
        - conflict_id INTEGER PRIMARY KEY AUTOINCREMENT
        - record_id TEXT
        - local_json TEXT
        - remote_json TEXT
        - base_version INTEGER NULL
        - resolved_with TEXT ("remote" | "local")
        - detected_at INTEGER (Unix ms)
        - status TEXT ("open" | "acknowledged")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import time
from collections.abc import Collection, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from .versioning import (
    BASE_VERSION,
    MIGRATIONS,
    SCHEMA_VERSION,
    Migration,
    MigrationRegistry,
    VersionTriple,
)

logger = logging.getLogger(__name__)

RECORD_KINDS = ("tool", "function")

REQUIRED_TABLES = ("store_meta", "catalog_records", "sync_conflicts")


class CatalogNotInitializedError(Exception):
    """Catalog database does not exist."""

    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CatalogRecord:
    """A tool or function entry in the catalog.

    Attributes:
        record_id: Unique identifier
        kind: "tool" or "function"
        payload: Record content (query program, parameters, description, ...)
        author: Actor who last wrote the record
        version: Monotonic per-record version counter
        updated_at: Last modification timestamp (Unix ms)
        base_version: Last version known to be in the remote catalog
            (local only, None for never-synced records)
    """

    record_id: str
    kind: str
    payload: dict[str, Any]
    author: str
    version: int
    updated_at: int
    base_version: int | None = None

    @property
    def is_pending(self) -> bool:
        """Whether the record has local changes not yet in the remote catalog."""
        return self.base_version is None or self.version != self.base_version

    def same_content(self, other: CatalogRecord) -> bool:
        """Whether both records carry identical content (ignores versions/timestamps)."""
        return (
            self.kind == other.kind
            and self.author == other.author
            and self.payload == other.payload
        )

    def to_dict(self) -> dict[str, Any]:
        """Remote representation (base_version is local bookkeeping only)."""
        return {
            "record_id": self.record_id,
            "kind": self.kind,
            "payload": self.payload,
            "author": self.author,
            "version": self.version,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CatalogRecord:
        """Create from the remote representation.

        Raises:
            ValueError: If required fields are missing
        """
        required = ["record_id", "kind", "payload", "version"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required record fields: {missing}")

        return cls(
            record_id=str(data["record_id"]),
            kind=str(data["kind"]),
            payload=dict(data["payload"]),
            author=str(data.get("author", "unknown")),
            version=int(data["version"]),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class RecordConflict:
    """A double write detected during merge.

    Attributes:
        record_id: Conflicting record
        local: Local variant
        remote: Remote variant
        base_version: Common ancestor version (None if both sides created it)
        resolved_with: Variant kept in the merged catalog ("remote" or "local")
        detected_at: Detection timestamp (Unix ms)
        conflict_id: Row id once persisted
        status: "open" or "acknowledged"
        acknowledged_by: Actor who acknowledged the conflict
    """

    record_id: str
    local: CatalogRecord
    remote: CatalogRecord
    base_version: int | None
    resolved_with: str
    detected_at: int
    conflict_id: int | None = None
    status: str = "open"
    acknowledged_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "record_id": self.record_id,
            "base_version": self.base_version,
            "resolved_with": self.resolved_with,
            "detected_at": self.detected_at,
            "status": self.status,
            "acknowledged_by": self.acknowledged_by,
            "local": self.local.to_dict(),
            "remote": self.remote.to_dict(),
        }


@dataclass
class PublishResult:
    """Outcome of publishing a merged catalog locally.

    Attributes:
        written: Records written with their merged value
        rebased: Records mutated locally during the cycle, kept on top of the merge
        conflicts_recorded: Conflict rows inserted
    """

    written: int
    rebased: list[str]
    conflicts_recorded: int


class CatalogStore:
    """Instance-local SQLite store for catalog records.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers,
        and file-level operations (restore, reset) hold an asyncio lock.

    Example:
        >>> store = CatalogStore("/var/lib/toolhub/catalog.db")
        >>> await store.initialize()
        >>> record = await store.put_record(
        ...     record_id="top_customers",
        ...     kind="tool",
        ...     payload={"query": "SELECT ..."},
        ...     author="user:42",
        ... )
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        migrations: MigrationRegistry | None = None,
        target_version: VersionTriple | None = None,
    ) -> None:
        """Initialize the catalog store.

        Args:
            db_path: SQLite database file path
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            migrations: Migration registry (defaults to the built-in one)
            target_version: Version a fresh store is migrated to
        """
        self._db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.migrations = migrations or MIGRATIONS
        self.target_version = target_version or SCHEMA_VERSION
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Args:
            create: Whether to create the database if it does not exist

        Yields:
            SQLite connection

        Raises:
            CatalogNotInitializedError: If database doesn't exist and create=False
        """
        if not create and not self._db_path.exists():
            raise CatalogNotInitializedError(f"Catalog database not found: {self._db_path}")

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        with self._get_connection(create=create) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create the base (1.0.0) schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS catalog_records (
                record_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                author TEXT NOT NULL,
                version INTEGER NOT NULL,
                base_version INTEGER,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_conflicts (
                conflict_id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL,
                local_json TEXT NOT NULL,
                remote_json TEXT NOT NULL,
                base_version INTEGER,
                resolved_with TEXT NOT NULL,
                detected_at INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'open'
            );
        """)
        conn.execute(
            "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', ?)",
            (str(BASE_VERSION),),
        )

    async def initialize(self) -> None:
        """Create the database and migrate it to the target version.

        Safe to call on an existing store.
        """
        async with self._lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
                current = self._read_version(conn)
                steps = self.migrations.plan(current, self.target_version)
                if steps:
                    self._run_migrations(conn, steps, self.target_version)
        logger.info(f"Initialized catalog store: {self._db_path}")

    async def exists(self) -> bool:
        """Check if the database file exists."""
        return self._db_path.exists()

    # Versioning

    def _read_version(self, conn: sqlite3.Connection) -> VersionTriple:
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'schema_version'").fetchone()
        return VersionTriple.parse(row[0]) if row else BASE_VERSION

    def _run_migrations(
        self,
        conn: sqlite3.Connection,
        steps: list[Migration],
        target: VersionTriple,
    ) -> None:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for step in steps:
                step.apply(conn)
                logger.info(
                    "Applied migration",
                    extra={"version": str(step.version), "description": step.description},
                )
            conn.execute(
                "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('schema_version', ?)",
                (str(target),),
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def get_version(self) -> VersionTriple:
        """Current schema version of the store."""
        with self._get_connection() as conn:
            return self._read_version(conn)

    async def apply_migrations(self, target: VersionTriple) -> list[Migration]:
        """Migrate the store up to target.

        Steps known to the registry are applied in order; the recorded version
        becomes target even when the remaining difference needs no DDL.

        Args:
            target: Version to migrate to

        Returns:
            Migrations that were executed

        Raises:
            VersionIncompatibleError: If target has a different major version
        """
        with self._get_connection() as conn:
            current = self._read_version(conn)
            steps = self.migrations.plan(current, target)
            if target > current:
                self._run_migrations(conn, steps, target)
        return steps

    # Records

    def _row_to_record(self, row: sqlite3.Row) -> CatalogRecord:
        return CatalogRecord(
            record_id=row["record_id"],
            kind=row["kind"],
            payload=json.loads(row["payload_json"]),
            author=row["author"],
            version=row["version"],
            updated_at=row["updated_at"],
            base_version=row["base_version"],
        )

    def _write_record(self, conn: sqlite3.Connection, record: CatalogRecord) -> None:
        conn.execute(
            """
            INSERT INTO catalog_records (record_id, kind, payload_json, author,
                                         version, base_version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(record_id) DO UPDATE SET
                kind = excluded.kind,
                payload_json = excluded.payload_json,
                author = excluded.author,
                version = excluded.version,
                base_version = excluded.base_version,
                updated_at = excluded.updated_at
            """,
            (
                record.record_id,
                record.kind,
                json.dumps(record.payload, sort_keys=True),
                record.author,
                record.version,
                record.base_version,
                record.updated_at,
            ),
        )

    async def put_record(
        self,
        record_id: str,
        kind: str,
        payload: dict[str, Any],
        author: str,
        updated_at: int | None = None,
    ) -> CatalogRecord:
        """Create or replace a record as a local mutation.

        The version counter is bumped above both the current version and the
        base version, so the change is pending until the next successful sync.

        Args:
            record_id: Record identifier
            kind: "tool" or "function"
            payload: Record content
            author: Actor performing the write
            updated_at: Optional modification timestamp

        Returns:
            The stored record

        Raises:
            ValueError: If kind is not a known record kind
        """
        if kind not in RECORD_KINDS:
            raise ValueError(f"Unknown record kind '{kind}'. Must be one of: {RECORD_KINDS}")

        now = updated_at or _now_ms()

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM catalog_records WHERE record_id = ?", (record_id,)
            ).fetchone()

            if row is None:
                record = CatalogRecord(
                    record_id=record_id,
                    kind=kind,
                    payload=payload,
                    author=author,
                    version=1,
                    updated_at=now,
                    base_version=None,
                )
            else:
                current = self._row_to_record(row)
                record = replace(
                    current,
                    kind=kind,
                    payload=payload,
                    author=author,
                    version=max(current.version, current.base_version or 0) + 1,
                    updated_at=now,
                )
            self._write_record(conn, record)

        logger.debug(
            "Stored catalog record",
            extra={"record_id": record_id, "kind": kind, "version": record.version},
        )
        return record

    async def get_record(self, record_id: str) -> CatalogRecord | None:
        """Get a record by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM catalog_records WHERE record_id = ?", (record_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    async def list_records(self, kind: str | None = None) -> list[CatalogRecord]:
        """List records, optionally filtered by kind, ordered by id."""
        with self._get_connection() as conn:
            if kind is not None:
                cursor = conn.execute(
                    "SELECT * FROM catalog_records WHERE kind = ? ORDER BY record_id", (kind,)
                )
            else:
                cursor = conn.execute("SELECT * FROM catalog_records ORDER BY record_id")
            return [self._row_to_record(row) for row in cursor.fetchall()]

    async def local_state(self) -> dict[str, CatalogRecord]:
        """All records keyed by id, including their base versions."""
        return {r.record_id: r for r in await self.list_records()}

    async def pending_changes(self) -> dict[str, CatalogRecord]:
        """Records with local mutations not yet in the remote catalog."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM catalog_records
                WHERE base_version IS NULL OR version != base_version
                ORDER BY record_id
                """
            )
            return {row["record_id"]: self._row_to_record(row) for row in cursor.fetchall()}

    async def seed_records(self, records: Iterable[CatalogRecord]) -> int:
        """Insert seed records as already-synced baseline values.

        Seed records are stored clean (base_version == version) so any remote
        value with a higher version fast-forwards over them.

        Returns:
            Number of records written
        """
        count = 0
        with self._transaction() as conn:
            for record in records:
                self._write_record(conn, replace(record, base_version=record.version))
                count += 1
        return count

    # Sync publication

    async def publish(
        self,
        records: Mapping[str, CatalogRecord],
        conflicts: Iterable[RecordConflict],
        observed: Mapping[str, int],
        remote_generation: int | None = None,
        synced_at: int | None = None,
        remote_adopted: Collection[str] = (),
    ) -> PublishResult:
        """Atomically replace local state with a merged (and uploaded) catalog.

        Records whose local version no longer matches the version observed
        when the merge started were mutated during the cycle; they keep their
        local content and stay pending. They are rebased on top of the merged
        version, unless the merge adopted a remote change for them: that edit
        was made without seeing the remote value, so it keeps its old base and
        the next cycle reports the double write as a conflict.

        Args:
            records: Merged catalog keyed by id
            conflicts: Conflicts to append to the side log
            observed: Local versions captured before the merge
            remote_generation: Generation of the remote catalog now in place
            synced_at: Sync timestamp (Unix ms)
            remote_adopted: Ids whose merged value came from a remote change

        Returns:
            PublishResult with write/rebase counts
        """
        now = synced_at or _now_ms()
        written = 0
        rebased: list[str] = []
        conflicts_recorded = 0

        with self._transaction() as conn:
            for record_id, merged in records.items():
                row = conn.execute(
                    "SELECT * FROM catalog_records WHERE record_id = ?", (record_id,)
                ).fetchone()
                current = self._row_to_record(row) if row else None

                if current is not None and observed.get(record_id) != current.version:
                    self._write_record(
                        conn,
                        replace(
                            current,
                            version=max(current.version, merged.version) + 1,
                            base_version=(
                                current.base_version
                                if record_id in remote_adopted
                                else merged.version
                            ),
                        ),
                    )
                    rebased.append(record_id)
                    continue

                self._write_record(conn, replace(merged, base_version=merged.version))
                written += 1

            for conflict in conflicts:
                self._insert_conflict(conn, conflict)
                conflicts_recorded += 1

            self._set_meta(conn, "last_sync_at", str(now))
            if remote_generation is not None:
                self._set_meta(conn, "remote_generation", str(remote_generation))

        if rebased:
            logger.info(
                "Rebased records mutated during sync",
                extra={"record_ids": rebased},
            )

        return PublishResult(
            written=written,
            rebased=rebased,
            conflicts_recorded=conflicts_recorded,
        )

    async def fast_forward(self, remote_records: Mapping[str, CatalogRecord]) -> int:
        """Adopt remote values for records without pending local changes.

        Used by the read-only path when another instance holds the lease: no
        merge, no conflicts, pending local records are left untouched.

        Returns:
            Number of records updated or inserted
        """
        updated = 0
        with self._transaction() as conn:
            for record_id, remote in remote_records.items():
                row = conn.execute(
                    "SELECT * FROM catalog_records WHERE record_id = ?", (record_id,)
                ).fetchone()
                if row is not None:
                    current = self._row_to_record(row)
                    if current.is_pending or current.version == remote.version:
                        continue
                self._write_record(conn, replace(remote, base_version=remote.version))
                updated += 1
        return updated

    # Conflicts

    def _insert_conflict(self, conn: sqlite3.Connection, conflict: RecordConflict) -> None:
        cursor = conn.execute(
            """
            INSERT INTO sync_conflicts (record_id, local_json, remote_json, base_version,
                                        resolved_with, detected_at, status)
            VALUES (?, ?, ?, ?, ?, ?, 'open')
            """,
            (
                conflict.record_id,
                json.dumps(conflict.local.to_dict(), sort_keys=True),
                json.dumps(conflict.remote.to_dict(), sort_keys=True),
                conflict.base_version,
                conflict.resolved_with,
                conflict.detected_at,
            ),
        )
        conflict.conflict_id = cursor.lastrowid

    async def list_conflicts(self, status: str | None = "open") -> list[RecordConflict]:
        """List conflicts from the side log, newest first.

        Args:
            status: Filter by status ("open", "acknowledged") or None for all
        """
        with self._get_connection() as conn:
            if status is None:
                cursor = conn.execute(
                    "SELECT * FROM sync_conflicts ORDER BY conflict_id DESC"
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM sync_conflicts WHERE status = ? ORDER BY conflict_id DESC",
                    (status,),
                )

            return [
                RecordConflict(
                    record_id=row["record_id"],
                    local=CatalogRecord.from_dict(json.loads(row["local_json"])),
                    remote=CatalogRecord.from_dict(json.loads(row["remote_json"])),
                    base_version=row["base_version"],
                    resolved_with=row["resolved_with"],
                    detected_at=row["detected_at"],
                    conflict_id=row["conflict_id"],
                    status=row["status"],
                    acknowledged_by=row["acknowledged_by"],
                )
                for row in cursor.fetchall()
            ]

    async def acknowledge_conflict(self, conflict_id: int, actor: str) -> bool:
        """Mark a conflict as reviewed.

        Acknowledging does not re-apply the losing variant; a fresh write is
        required for that.

        Returns:
            True if an open conflict was acknowledged
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_conflicts
                SET status = 'acknowledged', acknowledged_at = ?, acknowledged_by = ?
                WHERE conflict_id = ? AND status = 'open'
                """,
                (_now_ms(), actor, conflict_id),
            )
            return cursor.rowcount > 0

    async def conflict_count(self) -> int:
        """Number of open conflicts."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM sync_conflicts WHERE status = 'open'"
            ).fetchone()
            return row[0]

    # Metadata

    def _set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO store_meta (key, value) VALUES (?, ?)", (key, value)
        )

    async def get_meta(self, key: str) -> str | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM store_meta WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    async def get_stats(self) -> dict[str, int]:
        """Counts of records, pending changes and open conflicts."""
        with self._get_connection() as conn:
            stats = {}

            cursor = conn.execute("SELECT COUNT(*) FROM catalog_records")
            stats["records"] = cursor.fetchone()[0]

            cursor = conn.execute(
                "SELECT COUNT(*) FROM catalog_records "
                "WHERE base_version IS NULL OR version != base_version"
            )
            stats["pending"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(*) FROM sync_conflicts WHERE status = 'open'")
            stats["open_conflicts"] = cursor.fetchone()[0]

            return stats

    # Health and file-level operations

    async def check_integrity(self) -> list[str]:
        """Run structural health checks.

        Returns:
            Problems found; empty if the store is healthy
        """
        if not self._db_path.exists():
            return [f"database file missing: {self._db_path}"]

        try:
            with self._get_connection() as conn:
                results = [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]
                problems = [] if results == ["ok"] else results

                tables = {
                    row[0]
                    for row in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type = 'table'"
                    ).fetchall()
                }
                for table in REQUIRED_TABLES:
                    if table not in tables:
                        problems.append(f"missing table: {table}")

                if "store_meta" in tables:
                    self._read_version(conn)
                return problems

        except (sqlite3.DatabaseError, ValueError) as e:
            return [f"database unreadable: {e}"]

    def backup_to(self, dest_path: str | Path) -> None:
        """Create a consistent copy using the SQLite backup API (blocking)."""
        if not self._db_path.exists():
            raise CatalogNotInitializedError(f"Catalog database not found: {self._db_path}")

        source_conn = sqlite3.connect(str(self._db_path))
        dest_conn = sqlite3.connect(str(dest_path))

        try:
            source_conn.backup(dest_conn)
        finally:
            source_conn.close()
            dest_conn.close()

    def _remove_sidecars(self) -> None:
        for suffix in ("-wal", "-shm", "-journal"):
            sidecar = Path(str(self._db_path) + suffix)
            if sidecar.exists():
                sidecar.unlink()

    async def replace_with(self, source_path: str | Path) -> None:
        """Atomically replace the database file with source_path.

        The source file is moved, not copied.
        """
        async with self._lock:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._remove_sidecars()
            os.replace(str(source_path), str(self._db_path))
        logger.info(f"Replaced catalog database from {source_path}")

    async def reset(self) -> None:
        """Delete the database file and its sidecars."""
        async with self._lock:
            self._remove_sidecars()
            if self._db_path.exists():
                self._db_path.unlink()
        logger.warning(f"Deleted catalog database: {self._db_path}")
