"""
Integrity checks, backups and restore for the local catalog store.

The BackupManager snapshots the local SQLite store into the remote object
store before every remote overwrite and before every destructive recovery
action, and restores the most recent valid snapshot on demand.

Backup format:
    <prefix>/<instance_id>/ts=<unix_ms>.sqlite.gz

Each backup includes a manifest:
    <prefix>/<instance_id>/ts=<unix_ms>.manifest.json

Manifest contains:
    - snapshot_ts: When the backup was taken
    - schema_version: Local schema version at backup time
    - reason: Why the backup was taken (pre_upload, pre_restore, manual, ...)
    - checksum: SHA-256 of the uploaded (compressed) body
    - size_bytes: Uploaded size

Invariants:
    - Backups are consistent copies (SQLite backup API)
    - Manifests are written after the backup body
    - Restore verifies checksum and integrity before replacing the live file
    - Retention prunes the oldest backups first, restorable and forensic
      copies each against their own limit

How to change safely:
    - Add new manifest fields, don't remove existing ones
    - Test restore with old backups before format changes
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import json
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import IntegrityFailureError, NetworkFailureError
from ..remote.base import ObjectStore, ObjectStoreError
from ..store.catalog_store import CatalogStore

logger = logging.getLogger(__name__)

# Backups taken of a store that is about to be replaced; kept for forensics only
FORENSIC_REASONS = frozenset({"pre_restore", "pre_rebuild"})


@dataclass
class BackupSnapshot:
    """Information about a backup.

    Attributes:
        instance_id: Instance the backup belongs to
        snapshot_ts: Backup timestamp (Unix ms)
        key: Object key of the backup body
        size_bytes: Uploaded size in bytes
        checksum: SHA-256 of the uploaded body
        reason: Why the backup was taken
        schema_version: Local schema version at backup time
        compression: "gzip" or "none"
    """

    instance_id: str
    snapshot_ts: int
    key: str
    size_bytes: int
    checksum: str
    reason: str
    schema_version: str | None = None
    compression: str = "gzip"

    @property
    def manifest_key(self) -> str:
        return self.key.rsplit(".sqlite", 1)[0] + ".manifest.json"

    def to_manifest(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "snapshot_ts": self.snapshot_ts,
            "key": self.key,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "reason": self.reason,
            "schema_version": self.schema_version,
            "compression": self.compression,
        }

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> BackupSnapshot:
        return cls(
            instance_id=data["instance_id"],
            snapshot_ts=int(data["snapshot_ts"]),
            key=data["key"],
            size_bytes=int(data.get("size_bytes", 0)),
            checksum=data["checksum"],
            reason=data.get("reason", "unknown"),
            schema_version=data.get("schema_version"),
            compression=data.get("compression", "gzip"),
        )


class BackupManager:
    """Creates, lists, prunes and restores backups of the local store.

    Attributes:
        store: Local catalog store
        remote: Object store receiving the backups
        instance_id: Owner of the backups (part of the key)
        retention: Number of restorable backups kept
        forensic_retention: Number of pre_restore/pre_rebuild copies kept

    Example:
        >>> backups = BackupManager(store, remote, instance_id="instance-a")
        >>> snapshot = await backups.create(reason="pre_upload")
        >>> restored = await backups.restore_latest()
    """

    def __init__(
        self,
        store: CatalogStore,
        remote: ObjectStore,
        instance_id: str,
        prefix: str = "backups",
        retention: int = 5,
        forensic_retention: int = 2,
        compression: str = "gzip",
    ) -> None:
        """Initialize the backup manager.

        Args:
            store: CatalogStore instance
            remote: ObjectStore instance
            instance_id: This instance's identifier
            prefix: Key prefix for backups
            retention: Number of restorable backups kept (oldest pruned first)
            forensic_retention: Number of forensic copies kept
            compression: Compression algorithm ("gzip" or "none")
        """
        self.store = store
        self.remote = remote
        self.instance_id = instance_id
        self.prefix = prefix.rstrip("/")
        self.retention = retention
        self.forensic_retention = forensic_retention
        self.compression = compression
        self._last_ts = 0

    @property
    def instance_prefix(self) -> str:
        return f"{self.prefix}/{self.instance_id}/"

    async def check_integrity(self) -> list[str]:
        """Structural health of the local store; empty if healthy."""
        return await self.store.check_integrity()

    def _next_ts(self) -> int:
        ts = max(int(time.time() * 1000), self._last_ts + 1)
        self._last_ts = ts
        return ts

    async def create(self, reason: str = "manual") -> BackupSnapshot:
        """Back up the local store to the remote object store.

        Args:
            reason: Why the backup is taken (recorded in the manifest)

        Returns:
            BackupSnapshot describing the uploaded backup

        Raises:
            IntegrityFailureError: If the local store cannot be copied
            NetworkFailureError: If the upload fails
        """
        snapshot_ts = self._next_ts()
        loop = asyncio.get_event_loop()

        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp_file:
            tmp_path = Path(tmp_file.name)

        try:
            try:
                await loop.run_in_executor(None, self.store.backup_to, str(tmp_path))
                schema_version = str(await self.store.get_version())
            except Exception as e:
                raise IntegrityFailureError(
                    f"Cannot back up local store: {e}", problems=[str(e)]
                ) from e

            body = await loop.run_in_executor(None, self._read_body, str(tmp_path))
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        extension = ".sqlite.gz" if self.compression == "gzip" else ".sqlite"
        snapshot = BackupSnapshot(
            instance_id=self.instance_id,
            snapshot_ts=snapshot_ts,
            key=f"{self.instance_prefix}ts={snapshot_ts}{extension}",
            size_bytes=len(body),
            checksum=hashlib.sha256(body).hexdigest(),
            reason=reason,
            schema_version=schema_version,
            compression=self.compression,
        )

        try:
            await self.remote.put(snapshot.key, body, content_type="application/x-sqlite3")
            await self.remote.put(
                snapshot.manifest_key,
                json.dumps(snapshot.to_manifest(), indent=2).encode("utf-8"),
                content_type="application/json",
            )
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Backup upload failed: {e}", operation="backup") from e

        logger.info(
            "Created backup",
            extra={
                "instance_id": self.instance_id,
                "snapshot_ts": snapshot_ts,
                "size_bytes": snapshot.size_bytes,
                "key": snapshot.key,
                "reason": reason,
            },
        )

        await self.prune()
        return snapshot

    def _read_body(self, path: str) -> bytes:
        data = Path(path).read_bytes()
        if self.compression == "gzip":
            return gzip.compress(data)
        return data

    async def list_snapshots(self) -> list[BackupSnapshot]:
        """Backups of this instance, newest first.

        Raises:
            NetworkFailureError: If the object store is unreachable
        """
        try:
            objects = await self.remote.list_prefix(self.instance_prefix)
            snapshots = []
            for obj in objects:
                if not obj.key.endswith(".manifest.json"):
                    continue
                manifest = await self.remote.get(obj.key)
                if manifest is None:
                    continue
                try:
                    snapshots.append(
                        BackupSnapshot.from_manifest(json.loads(manifest.body.decode("utf-8")))
                    )
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable backup manifest {obj.key}: {e}")
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Cannot list backups: {e}", operation="list") from e

        return sorted(snapshots, key=lambda s: s.snapshot_ts, reverse=True)

    async def prune(self) -> int:
        """Delete backups beyond the retention counts, oldest first.

        Restorable backups and forensic copies are counted separately, so a
        forensic copy never evicts a backup that restore_latest could use.
        Failures are logged and retried on the next prune.

        Returns:
            Number of backups deleted
        """
        try:
            snapshots = await self.list_snapshots()
        except NetworkFailureError as e:
            logger.warning(f"Skipping backup pruning: {e}")
            return 0

        restorable = [s for s in snapshots if s.reason not in FORENSIC_REASONS]
        forensic = [s for s in snapshots if s.reason in FORENSIC_REASONS]
        expired = restorable[self.retention :] + forensic[self.forensic_retention :]

        deleted = 0
        for snapshot in expired:
            try:
                await self.remote.delete(snapshot.key)
                await self.remote.delete(snapshot.manifest_key)
                deleted += 1
            except ObjectStoreError as e:
                logger.warning(f"Failed to prune backup {snapshot.key}: {e}")

        if deleted:
            logger.info(f"Pruned {deleted} old backups", extra={"instance_id": self.instance_id})
        return deleted

    async def restore(self, snapshot: BackupSnapshot) -> None:
        """Restore the local store from a specific backup.

        The backup is downloaded to a temporary file next to the live
        database, verified, then atomically moved into place.

        Raises:
            IntegrityFailureError: If the backup is missing, corrupt or unhealthy
            NetworkFailureError: If the download fails
        """
        try:
            obj = await self.remote.get(snapshot.key)
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Backup download failed: {e}", operation="get") from e

        if obj is None:
            raise IntegrityFailureError(f"Backup body missing: {snapshot.key}")

        checksum = hashlib.sha256(obj.body).hexdigest()
        if checksum != snapshot.checksum:
            raise IntegrityFailureError(
                f"Backup checksum mismatch for {snapshot.key}",
                problems=[f"expected {snapshot.checksum}, got {checksum}"],
            )

        db_path = self.store.db_path
        tmp_path = db_path.with_name(db_path.name + ".restore")
        try:
            content = obj.body
            if snapshot.compression == "gzip":
                try:
                    content = gzip.decompress(content)
                except (OSError, EOFError) as e:
                    raise IntegrityFailureError(f"Backup is not valid gzip: {e}") from e

            db_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(content)

            problems = await CatalogStore(tmp_path, wal_mode=False).check_integrity()
            if problems:
                raise IntegrityFailureError(
                    f"Backup {snapshot.key} failed integrity check", problems=problems
                )

            await self.store.replace_with(tmp_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        logger.info(
            "Restored local store from backup",
            extra={"key": snapshot.key, "snapshot_ts": snapshot.snapshot_ts},
        )

    async def restore_latest(self) -> BackupSnapshot:
        """Restore the most recent valid backup.

        Backups that fail verification are skipped, as are forensic copies
        taken of an already damaged store.

        Returns:
            The backup that was restored

        Raises:
            IntegrityFailureError: If no valid backup exists
            NetworkFailureError: If backups cannot be listed
        """
        snapshots = await self.list_snapshots()
        errors: list[str] = []

        for snapshot in snapshots:
            if snapshot.reason in FORENSIC_REASONS:
                continue
            try:
                await self.restore(snapshot)
                return snapshot
            except IntegrityFailureError as e:
                logger.warning(f"Skipping invalid backup {snapshot.key}: {e.message}")
                errors.append(f"{snapshot.key}: {e.message}")

        raise IntegrityFailureError("No valid backup available", problems=errors)
