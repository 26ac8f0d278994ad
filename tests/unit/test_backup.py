"""
Unit tests for the backup manager.

Tests cover:
- Backup creation and manifests
- Rolling retention, with forensic copies counted apart
- Restore with checksum and integrity verification
- Fallback to older backups when the newest is damaged
"""

import json
from pathlib import Path

import pytest

from toolhub.catalog_sync.errors import IntegrityFailureError, NetworkFailureError
from toolhub.catalog_sync.store.catalog_store import CatalogStore
from toolhub.catalog_sync.sync.backup import BackupManager


class TestBackupManager:
    """Tests for BackupManager."""

    @pytest.fixture
    async def store(self, data_dir):
        store = CatalogStore(Path(data_dir) / "catalog.db")
        await store.initialize()
        return store

    @pytest.fixture
    def backups(self, store, remote):
        return BackupManager(store, remote, instance_id="instance-a", retention=3)

    @pytest.mark.asyncio
    async def test_create_uploads_body_and_manifest(self, backups, remote):
        snapshot = await backups.create(reason="pre_upload")

        assert snapshot.key.startswith("backups/instance-a/ts=")
        assert snapshot.key.endswith(".sqlite.gz")
        assert snapshot.manifest_key in remote.keys()

        manifest = json.loads((await remote.get(snapshot.manifest_key)).body)
        assert manifest["checksum"] == snapshot.checksum
        assert manifest["reason"] == "pre_upload"
        assert manifest["schema_version"] == "1.2.0"

    @pytest.mark.asyncio
    async def test_list_snapshots_newest_first(self, backups):
        first = await backups.create()
        second = await backups.create()

        snapshots = await backups.list_snapshots()
        assert [s.key for s in snapshots] == [second.key, first.key]

    @pytest.mark.asyncio
    async def test_retention_prunes_oldest(self, backups, remote):
        created = [await backups.create() for _ in range(5)]

        snapshots = await backups.list_snapshots()
        assert [s.key for s in snapshots] == [c.key for c in reversed(created[2:])]
        assert created[0].key not in remote.keys()
        assert created[0].manifest_key not in remote.keys()

    @pytest.mark.asyncio
    async def test_restore_latest_recovers_data(self, backups, store):
        await store.put_record("r1", "tool", {"query": "SELECT 1"}, "user:a")
        await backups.create()
        await store.put_record("r2", "tool", {"query": "SELECT 2"}, "user:a")

        restored = await backups.restore_latest()

        assert restored.reason == "manual"
        assert [r.record_id for r in await store.list_records()] == ["r1"]
        assert await store.check_integrity() == []

    @pytest.mark.asyncio
    async def test_restore_skips_corrupt_backup(self, backups, store, remote):
        await store.put_record("r1", "tool", {}, "user:a")
        good = await backups.create()
        await store.put_record("r2", "tool", {}, "user:a")
        bad = await backups.create()
        remote.corrupt(bad.key, b"garbage")

        restored = await backups.restore_latest()

        assert restored.key == good.key
        assert [r.record_id for r in await store.list_records()] == ["r1"]

    @pytest.mark.asyncio
    async def test_restore_skips_forensic_copies(self, backups, store):
        await store.put_record("r1", "tool", {}, "user:a")
        good = await backups.create(reason="pre_upload")
        await backups.create(reason="pre_restore")

        assert (await backups.restore_latest()).key == good.key

    @pytest.mark.asyncio
    async def test_restore_without_backups_fails(self, backups):
        with pytest.raises(IntegrityFailureError):
            await backups.restore_latest()

    @pytest.mark.asyncio
    async def test_restore_replaces_damaged_file(self, backups, store):
        await store.put_record("r1", "tool", {}, "user:a")
        await backups.create()
        for suffix in ("", "-wal", "-shm"):
            path = Path(str(store.db_path) + suffix)
            if path.exists():
                path.write_bytes(b"\x00" * 4096)
        assert await store.check_integrity() != []

        await backups.restore_latest()

        assert await store.check_integrity() == []
        assert (await store.get_record("r1")) is not None

    @pytest.mark.asyncio
    async def test_create_fails_when_remote_down(self, backups, remote):
        remote.set_available(False)

        with pytest.raises(NetworkFailureError):
            await backups.create()

    @pytest.mark.asyncio
    async def test_uncompressed_backups(self, store, remote):
        backups = BackupManager(store, remote, instance_id="b", compression="none")
        await store.put_record("r1", "tool", {}, "user:a")

        snapshot = await backups.create()
        assert snapshot.key.endswith(".sqlite")

        await store.put_record("r2", "tool", {}, "user:a")
        await backups.restore(snapshot)
        assert [r.record_id for r in await store.list_records()] == ["r1"]

    @pytest.mark.asyncio
    async def test_forensic_copy_does_not_evict_restorable_backup(self, store, remote):
        backups = BackupManager(store, remote, instance_id="a", retention=1)
        await store.put_record("r1", "tool", {}, "user:a")
        good = await backups.create(reason="pre_upload")
        await backups.create(reason="pre_restore")

        reasons = {s.reason for s in await backups.list_snapshots()}
        assert reasons == {"pre_upload", "pre_restore"}
        assert (await backups.restore_latest()).key == good.key

    @pytest.mark.asyncio
    async def test_forensic_copies_pruned_separately(self, store, remote):
        backups = BackupManager(
            store, remote, instance_id="a", retention=1, forensic_retention=1
        )
        good = await backups.create(reason="pre_upload")
        await backups.create(reason="pre_rebuild")
        newest = await backups.create(reason="pre_restore")

        snapshots = await backups.list_snapshots()
        assert [s.key for s in snapshots] == [newest.key, good.key]
