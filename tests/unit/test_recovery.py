"""
Unit tests for the recovery controller.

Tests cover:
- Escalation order (restore -> seed rebuild -> offline)
- Remote probing for network failures
- Version incompatibility handling
- handle() never raising
"""

from pathlib import Path

import pytest

from toolhub.catalog_sync.errors import FailureKind
from toolhub.catalog_sync.store.catalog_store import CatalogStore
from toolhub.catalog_sync.sync.backup import BackupManager
from toolhub.catalog_sync.sync.recovery import RecoveryController, RecoveryOutcome

SEED_YAML = """
version: 1
tools:
  - id: top_customers
    description: Top customers by revenue
    query: SELECT * FROM customers
functions:
  - id: revenue
    body: SUM(amount)
"""


def damage(store):
    for suffix in ("", "-wal", "-shm"):
        path = Path(str(store.db_path) + suffix)
        if path.exists():
            path.write_bytes(b"\x00" * 4096)


class TestRecoveryController:
    """Tests for RecoveryController."""

    @pytest.fixture
    async def store(self, data_dir):
        store = CatalogStore(Path(data_dir) / "catalog.db", wal_mode=False)
        await store.initialize()
        return store

    @pytest.fixture
    def seed_path(self, data_dir):
        path = Path(data_dir) / "seed.yaml"
        path.write_text(SEED_YAML)
        return path

    @pytest.fixture
    def backups(self, store, remote):
        return BackupManager(store, remote, instance_id="instance-a")

    def controller(self, store, backups, remote, seed_path=None):
        return RecoveryController(store, backups, remote, seed_path=seed_path)

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, store, backups, remote):
        report = await self.controller(store, backups, remote).handle(FailureKind.LEASE_EXPIRED)

        assert report.outcome == RecoveryOutcome.RETRIED
        assert report.data_loss is False

    @pytest.mark.asyncio
    async def test_unreachable_remote_degrades_offline(self, store, backups, remote):
        await store.put_record("r1", "tool", {}, "user:a")
        remote.set_available(False)

        report = await self.controller(store, backups, remote).handle(FailureKind.NETWORK_FAILURE)

        assert report.outcome == RecoveryOutcome.DEGRADED_OFFLINE
        assert report.manual_intervention is False
        # Local state stays readable
        assert (await store.get_record("r1")) is not None

    @pytest.mark.asyncio
    async def test_version_incompatible_needs_operator(self, store, backups, remote):
        report = await self.controller(store, backups, remote).handle(
            FailureKind.VERSION_INCOMPATIBLE
        )

        assert report.outcome == RecoveryOutcome.DEGRADED_OFFLINE
        assert report.manual_intervention is True

    @pytest.mark.asyncio
    async def test_corrupt_store_restored_from_backup(self, store, backups, remote):
        await store.put_record("r1", "tool", {"query": "SELECT 1"}, "user:a")
        snapshot = await backups.create(reason="pre_upload")
        damage(store)

        report = await self.controller(store, backups, remote).handle(
            FailureKind.INTEGRITY_FAILURE
        )

        assert report.outcome == RecoveryOutcome.RESTORED
        assert report.backup_key == snapshot.key
        assert await store.check_integrity() == []
        assert (await store.get_record("r1")).payload == {"query": "SELECT 1"}

    @pytest.mark.asyncio
    async def test_no_backup_rebuilds_from_seed(self, store, backups, remote, seed_path):
        damage(store)

        report = await self.controller(store, backups, remote, seed_path).handle(
            FailureKind.INTEGRITY_FAILURE
        )

        assert report.outcome == RecoveryOutcome.REBUILT_FROM_SEED
        assert report.data_loss is True
        records = await store.list_records()
        assert [(r.record_id, r.kind) for r in records] == [
            ("revenue", "function"),
            ("top_customers", "tool"),
        ]
        assert all(not r.is_pending for r in records)

    @pytest.mark.asyncio
    async def test_remote_down_during_restore_falls_back_to_seed(
        self, store, backups, remote, seed_path
    ):
        await backups.create()
        damage(store)
        remote.set_available(False)

        report = await self.controller(store, backups, remote, seed_path).handle(
            FailureKind.INTEGRITY_FAILURE
        )

        assert report.outcome == RecoveryOutcome.REBUILT_FROM_SEED

    @pytest.mark.asyncio
    async def test_nothing_left_degrades_without_raising(self, store, backups, remote):
        damage(store)

        report = await self.controller(store, backups, remote).handle(
            FailureKind.INTEGRITY_FAILURE
        )

        assert report.outcome == RecoveryOutcome.DEGRADED_OFFLINE
        assert report.manual_intervention is True

    @pytest.mark.asyncio
    async def test_bad_seed_degrades_without_raising(self, store, backups, remote, data_dir):
        damage(store)
        bad_seed = Path(data_dir) / "bad.yaml"
        bad_seed.write_text("tools: [ {id: ")

        report = await self.controller(store, backups, remote, bad_seed).handle(
            FailureKind.INTEGRITY_FAILURE
        )

        assert report.outcome == RecoveryOutcome.DEGRADED_OFFLINE

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, store, backups, remote):
        async def explode():
            raise RuntimeError("boom")

        store.check_integrity = explode

        report = await self.controller(store, backups, remote).handle(FailureKind.INTERNAL)

        assert report.outcome == RecoveryOutcome.DEGRADED_OFFLINE
        assert "boom" in report.detail
