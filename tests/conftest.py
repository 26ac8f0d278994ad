"""
Shared fixtures for the catalog sync tests.

Every simulated instance gets its own data directory and shares one
InMemoryObjectStore, which stands in for the S3 bucket.
"""

import tempfile

import pytest

from toolhub.catalog_sync.config import (
    BackupConfig,
    RemoteBackend,
    SeedConfig,
    ServerConfig,
    StorageConfig,
    SyncConfig,
)
from toolhub.catalog_sync.main import build_components
from toolhub.catalog_sync.remote import InMemoryObjectStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def remote():
    """Shared in-memory object store."""
    store = InMemoryObjectStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def make_config(data_dir):
    """Factory for per-instance configuration."""

    def _make(
        instance_id,
        seed_path=None,
        wal_mode=True,
        retention=5,
        conflict_policy="remote_wins",
    ):
        return ServerConfig(
            instance_id=instance_id,
            remote_backend=RemoteBackend.MEMORY,
            storage=StorageConfig(data_dir=f"{data_dir}/{instance_id}", wal_mode=wal_mode),
            sync=SyncConfig(conflict_policy=conflict_policy),
            backup=BackupConfig(retention=retention),
            seed=SeedConfig(seed_path=seed_path),
        )

    return _make


@pytest.fixture
def make_instance(make_config, remote):
    """Factory for wired, initialized instances sharing the remote store."""

    async def _make(instance_id, **kwargs):
        components = build_components(make_config(instance_id, **kwargs), remote=remote)
        await components.store.initialize()
        return components

    return _make
