"""
Unit tests for the in-memory object store.

Tests cover:
- Basic get/put/head/delete/list operations
- Conditional write semantics shared with the S3 backend
- Outage injection
"""

import pytest

from toolhub.catalog_sync.remote import (
    InMemoryObjectStore,
    ObjectStore,
    ObjectStoreUnavailableError,
    PreconditionFailedError,
)


class TestInMemoryObjectStore:
    """Tests for InMemoryObjectStore."""

    @pytest.fixture
    async def remote(self):
        store = InMemoryObjectStore()
        await store.connect()
        return store

    def test_implements_protocol(self):
        assert isinstance(InMemoryObjectStore(), ObjectStore)

    @pytest.mark.asyncio
    async def test_connect_close(self):
        store = InMemoryObjectStore()
        assert not store.is_connected

        await store.connect()
        assert store.is_connected

        await store.close()
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_put_get_roundtrip_with_metadata(self, remote):
        etag = await remote.put("k", b"v", metadata={"schema-version": "1.2.0"})

        obj = await remote.get("k")
        assert obj.body == b"v"
        assert obj.etag == etag
        assert obj.info.metadata == {"schema-version": "1.2.0"}

        info = await remote.head("k")
        assert info.size_bytes == 1
        assert info.etag == etag

    @pytest.mark.asyncio
    async def test_missing_key(self, remote):
        assert await remote.get("missing") is None
        assert await remote.head("missing") is None
        await remote.delete("missing")

    @pytest.mark.asyncio
    async def test_etag_changes_on_every_write(self, remote):
        first = await remote.put("k", b"same")
        second = await remote.put("k", b"same")
        assert first != second

    @pytest.mark.asyncio
    async def test_if_none_match_creates_only_once(self, remote):
        await remote.put("k", b"a", if_none_match=True)

        with pytest.raises(PreconditionFailedError):
            await remote.put("k", b"b", if_none_match=True)
        assert (await remote.get("k")).body == b"a"

    @pytest.mark.asyncio
    async def test_if_match_requires_current_etag(self, remote):
        etag = await remote.put("k", b"a")
        await remote.put("k", b"b", if_match=etag)

        with pytest.raises(PreconditionFailedError):
            await remote.put("k", b"c", if_match=etag)

    @pytest.mark.asyncio
    async def test_if_match_on_missing_key_fails(self, remote):
        with pytest.raises(PreconditionFailedError):
            await remote.put("k", b"a", if_match='"abc"')

    @pytest.mark.asyncio
    async def test_conditional_delete(self, remote):
        etag = await remote.put("k", b"a")
        await remote.put("k", b"b")

        with pytest.raises(PreconditionFailedError):
            await remote.delete("k", if_match=etag)

        current = await remote.head("k")
        await remote.delete("k", if_match=current.etag)
        assert await remote.get("k") is None

    @pytest.mark.asyncio
    async def test_list_prefix_sorted(self, remote):
        for key in ["b/2", "a/1", "b/1", "c"]:
            await remote.put(key, b"x")

        assert [o.key for o in await remote.list_prefix("b/")] == ["b/1", "b/2"]

    @pytest.mark.asyncio
    async def test_outage_injection(self, remote):
        await remote.put("k", b"a")
        remote.set_available(False)

        with pytest.raises(ObjectStoreUnavailableError):
            await remote.get("k")

        remote.set_available(True)
        remote.failing_operations.add("put")

        assert (await remote.get("k")).body == b"a"
        with pytest.raises(ObjectStoreUnavailableError):
            await remote.put("k", b"b")
        assert remote.operation_counts["put"] == 2
