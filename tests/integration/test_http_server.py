"""
Integration tests for the HTTP status surface.

Uses aiohttp's test server against a wired instance backed by the shared
in-memory object store.
"""

import pytest
from aiohttp import test_utils

from toolhub.catalog_sync.api import create_http_app
from toolhub.catalog_sync.main import build_components


async def make_conflict(make_instance):
    a = await make_instance("instance-a")
    b = await make_instance("instance-b")
    await a.store.put_record("revenue", "function", {"body": "v1"}, "user:alice")
    await a.synchronizer.run_cycle()
    await b.synchronizer.run_cycle()
    await a.store.put_record("revenue", "function", {"body": "alice"}, "user:alice")
    await b.store.put_record("revenue", "function", {"body": "bob"}, "user:bob")
    await a.synchronizer.run_cycle()
    await b.synchronizer.run_cycle()
    return b


@pytest.fixture
async def http_client():
    """Factory for test clients bound to an instance; closed on teardown."""
    clients = []

    async def _make(components):
        app = create_http_app(components.synchronizer, components.store)
        client = test_utils.TestClient(test_utils.TestServer(app))
        await client.start_server()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.close()


class TestHttpServer:
    """Tests for the status endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, make_instance, http_client):
        client = await http_client(await make_instance("instance-a"))

        resp = await client.get("/v1/health")

        assert resp.status == 200
        data = await resp.json()
        assert data["healthy"] is True
        assert data["instance_id"] == "instance-a"
        assert data["last_outcome"] is None
        assert data["pending_conflicts"] == 0

    @pytest.mark.asyncio
    async def test_health_unavailable_without_store(self, make_config, remote, http_client):
        components = build_components(make_config("uninitialized"), remote=remote)
        client = await http_client(components)

        resp = await client.get("/v1/health")

        assert resp.status == 503
        assert (await resp.json())["healthy"] is False

    @pytest.mark.asyncio
    async def test_conflicts_unavailable_without_store(self, make_config, remote, http_client):
        components = build_components(make_config("uninitialized"), remote=remote)
        client = await http_client(components)

        resp = await client.get("/v1/sync/conflicts")

        assert resp.status == 503
        assert (await resp.json())["error_code"] == "STORE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_run_then_status(self, make_instance, http_client):
        a = await make_instance("instance-a")
        await a.store.put_record("t1", "tool", {"query": "SELECT 1"}, "user:alice")
        client = await http_client(a)

        resp = await client.post("/v1/sync/run", headers={"X-Actor": "ops"})

        assert resp.status == 200
        result = await resp.json()
        assert result["status"] == "success"
        assert result["uploaded"] is True
        assert result["generation"] == 1

        resp = await client.get("/v1/sync/status")
        status = await resp.json()
        assert status["last_outcome"] == "success"
        assert status["pending_changes"] == 0
        assert status["cycles"] == 1
        assert status["offline"] is False

    @pytest.mark.asyncio
    async def test_list_and_acknowledge_conflicts(self, make_instance, http_client):
        client = await http_client(await make_conflict(make_instance))

        resp = await client.get("/v1/sync/conflicts")
        data = await resp.json()
        assert data["count"] == 1
        conflict = data["conflicts"][0]
        assert conflict["record_id"] == "revenue"
        assert conflict["local"]["payload"] == {"body": "bob"}

        resp = await client.post(
            f"/v1/sync/conflicts/{conflict['conflict_id']}/ack",
            headers={"X-Actor": "user:bob"},
        )
        assert resp.status == 200

        resp = await client.get("/v1/sync/conflicts")
        assert (await resp.json())["count"] == 0

        resp = await client.get("/v1/sync/conflicts?status=all")
        conflicts = (await resp.json())["conflicts"]
        assert conflicts[0]["status"] == "acknowledged"
        assert conflicts[0]["acknowledged_by"] == "user:bob"

    @pytest.mark.asyncio
    async def test_ack_requires_actor(self, make_instance, http_client):
        client = await http_client(await make_instance("instance-a"))

        resp = await client.post("/v1/sync/conflicts/1/ack")

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_ack_unknown_conflict(self, make_instance, http_client):
        client = await http_client(await make_instance("instance-a"))

        resp = await client.post("/v1/sync/conflicts/999/ack", headers={"X-Actor": "ops"})
        assert resp.status == 404

        resp = await client.post("/v1/sync/conflicts/abc/ack", headers={"X-Actor": "ops"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, make_instance, http_client):
        client = await http_client(await make_instance("instance-a"))

        resp = await client.get("/v1/sync/conflicts?status=closed")

        assert resp.status == 400
        assert (await resp.json())["error_code"] == "BAD_REQUEST"
