"""
HTTP status surface for the catalog sync service.

This module provides a small REST API for operators and health tooling:
- GET  /v1/health                              liveness + sync summary
- GET  /v1/sync/status                         full SyncState
- POST /v1/sync/run                            run a cycle now (queued if busy)
- GET  /v1/sync/conflicts?status=open          conflict side log
- POST /v1/sync/conflicts/{conflict_id}/ack    acknowledge a conflict

Invariants:
    - JSON request/response format
    - Mutating endpoints require the X-Actor header
    - Handler errors never crash the server (error middleware)

How to change safely:
    - Version the API if breaking changes are needed
    - Keep /v1/health cheap; it is polled by load balancers
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from aiohttp import web

from ..store.catalog_store import CatalogNotInitializedError, CatalogStore
from ..sync.synchronizer import Synchronizer

logger = logging.getLogger(__name__)

_CONFLICT_STATUSES = {"open": "open", "acknowledged": "acknowledged", "all": None}


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message, "error_code": "BAD_REQUEST"}),
        content_type="application/json",
    )


def create_http_app(synchronizer: Synchronizer, store: CatalogStore) -> web.Application:
    """Create the HTTP application.

    Args:
        synchronizer: Synchronizer instance
        store: Local catalog store

    Returns:
        aiohttp Application instance
    """
    app = web.Application()

    app.router.add_get("/v1/health", lambda r: handle_health(r, synchronizer))
    app.router.add_get("/v1/sync/status", lambda r: handle_status(r, synchronizer))
    app.router.add_post("/v1/sync/run", lambda r: handle_run(r, synchronizer))
    app.router.add_get("/v1/sync/conflicts", lambda r: handle_conflicts(r, store))
    app.router.add_post(
        "/v1/sync/conflicts/{conflict_id}/ack", lambda r: handle_ack_conflict(r, store)
    )

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.Response:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except CatalogNotInitializedError as e:
            return web.json_response(
                {"error": str(e), "error_code": "STORE_UNAVAILABLE"},
                status=503,
            )
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.append(error_middleware)

    return app


async def handle_health(request: web.Request, synchronizer: Synchronizer) -> web.Response:
    """Handle GET /v1/health - Health check."""
    status = await synchronizer.status()
    healthy = status["pending_conflicts"] is not None
    result = {
        "healthy": healthy,
        "instance_id": status["instance_id"],
        "offline": status["offline"],
        "last_sync_at_ms": status["last_sync_at_ms"],
        "last_outcome": status["last_outcome"],
        "pending_conflicts": status["pending_conflicts"],
    }
    return web.json_response(result, status=200 if healthy else 503)


async def handle_status(request: web.Request, synchronizer: Synchronizer) -> web.Response:
    """Handle GET /v1/sync/status - Full sync state."""
    return web.json_response(await synchronizer.status())


async def handle_run(request: web.Request, synchronizer: Synchronizer) -> web.Response:
    """Handle POST /v1/sync/run - Run a cycle and return its result."""
    logger.info(
        "Sync cycle requested over HTTP",
        extra={"actor": request.headers.get("X-Actor")},
    )
    result = await synchronizer.run_cycle(wait=True)
    return web.json_response(result.to_dict())


async def handle_conflicts(request: web.Request, store: CatalogStore) -> web.Response:
    """Handle GET /v1/sync/conflicts - List conflicts."""
    status_param = request.query.get("status", "open")
    if status_param not in _CONFLICT_STATUSES:
        raise _bad_request(f"status must be one of: {', '.join(_CONFLICT_STATUSES)}")

    conflicts = await store.list_conflicts(status=_CONFLICT_STATUSES[status_param])
    return web.json_response(
        {"conflicts": [c.to_dict() for c in conflicts], "count": len(conflicts)}
    )


async def handle_ack_conflict(request: web.Request, store: CatalogStore) -> web.Response:
    """Handle POST /v1/sync/conflicts/{conflict_id}/ack - Acknowledge a conflict."""
    actor = request.headers.get("X-Actor")
    if not actor:
        raise _bad_request("X-Actor header is required")

    try:
        conflict_id = int(request.match_info["conflict_id"])
    except ValueError:
        raise _bad_request("conflict_id must be an integer")

    if not await store.acknowledge_conflict(conflict_id, actor):
        raise web.HTTPNotFound(
            text=json.dumps(
                {"error": f"No open conflict {conflict_id}", "error_code": "NOT_FOUND"}
            ),
            content_type="application/json",
        )

    logger.info("Conflict acknowledged", extra={"conflict_id": conflict_id, "actor": actor})
    return web.json_response({"conflict_id": conflict_id, "status": "acknowledged"})


class HttpServer:
    """Runs the status application on a TCP site.

    Example:
        >>> server = HttpServer(synchronizer, store, host="0.0.0.0", port=8081)
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(
        self,
        synchronizer: Synchronizer,
        store: CatalogStore,
        host: str = "0.0.0.0",
        port: int = 8081,
    ) -> None:
        self.app = create_http_app(synchronizer, store)
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"HTTP server running on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
