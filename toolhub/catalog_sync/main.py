"""
Catalog sync service - Main entry point.

This module starts the sync service with all components:
- Local catalog store (SQLite)
- Remote object store connection (S3 or in-memory)
- Synchronizer loop (lease -> download -> merge -> upload)
- HTTP status server

Usage:
    python -m toolhub.catalog_sync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The local store is initialized (or recovered) before the first cycle
    - Graceful shutdown lets an in-flight cycle finish and releases the lease
    - A broken local store never prevents startup; recovery runs first

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sqlite3
import sys
from dataclasses import dataclass
from pathlib import Path

import json_log_formatter

from .api import HttpServer
from .config import ServerConfig
from .errors import FailureKind
from .remote import ObjectStore, create_object_store
from .store import CatalogStore
from .sync import (
    BackupManager,
    ConflictPolicy,
    LockManager,
    MergeResolver,
    RecoveryController,
    Synchronizer,
)

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


@dataclass
class Components:
    """The wired sync engine of one instance."""

    store: CatalogStore
    remote: ObjectStore
    locks: LockManager
    backups: BackupManager
    recovery: RecoveryController
    synchronizer: Synchronizer


def build_components(config: ServerConfig, remote: ObjectStore | None = None) -> Components:
    """Wire the sync engine from configuration.

    Args:
        config: Server configuration
        remote: Object store to use instead of the configured backend

    Returns:
        Components (not yet connected or initialized)
    """
    remote = remote or create_object_store(config)

    store = CatalogStore(
        config.db_path,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    locks = LockManager(
        remote,
        owner_id=config.instance_id,
        lock_key=config.s3.lock_key,
        ttl_seconds=config.lock.lease_ttl_seconds,
    )
    backups = BackupManager(
        store,
        remote,
        instance_id=config.instance_id,
        prefix=config.s3.backup_prefix,
        retention=config.backup.retention,
        forensic_retention=config.backup.forensic_retention,
        compression=config.backup.compression,
    )
    recovery = RecoveryController(
        store,
        backups,
        remote,
        seed_path=config.seed.seed_path,
        probe_key=config.s3.catalog_key,
    )
    synchronizer = Synchronizer(
        store=store,
        remote=remote,
        locks=locks,
        backups=backups,
        recovery=recovery,
        resolver=MergeResolver(ConflictPolicy(config.sync.conflict_policy)),
        instance_id=config.instance_id,
        catalog_key=config.s3.catalog_key,
        interval_seconds=config.sync.interval_seconds,
        retry_delay_seconds=config.sync.retry_delay_seconds,
    )
    return Components(store, remote, locks, backups, recovery, synchronizer)


async def prepare_store(components: Components) -> None:
    """Initialize the local store, recovering it first if it is unusable."""
    try:
        await components.store.initialize()
        problems = await components.store.check_integrity()
    except sqlite3.DatabaseError as e:
        problems = [str(e)]

    if problems:
        logger.error("Local store unusable at startup", extra={"problems": problems})
        await components.recovery.handle(FailureKind.INTEGRITY_FAILURE)


class Server:
    """Catalog sync service orchestrator.

    Manages the lifecycle of all service components:
    - Remote object store connection
    - Local store initialization
    - Synchronizer loop
    - HTTP status server

    Attributes:
        config: Server configuration
        components: Wired sync engine
        http_server: Status HTTP server (if enabled)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.components: Components | None = None
        self.http_server: HttpServer | None = None

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting catalog sync service")
        self.config.log_config()

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            self.components = build_components(self.config)
            await self.components.remote.connect()
            logger.info("Remote object store connected")

            await prepare_store(self.components)

            if self.config.sync.enabled:
                await self.components.synchronizer.start(
                    run_on_start=self.config.sync.run_on_start
                )

            if self.config.http.enabled:
                self.http_server = HttpServer(
                    self.components.synchronizer,
                    self.components.store,
                    host=self.config.http.host,
                    port=self.config.http.port,
                )
                await self.http_server.start()

            self._running = True
            logger.info("Catalog sync service started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping catalog sync service")

        if self.http_server:
            await self.http_server.stop()

        if self.components:
            if self.components.synchronizer.is_running:
                await self.components.synchronizer.stop()
            await self.components.remote.close()

        self._running = False
        logger.info("Catalog sync service stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
