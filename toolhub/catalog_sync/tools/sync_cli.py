"""
Operator CLI for the catalog sync service.

Runs against the same environment configuration as the service itself, so it
operates on this host's local store and the shared remote catalog.

Usage:
    catalog-sync run                      Run one sync cycle now
    catalog-sync status                   Local store, remote and lease summary
    catalog-sync conflicts [--all]        List conflicts
    catalog-sync ack <id> --actor <who>   Acknowledge a conflict
    catalog-sync backups                  List backups of this instance
    catalog-sync restore [--key <key>]    Restore latest (or a given) backup
    catalog-sync rebuild-seed --yes       Rebuild the local store from seed

Exit code 0 on success, 1 on failure.

Invariants:
    - Destructive commands back up the current store first
    - rebuild-seed requires explicit confirmation

How to change safely:
    - Keep output of --format json stable; scripts parse it
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..errors import CatalogSyncError
from ..main import Components, build_components, prepare_store
from ..remote.base import ObjectStoreError
from ..store.seed import load_seed
from ..sync.synchronizer import CycleStatus

logger = logging.getLogger(__name__)


class SyncCLI:
    """Operator commands over a wired sync engine."""

    def __init__(self, components: Components, config: ServerConfig) -> None:
        self.components = components
        self.config = config

    async def run(self) -> tuple[bool, dict[str, Any]]:
        await prepare_store(self.components)
        result = await self.components.synchronizer.run_cycle(wait=True)
        return result.status != CycleStatus.FAILED, result.to_dict()

    async def status(self) -> dict[str, Any]:
        store = self.components.store
        status: dict[str, Any] = {"instance_id": self.config.instance_id}

        status["integrity_problems"] = await store.check_integrity()
        if not status["integrity_problems"]:
            status["schema_version"] = str(await store.get_version())
            status["stats"] = await store.get_stats()
            status["last_sync_at_ms"] = await store.get_meta("last_sync_at")
            status["remote_generation"] = await store.get_meta("remote_generation")

        try:
            info = await self.components.remote.head(self.config.s3.catalog_key)
            status["remote_catalog"] = dict(info.metadata) if info else None
            lease = await self.components.remote.get(self.config.s3.lock_key)
            status["lease"] = json.loads(lease.body.decode("utf-8")) if lease else None
        except ObjectStoreError as e:
            status["remote_error"] = str(e)

        return status

    async def conflicts(self, include_all: bool) -> list[dict[str, Any]]:
        conflicts = await self.components.store.list_conflicts(
            status=None if include_all else "open"
        )
        return [c.to_dict() for c in conflicts]

    async def ack(self, conflict_id: int, actor: str) -> bool:
        return await self.components.store.acknowledge_conflict(conflict_id, actor)

    async def backups(self) -> list[dict[str, Any]]:
        snapshots = await self.components.backups.list_snapshots()
        return [s.to_manifest() for s in snapshots]

    async def restore(self, key: str | None) -> dict[str, Any]:
        backups = self.components.backups
        try:
            await backups.create(reason="pre_restore")
        except CatalogSyncError as e:
            logger.warning(f"Could not back up current store: {e.message}")

        if key is None:
            snapshot = await backups.restore_latest()
        else:
            matches = [s for s in await backups.list_snapshots() if s.key == key]
            if not matches:
                raise CatalogSyncError(f"No backup with key {key}", code="BACKUP_NOT_FOUND")
            snapshot = matches[0]
            await backups.restore(snapshot)

        await self.components.store.initialize()
        return snapshot.to_manifest()

    async def rebuild_seed(self, seed_path: str) -> int:
        store = self.components.store
        records = load_seed(seed_path)

        if await store.exists():
            try:
                await self.components.backups.create(reason="pre_rebuild")
            except CatalogSyncError as e:
                logger.warning(f"Could not back up current store: {e.message}")

        await store.reset()
        await store.initialize()
        return await store.seed_records(records)


def _print(data: Any, fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(data, indent=2, default=str))
        return

    if isinstance(data, list):
        if not data:
            print("(none)")
        for item in data:
            print("  " + ", ".join(f"{k}={v}" for k, v in item.items() if not isinstance(v, dict)))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    else:
        print(data)


async def _dispatch(args: argparse.Namespace, config: ServerConfig) -> int:
    components = build_components(config)
    await components.remote.connect()
    cli = SyncCLI(components, config)

    try:
        if args.command == "run":
            ok, result = await cli.run()
            _print(result, args.format)
            return 0 if ok else 1

        elif args.command == "status":
            _print(await cli.status(), args.format)
            return 0

        elif args.command == "conflicts":
            _print(await cli.conflicts(args.all), args.format)
            return 0

        elif args.command == "ack":
            if await cli.ack(args.conflict_id, args.actor):
                print(f"Conflict {args.conflict_id} acknowledged")
                return 0
            print(f"No open conflict {args.conflict_id}")
            return 1

        elif args.command == "backups":
            _print(await cli.backups(), args.format)
            return 0

        elif args.command == "restore":
            _print(await cli.restore(args.key), args.format)
            return 0

        elif args.command == "rebuild-seed":
            seed_path = args.seed or config.seed.seed_path
            if not seed_path:
                print("No seed file given (--seed or CATALOG_SEED_PATH)")
                return 1
            if not args.yes:
                print("rebuild-seed discards unsynced local changes; re-run with --yes")
                return 1
            count = await cli.rebuild_seed(seed_path)
            print(f"Rebuilt local store with {count} seed records")
            return 0

        return 1

    except CatalogSyncError as e:
        print(f"{args.command} failed: {e.message}")
        return 1
    finally:
        await components.remote.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the sync tool."""
    parser = argparse.ArgumentParser(description="Catalog sync operator tool")
    parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run one sync cycle now")
    subparsers.add_parser("status", help="Show local store, remote and lease state")

    conflicts_parser = subparsers.add_parser("conflicts", help="List conflicts")
    conflicts_parser.add_argument(
        "--all", action="store_true", help="Include acknowledged conflicts"
    )

    ack_parser = subparsers.add_parser("ack", help="Acknowledge a conflict")
    ack_parser.add_argument("conflict_id", type=int, help="Conflict ID")
    ack_parser.add_argument("--actor", required=True, help="Who reviewed the conflict")

    subparsers.add_parser("backups", help="List backups of this instance")

    restore_parser = subparsers.add_parser("restore", help="Restore the local store from backup")
    restore_parser.add_argument("--key", help="Backup key (default: latest valid backup)")

    rebuild_parser = subparsers.add_parser("rebuild-seed", help="Rebuild the local store from seed")
    rebuild_parser.add_argument("--seed", help="Seed YAML file (default: CATALOG_SEED_PATH)")
    rebuild_parser.add_argument("--yes", action="store_true", help="Confirm data loss")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(asyncio.run(_dispatch(args, config)))


if __name__ == "__main__":
    main()
