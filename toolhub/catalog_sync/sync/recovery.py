"""
Recovery controller for failed sync cycles.

Invoked by the Synchronizer after any failed cycle (once the lease has been
released). Escalation order:

    1. Verify local store integrity; if corrupt, restore the latest backup
    2. If no backup can be restored, rebuild from seed definitions (data loss)
    3. If the store is healthy, probe the remote; unreachable means the
       instance continues offline from local state
    4. Otherwise the failure is transient and the cycle is retried

Version incompatibility is never retried automatically: it needs a manual
migration.

Invariants:
    - handle() never raises; the worst outcome is degraded offline serving
    - A backup of the damaged store is attempted before it is replaced
    - Seed rebuilds are always logged as data loss

How to change safely:
    - Keep the escalation order: cheapest, least destructive action first
    - Every new step must catch its own failures
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import CatalogSyncError, FailureKind
from ..remote.base import ObjectStore, ObjectStoreError
from ..store.catalog_store import CatalogStore
from ..store.seed import load_seed
from .backup import BackupManager

logger = logging.getLogger(__name__)


class RecoveryOutcome(Enum):
    """What the controller did about a failure."""

    RETRIED = "retried"
    DEGRADED_OFFLINE = "degraded_offline"
    RESTORED = "restored"
    REBUILT_FROM_SEED = "rebuilt_from_seed"


@dataclass
class RecoveryReport:
    """Result of handling a failure.

    Attributes:
        outcome: Action taken
        failure_kind: Failure that triggered recovery
        data_loss: True if local changes were discarded
        manual_intervention: True if an operator must act before syncing resumes
        detail: Human-readable explanation
        backup_key: Backup restored, if any
    """

    outcome: RecoveryOutcome
    failure_kind: FailureKind
    data_loss: bool = False
    manual_intervention: bool = False
    detail: str = ""
    backup_key: str | None = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "failure_kind": self.failure_kind.value,
            "data_loss": self.data_loss,
            "manual_intervention": self.manual_intervention,
            "detail": self.detail,
            "backup_key": self.backup_key,
        }


class RecoveryController:
    """Chooses and performs the recovery action for a failed cycle.

    Example:
        >>> recovery = RecoveryController(store, backups, remote, seed_path="seed.yaml")
        >>> report = await recovery.handle(FailureKind.INTEGRITY_FAILURE)
        >>> report.outcome
        <RecoveryOutcome.RESTORED: 'restored'>
    """

    def __init__(
        self,
        store: CatalogStore,
        backups: BackupManager,
        remote: ObjectStore,
        seed_path: str | Path | None = None,
        probe_key: str = "catalog/catalog.json.gz",
    ) -> None:
        self.store = store
        self.backups = backups
        self.remote = remote
        self.seed_path = Path(seed_path) if seed_path else None
        self.probe_key = probe_key

    async def handle(self, failure_kind: FailureKind) -> RecoveryReport:
        """Recover from a failure. Never raises.

        Args:
            failure_kind: Classification of the failed step

        Returns:
            RecoveryReport describing the action taken
        """
        try:
            report = await self._escalate(failure_kind)
        except Exception as e:
            logger.critical(f"Recovery failed, continuing offline: {e}", exc_info=True)
            report = RecoveryReport(
                outcome=RecoveryOutcome.DEGRADED_OFFLINE,
                failure_kind=failure_kind,
                detail=f"recovery error: {e}",
            )

        logger.info(
            f"Recovery outcome: {report.outcome.value}",
            extra=report.to_dict(),
        )
        return report

    async def _escalate(self, failure_kind: FailureKind) -> RecoveryReport:
        if failure_kind == FailureKind.VERSION_INCOMPATIBLE:
            logger.error("Schema version incompatible with remote catalog; manual migration required")
            return RecoveryReport(
                outcome=RecoveryOutcome.DEGRADED_OFFLINE,
                failure_kind=failure_kind,
                manual_intervention=True,
                detail="major schema version mismatch",
            )

        problems = await self.store.check_integrity()
        if problems:
            logger.error(
                "Local store failed integrity check",
                extra={"problems": problems},
            )
            return await self._restore_or_rebuild(failure_kind, problems)

        if not await self._remote_reachable():
            logger.warning("Remote object store unreachable; serving from local state")
            return RecoveryReport(
                outcome=RecoveryOutcome.DEGRADED_OFFLINE,
                failure_kind=failure_kind,
                detail="remote unreachable",
            )

        return RecoveryReport(
            outcome=RecoveryOutcome.RETRIED,
            failure_kind=failure_kind,
            detail="transient failure",
        )

    async def _remote_reachable(self) -> bool:
        try:
            await self.remote.head(self.probe_key)
            return True
        except ObjectStoreError:
            return False

    async def _restore_or_rebuild(
        self, failure_kind: FailureKind, problems: list[str]
    ) -> RecoveryReport:
        try:
            await self.backups.create(reason="pre_restore")
        except CatalogSyncError as e:
            logger.debug(f"Could not back up damaged store: {e.message}")

        try:
            snapshot = await self.backups.restore_latest()
            await self.store.initialize()
            remaining = await self.store.check_integrity()
            if not remaining:
                return RecoveryReport(
                    outcome=RecoveryOutcome.RESTORED,
                    failure_kind=failure_kind,
                    detail=f"restored backup taken at {snapshot.snapshot_ts}",
                    backup_key=snapshot.key,
                )
            logger.error("Restored store still unhealthy", extra={"problems": remaining})
        except CatalogSyncError as e:
            logger.error(f"Backup restore failed: {e.message}")

        return await self._rebuild_from_seed(failure_kind, problems)

    async def _rebuild_from_seed(
        self, failure_kind: FailureKind, problems: list[str]
    ) -> RecoveryReport:
        if self.seed_path is None:
            logger.critical("No backup and no seed definitions available; store unusable")
            return RecoveryReport(
                outcome=RecoveryOutcome.DEGRADED_OFFLINE,
                failure_kind=failure_kind,
                manual_intervention=True,
                detail="no backup or seed available: " + "; ".join(problems),
            )

        try:
            records = load_seed(self.seed_path)
        except CatalogSyncError as e:
            logger.critical(f"Seed rebuild failed: {e.message}")
            return RecoveryReport(
                outcome=RecoveryOutcome.DEGRADED_OFFLINE,
                failure_kind=failure_kind,
                manual_intervention=True,
                detail=f"seed unusable: {e.message}",
            )

        try:
            await self.backups.create(reason="pre_rebuild")
        except CatalogSyncError as e:
            logger.debug(f"Could not back up store before rebuild: {e.message}")

        await self.store.reset()
        await self.store.initialize()
        count = await self.store.seed_records(records)

        logger.error(
            "Rebuilt local store from seed definitions; unsynced local changes were lost",
            extra={"seed_path": str(self.seed_path), "records": count, "data_loss": True},
        )
        return RecoveryReport(
            outcome=RecoveryOutcome.REBUILT_FROM_SEED,
            failure_kind=failure_kind,
            data_loss=True,
            detail=f"rebuilt {count} records from {self.seed_path}",
        )
