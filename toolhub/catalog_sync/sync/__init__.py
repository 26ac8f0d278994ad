"""
Distributed state synchronization engine.

This module contains:
- LockManager: lease on the shared remote catalog via conditional writes
- MergeResolver: per-record version reconciliation and conflict detection
- BackupManager: integrity checks, backups and restore of the local store
- RecoveryController: escalating recovery after failed cycles
- Synchronizer: the cycle state machine and periodic schedule
"""

from .backup import BackupManager, BackupSnapshot
from .lock import Lease, LockDenied, LockManager
from .merge import ConflictPolicy, MergeOutcome, MergeResolver, MergeResult
from .recovery import RecoveryController, RecoveryOutcome, RecoveryReport
from .synchronizer import (
    CycleResult,
    CycleStatus,
    RemoteCatalog,
    Synchronizer,
    SyncPhase,
    SyncState,
)

__all__ = [
    "Lease",
    "LockDenied",
    "LockManager",
    "ConflictPolicy",
    "MergeOutcome",
    "MergeResolver",
    "MergeResult",
    "BackupManager",
    "BackupSnapshot",
    "RecoveryController",
    "RecoveryOutcome",
    "RecoveryReport",
    "CycleResult",
    "CycleStatus",
    "RemoteCatalog",
    "Synchronizer",
    "SyncPhase",
    "SyncState",
]
