"""
Merge and conflict resolution for catalog records.

The resolver reconciles the remote catalog with the full local state using
per-record version counters. Every local record carries base_version, the
version last known to be in the remote catalog, which serves as the common
ancestor for change detection.

Classification per record id:
    only remote                       -> REMOTE_WINS (new from another instance)
    only local                        -> LOCAL_WINS  (new, not yet pushed)
    neither side changed since base   -> CLEAN
    only remote changed               -> REMOTE_WINS (fast-forward)
    only local changed                -> LOCAL_WINS
    both changed to identical content -> CLEAN
    both changed                      -> CONFLICT, tie-break by ConflictPolicy

Invariants:
    - The merged snapshot holds exactly one record per id
    - conflicts is non-empty iff a true double write happened
    - A record adopted from the local side has a version above the remote one
    - merge() is pure: it never touches the store or the remote

How to change safely:
    - Keep the default policy REMOTE_WINS; it is the documented tie-break
    - Any new policy must still record the losing variant in conflicts
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

from ..store.catalog_store import CatalogRecord, RecordConflict

logger = logging.getLogger(__name__)


class MergeOutcome(Enum):
    """How a single record was reconciled."""

    CLEAN = "clean"
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    CONFLICT = "conflict"


class ConflictPolicy(Enum):
    """Tie-break applied when both sides changed a record.

    REMOTE_WINS keeps the variant that was uploaded first. NEWEST_WINS
    compares modification timestamps, ties go to remote.
    """

    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    NEWEST_WINS = "newest_wins"


@dataclass
class MergeResult:
    """Output of a merge.

    Attributes:
        records: Merged catalog keyed by id
        conflicts: Double writes with both variants attached
        outcomes: Classification of every record id
        needs_upload: Whether the merged catalog differs from the remote one
    """

    records: dict[str, CatalogRecord] = field(default_factory=dict)
    conflicts: list[RecordConflict] = field(default_factory=list)
    outcomes: dict[str, MergeOutcome] = field(default_factory=dict)
    needs_upload: bool = False

    def count(self, outcome: MergeOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    def summary(self) -> dict[str, int]:
        return {outcome.value: self.count(outcome) for outcome in MergeOutcome}

    def remote_adopted(self) -> set[str]:
        """Ids whose merged value is a remote change the local row had not seen."""
        adopted = {rid for rid, o in self.outcomes.items() if o == MergeOutcome.REMOTE_WINS}
        adopted.update(c.record_id for c in self.conflicts if c.resolved_with == "remote")
        return adopted


class MergeResolver:
    """Reconciles a remote catalog with local state.

    Example:
        >>> resolver = MergeResolver(ConflictPolicy.REMOTE_WINS)
        >>> result = resolver.merge(remote_records, await store.local_state())
        >>> result.conflicts
        []
    """

    def __init__(
        self,
        policy: ConflictPolicy = ConflictPolicy.REMOTE_WINS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy
        self._clock = clock

    def merge(
        self,
        remote: Mapping[str, CatalogRecord],
        local: Mapping[str, CatalogRecord],
    ) -> MergeResult:
        """Merge remote and local records.

        Args:
            remote: Remote catalog keyed by id
            local: Full local state keyed by id (with base versions)

        Returns:
            MergeResult with one record per id present on either side
        """
        result = MergeResult()
        detected_at = int(self._clock() * 1000)

        for record_id in sorted(set(remote) | set(local)):
            theirs = remote.get(record_id)
            ours = local.get(record_id)

            if ours is None:
                self._adopt(result, record_id, theirs, MergeOutcome.REMOTE_WINS)
                continue

            if theirs is None:
                self._adopt(
                    result, record_id, replace(ours, base_version=None), MergeOutcome.LOCAL_WINS
                )
                continue

            local_changed = ours.is_pending
            remote_changed = ours.base_version is None or theirs.version != ours.base_version

            if not local_changed and not remote_changed:
                self._adopt(result, record_id, theirs, MergeOutcome.CLEAN)
            elif not local_changed:
                self._adopt(result, record_id, theirs, MergeOutcome.REMOTE_WINS)
            elif not remote_changed:
                self._adopt(result, record_id, self._above(ours, theirs), MergeOutcome.LOCAL_WINS)
            elif ours.same_content(theirs):
                # Convergent edit: both sides wrote the same value
                self._adopt(result, record_id, theirs, MergeOutcome.CLEAN)
            else:
                keep_local = self._local_wins_conflict(ours, theirs)
                winner = self._above(ours, theirs) if keep_local else theirs
                self._adopt(result, record_id, winner, MergeOutcome.CONFLICT)
                result.conflicts.append(
                    RecordConflict(
                        record_id=record_id,
                        local=replace(ours, base_version=None),
                        remote=theirs,
                        base_version=ours.base_version,
                        resolved_with="local" if keep_local else "remote",
                        detected_at=detected_at,
                    )
                )

        result.needs_upload = any(
            record_id not in remote or record.to_dict() != remote[record_id].to_dict()
            for record_id, record in result.records.items()
        )

        if result.conflicts:
            logger.warning(
                f"Merge found {len(result.conflicts)} conflicting records",
                extra={
                    "record_ids": [c.record_id for c in result.conflicts],
                    "policy": self.policy.value,
                },
            )
        return result

    def _adopt(
        self,
        result: MergeResult,
        record_id: str,
        record: CatalogRecord,
        outcome: MergeOutcome,
    ) -> None:
        result.records[record_id] = record
        result.outcomes[record_id] = outcome

    def _above(self, local: CatalogRecord, remote: CatalogRecord) -> CatalogRecord:
        """Local variant with a version strictly above the remote one."""
        return replace(
            local,
            version=max(local.version, remote.version + 1),
            base_version=None,
        )

    def _local_wins_conflict(self, local: CatalogRecord, remote: CatalogRecord) -> bool:
        if self.policy == ConflictPolicy.LOCAL_WINS:
            return True
        if self.policy == ConflictPolicy.NEWEST_WINS:
            return local.updated_at > remote.updated_at
        return False
