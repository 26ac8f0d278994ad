"""
Synchronizer: orchestrates one sync cycle and the periodic schedule.

A cycle brings the local catalog store and the shared remote catalog into
agreement:

    ACQUIRING_LOCK
      -> LOCK_DENIED -> DOWNLOAD_ONLY                      (skipped_busy)
      -> LOCK_GRANTED -> CHECK_VERSIONS -> DOWNLOAD -> MERGE
         -> BACKUP -> UPLOAD -> PUBLISH -> RELEASE_LOCK    (success)
      any failure after LOCK_GRANTED -> RELEASE_LOCK -> FAILED -> recovery

Remote catalog format:
    <catalog_key> (gzip JSON)
    {
        "format": "toolhub-catalog/1",
        "schema_version": "1.2.0",
        "generation": 42,
        "written_by": "instance-a",
        "written_at_ms": 1700000000000,
        "records": [{"record_id": ..., "kind": ..., "payload": ..., ...}]
    }
    Object metadata: schema-version, generation

Invariants:
    - Cycles within one instance are serialized
    - The lease is always released before recovery runs
    - Upload is conditional on the ETag seen at download (create-if-absent
      for a new catalog), so a second uploader always merges the first
    - The local store is only rewritten after a successful upload, in one
      transaction; failures leave it unchanged
    - Once upload has started it runs to completion, even if the cycle is
      cancelled, before the lease is released
    - Nothing raises out of run_cycle(); every failure becomes a CycleResult

How to change safely:
    - Keep version checks before any local mutation
    - Keep the shielded upload+publish unit intact
"""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import sqlite3
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import (
    CatalogSyncError,
    FailureKind,
    IntegrityFailureError,
    LeaseExpiredError,
    NetworkFailureError,
)
from ..remote.base import ObjectStore, ObjectStoreError, PreconditionFailedError
from ..store.catalog_store import (
    CatalogNotInitializedError,
    CatalogRecord,
    CatalogStore,
    PublishResult,
)
from ..store.versioning import VersionTriple, require_compatible
from .backup import BackupManager
from .lock import Lease, LockDenied, LockManager
from .merge import MergeResolver, MergeResult
from .recovery import RecoveryController, RecoveryOutcome, RecoveryReport

logger = logging.getLogger(__name__)

CATALOG_FORMAT = "toolhub-catalog/1"


@dataclass
class RemoteCatalog:
    """The shared catalog document.

    Attributes:
        records: Catalog records keyed by id
        schema_version: Schema version of the writer
        generation: Upload counter, incremented on every upload
        written_by: Instance that uploaded this generation
        written_at: Upload time (Unix ms)
        etag: ETag of the downloaded object (None for a new document)
    """

    records: dict[str, CatalogRecord]
    schema_version: VersionTriple
    generation: int = 0
    written_by: str | None = None
    written_at: int = 0
    etag: str | None = None

    def metadata(self) -> dict[str, str]:
        return {
            "schema-version": str(self.schema_version),
            "generation": str(self.generation),
        }

    def encode(self) -> bytes:
        document = {
            "format": CATALOG_FORMAT,
            "schema_version": str(self.schema_version),
            "generation": self.generation,
            "written_by": self.written_by,
            "written_at_ms": self.written_at,
            "records": [self.records[rid].to_dict() for rid in sorted(self.records)],
        }
        return gzip.compress(json.dumps(document, sort_keys=True).encode("utf-8"), mtime=0)

    @classmethod
    def decode(cls, body: bytes, etag: str | None = None) -> RemoteCatalog:
        """Parse a catalog document.

        Raises:
            ValueError: If the document is not a valid catalog
        """
        try:
            document = json.loads(gzip.decompress(body).decode("utf-8"))
        except (OSError, EOFError, UnicodeDecodeError) as e:
            raise ValueError(f"catalog body is not gzip JSON: {e}") from e

        if not isinstance(document, dict) or document.get("format") != CATALOG_FORMAT:
            raise ValueError("unknown catalog format")

        try:
            records = [CatalogRecord.from_dict(r) for r in document["records"]]
            return cls(
                records={r.record_id: r for r in records},
                schema_version=VersionTriple.parse(document["schema_version"]),
                generation=int(document.get("generation", 0)),
                written_by=document.get("written_by"),
                written_at=int(document.get("written_at_ms", 0)),
                etag=etag,
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed catalog document: {e}") from e


class CycleStatus(Enum):
    """Overall result of a sync cycle."""

    SUCCESS = "success"
    SKIPPED_BUSY = "skipped_busy"
    FAILED = "failed"


class SyncPhase(Enum):
    """Current step of the cycle state machine."""

    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    LOCK_DENIED = "lock_denied"
    DOWNLOAD_ONLY = "download_only"
    LOCK_GRANTED = "lock_granted"
    CHECK_VERSIONS = "check_versions"
    DOWNLOAD = "download"
    MERGE = "merge"
    BACKUP = "backup"
    UPLOAD = "upload"
    PUBLISH = "publish"
    RELEASE_LOCK = "release_lock"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Outcome of one sync cycle.

    Attributes:
        status: success, skipped_busy or failed
        reason: Failure classification when status is failed
        started_at: Cycle start (Unix ms)
        finished_at: Cycle end (Unix ms)
        merge_summary: Record counts per merge outcome
        conflicts: Number of conflicts recorded
        uploaded: Whether a new remote generation was written
        generation: Remote generation after the cycle
        fast_forwarded: Records adopted on the download-only path
        rebased: Records mutated locally during the cycle
        error: Error message when failed
        recovery: Recovery report when failed
    """

    status: CycleStatus
    reason: FailureKind | None = None
    started_at: int = 0
    finished_at: int = 0
    merge_summary: dict[str, int] = field(default_factory=dict)
    conflicts: int = 0
    uploaded: bool = False
    generation: int | None = None
    fast_forwarded: int = 0
    rebased: list[str] = field(default_factory=list)
    error: str | None = None
    recovery: RecoveryReport | None = None

    @property
    def duration_ms(self) -> int:
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "started_at_ms": self.started_at,
            "finished_at_ms": self.finished_at,
            "duration_ms": self.duration_ms,
            "merge": self.merge_summary,
            "conflicts": self.conflicts,
            "uploaded": self.uploaded,
            "generation": self.generation,
            "fast_forwarded": self.fast_forwarded,
            "rebased": self.rebased,
            "error": self.error,
            "recovery": self.recovery.to_dict() if self.recovery else None,
        }


@dataclass
class SyncState:
    """Process-local sync state, reset at process start.

    Attributes:
        phase: Current cycle phase
        last_sync_at: Last successful cycle end (Unix ms)
        last_result: Result of the most recent cycle
        offline: True while running in degraded offline mode
        consecutive_failures: Failed cycles since the last success
        cycles: Cycles run since start
    """

    phase: SyncPhase = SyncPhase.IDLE
    last_sync_at: int | None = None
    last_result: CycleResult | None = None
    offline: bool = False
    consecutive_failures: int = 0
    cycles: int = 0


class Synchronizer:
    """Drives sync cycles for one instance.

    Attributes:
        store: Local catalog store
        remote: Shared object store
        locks: Lease manager
        backups: Backup manager
        recovery: Recovery controller
        resolver: Merge resolver
        state: Process-local SyncState

    Example:
        >>> sync = Synchronizer(store, remote, locks, backups, recovery, resolver,
        ...                     instance_id="instance-a")
        >>> result = await sync.run_cycle()
        >>> result.status
        <CycleStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        store: CatalogStore,
        remote: ObjectStore,
        locks: LockManager,
        backups: BackupManager,
        recovery: RecoveryController,
        resolver: MergeResolver,
        instance_id: str,
        catalog_key: str = "catalog/catalog.json.gz",
        interval_seconds: float = 60.0,
        retry_delay_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.remote = remote
        self.locks = locks
        self.backups = backups
        self.recovery = recovery
        self.resolver = resolver
        self.instance_id = instance_id
        self.catalog_key = catalog_key
        self.interval_seconds = interval_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self._clock = clock

        self.state = SyncState()
        self._cycle_lock = asyncio.Lock()
        self._commit_task: asyncio.Task | None = None
        self._lease: Lease | None = None
        self._running = False
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _set_phase(self, phase: SyncPhase) -> None:
        self.state.phase = phase
        logger.debug(f"Sync phase: {phase.value}", extra={"instance_id": self.instance_id})

    @property
    def is_running(self) -> bool:
        return self._running

    # Cycle

    async def run_cycle(self, wait: bool = True) -> CycleResult:
        """Run one sync cycle.

        Args:
            wait: Queue behind a cycle already in progress (operator trigger).
                When False a busy instance drops the request (scheduler tick).

        Returns:
            CycleResult; never raises except for cancellation
        """
        if not wait and self._cycle_lock.locked():
            logger.debug("Sync cycle already running, dropping tick")
            now = self._now_ms()
            return CycleResult(status=CycleStatus.SKIPPED_BUSY, started_at=now, finished_at=now)

        async with self._cycle_lock:
            try:
                result = await self._run()
            finally:
                self.state.phase = SyncPhase.IDLE
            self._record(result)
            return result

    def _record(self, result: CycleResult) -> None:
        self.state.cycles += 1
        self.state.last_result = result
        if result.status == CycleStatus.SUCCESS:
            self.state.last_sync_at = result.finished_at
            self.state.consecutive_failures = 0
            self.state.offline = False
        elif result.status == CycleStatus.FAILED:
            self.state.consecutive_failures += 1
            if result.recovery is not None:
                self.state.offline = result.recovery.outcome == RecoveryOutcome.DEGRADED_OFFLINE

        log = logger.error if result.status == CycleStatus.FAILED else logger.info
        log(
            f"Sync cycle {result.status.value}",
            extra={"instance_id": self.instance_id, **result.to_dict()},
        )

    async def _run(self) -> CycleResult:
        started = self._now_ms()

        self._set_phase(SyncPhase.ACQUIRING_LOCK)
        acquired = await self.locks.acquire()
        if isinstance(acquired, LockDenied):
            return await self._download_only(acquired, started)

        self._set_phase(SyncPhase.LOCK_GRANTED)
        self._lease = acquired
        failure: CatalogSyncError | None = None
        result: CycleResult | None = None
        try:
            result = await self._locked_cycle(started)
        except CatalogSyncError as e:
            failure = e
        except sqlite3.DatabaseError as e:
            failure = IntegrityFailureError(f"Local store error: {e}", problems=[str(e)])
        except CatalogNotInitializedError as e:
            failure = IntegrityFailureError(str(e), problems=[str(e)])
        except Exception as e:
            logger.exception(f"Unexpected sync failure: {e}")
            failure = CatalogSyncError(f"Unexpected sync failure: {e}")
        finally:
            commit = self._commit_task
            if commit is not None and not commit.done():
                # Upload already started: finish it before giving up the lease
                await asyncio.wait({commit})
                if not commit.cancelled() and commit.exception() is not None:
                    logger.error(f"Upload interrupted by cancellation failed: {commit.exception()}")
            self._commit_task = None
            self._set_phase(SyncPhase.RELEASE_LOCK)
            lease, self._lease = self._lease, None
            await self.locks.release(lease)

        if failure is not None:
            return await self._fail(failure, started)
        return result

    async def _locked_cycle(self, started: int) -> CycleResult:
        self._set_phase(SyncPhase.CHECK_VERSIONS)
        problems = await self.store.check_integrity()
        if problems:
            raise IntegrityFailureError("Local store failed integrity check", problems=problems)

        local_version = await self._check_versions()

        self._set_phase(SyncPhase.DOWNLOAD)
        remote_catalog = await self._download()
        if remote_catalog is not None:
            require_compatible(local_version, remote_catalog.schema_version)

        self._set_phase(SyncPhase.MERGE)
        local = await self.store.local_state()
        observed = {record_id: record.version for record_id, record in local.items()}
        merge = self.resolver.merge(remote_catalog.records if remote_catalog else {}, local)

        generation = remote_catalog.generation if remote_catalog else 0
        upload_needed = (
            merge.needs_upload
            or remote_catalog is None
            or local_version > remote_catalog.schema_version
        )

        if upload_needed:
            self._set_phase(SyncPhase.BACKUP)
            await self.backups.create(reason="pre_upload")
            # Release must use the renewed lease; its ETag replaces the old one
            self._lease = await self.locks.renew(self._lease)

            new_catalog = RemoteCatalog(
                records=merge.records,
                schema_version=local_version,
                generation=generation + 1,
                written_by=self.instance_id,
                written_at=self._now_ms(),
            )
            etag = remote_catalog.etag if remote_catalog else None
            self._commit_task = asyncio.ensure_future(
                self._commit(new_catalog, etag, merge, observed)
            )
            published = await asyncio.shield(self._commit_task)
            generation = new_catalog.generation
        else:
            self._set_phase(SyncPhase.PUBLISH)
            published = await self.store.publish(
                merge.records,
                merge.conflicts,
                observed,
                remote_generation=generation,
                remote_adopted=merge.remote_adopted(),
            )

        return CycleResult(
            status=CycleStatus.SUCCESS,
            started_at=started,
            finished_at=self._now_ms(),
            merge_summary=merge.summary(),
            conflicts=len(merge.conflicts),
            uploaded=upload_needed,
            generation=generation,
            rebased=published.rebased,
        )

    async def _check_versions(self) -> VersionTriple:
        """Compare local and remote schema versions, migrating within a major."""
        local_version = await self.store.get_version()

        try:
            info = await self.remote.head(self.catalog_key)
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Cannot read remote catalog: {e}", operation="head") from e

        raw = info.metadata.get("schema-version") if info else None
        if raw is None:
            return local_version

        try:
            remote_version = VersionTriple.parse(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid remote schema-version metadata: {raw!r}")
            return local_version

        require_compatible(local_version, remote_version)
        if remote_version > local_version:
            steps = await self.store.apply_migrations(remote_version)
            logger.info(
                f"Migrated local store {local_version} -> {remote_version}",
                extra={"steps": [str(s.version) for s in steps]},
            )
            local_version = remote_version
        return local_version

    async def _download(self) -> RemoteCatalog | None:
        try:
            obj = await self.remote.get(self.catalog_key)
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Cannot download remote catalog: {e}", operation="get") from e

        if obj is None:
            return None

        try:
            return RemoteCatalog.decode(obj.body, etag=obj.etag)
        except ValueError as e:
            raise CatalogSyncError(
                f"Remote catalog is unreadable: {e}", code="REMOTE_CATALOG_INVALID"
            ) from e

    async def _commit(
        self,
        catalog: RemoteCatalog,
        etag: str | None,
        merge: MergeResult,
        observed: Mapping[str, int],
    ) -> PublishResult:
        """Upload the merged catalog, then publish it locally."""
        self._set_phase(SyncPhase.UPLOAD)
        try:
            await self.remote.put(
                self.catalog_key,
                catalog.encode(),
                if_none_match=etag is None,
                if_match=etag,
                content_type="application/gzip",
                metadata=catalog.metadata(),
            )
        except PreconditionFailedError as e:
            raise LeaseExpiredError(
                "Remote catalog changed during the cycle; lease was lost",
                owner_id=self.instance_id,
            ) from e
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Catalog upload failed: {e}", operation="put") from e

        self._set_phase(SyncPhase.PUBLISH)
        return await self.store.publish(
            merge.records,
            merge.conflicts,
            observed,
            remote_generation=catalog.generation,
            remote_adopted=merge.remote_adopted(),
        )

    async def _download_only(self, denied: LockDenied, started: int) -> CycleResult:
        """Read-only path when another instance holds the lease."""
        self._set_phase(SyncPhase.LOCK_DENIED)
        self._set_phase(SyncPhase.DOWNLOAD_ONLY)

        try:
            catalog = await self._download()
            updated = 0
            if catalog is not None:
                require_compatible(await self.store.get_version(), catalog.schema_version)
                updated = await self.store.fast_forward(catalog.records)
        except CatalogSyncError as e:
            return await self._fail(e, started)
        except (sqlite3.DatabaseError, CatalogNotInitializedError) as e:
            return await self._fail(
                IntegrityFailureError(f"Local store error: {e}", problems=[str(e)]), started
            )
        except Exception as e:
            logger.exception(f"Unexpected failure on download-only path: {e}")
            return await self._fail(CatalogSyncError(str(e)), started)

        return CycleResult(
            status=CycleStatus.SKIPPED_BUSY,
            started_at=started,
            finished_at=self._now_ms(),
            fast_forwarded=updated,
            generation=catalog.generation if catalog else None,
            error=denied.reason or None,
        )

    async def _fail(self, error: CatalogSyncError, started: int) -> CycleResult:
        self._set_phase(SyncPhase.FAILED)
        logger.error(
            f"Sync cycle failed: {error.message}",
            extra={"instance_id": self.instance_id, "kind": error.kind.value, **error.details},
        )
        report = await self.recovery.handle(error.kind)
        return CycleResult(
            status=CycleStatus.FAILED,
            reason=error.kind,
            started_at=started,
            finished_at=self._now_ms(),
            error=error.message,
            recovery=report,
        )

    # Schedule

    async def start(self, run_on_start: bool = True) -> None:
        """Start the periodic sync loop in the background."""
        if self._running:
            logger.warning("Synchronizer already running")
            return

        self._running = True
        self._wake = asyncio.Event()
        self._loop_task = asyncio.create_task(self._loop(run_on_start))
        logger.info(
            "Started synchronizer",
            extra={"instance_id": self.instance_id, "interval_seconds": self.interval_seconds},
        )

    async def stop(self) -> None:
        """Stop the loop, letting a cycle in progress finish."""
        self._running = False
        self._wake.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        logger.info("Stopped synchronizer", extra={"instance_id": self.instance_id})

    def trigger(self) -> None:
        """Wake the loop for an immediate cycle."""
        self._wake.set()

    async def _loop(self, run_on_start: bool) -> None:
        delay = 0.0 if run_on_start else self.interval_seconds
        while self._running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if not self._running:
                break

            try:
                result = await self.run_cycle(wait=False)
            except Exception as e:
                logger.error(f"Sync loop error: {e}", exc_info=True)
                delay = self.retry_delay_seconds
                continue

            retry = result.recovery is not None and result.recovery.outcome == RecoveryOutcome.RETRIED
            delay = self.retry_delay_seconds if retry else self.interval_seconds

    # Status

    async def status(self) -> dict[str, Any]:
        """Health/status snapshot for observability tooling."""
        pending_conflicts: int | None = None
        pending_changes: int | None = None
        try:
            stats = await self.store.get_stats()
            pending_conflicts = stats["open_conflicts"]
            pending_changes = stats["pending"]
        except (sqlite3.DatabaseError, CatalogNotInitializedError) as e:
            logger.debug(f"Local store stats unavailable: {e}")

        last = self.state.last_result
        return {
            "instance_id": self.instance_id,
            "phase": self.state.phase.value,
            "last_sync_at_ms": self.state.last_sync_at,
            "last_outcome": last.status.value if last else None,
            "last_failure": last.reason.value if last and last.reason else None,
            "last_result": last.to_dict() if last else None,
            "pending_conflicts": pending_conflicts,
            "pending_changes": pending_changes,
            "offline": self.state.offline,
            "consecutive_failures": self.state.consecutive_failures,
            "cycles": self.state.cycles,
        }
