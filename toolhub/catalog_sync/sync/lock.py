"""
Lease-based lock on the shared remote catalog.

The Lock Manager grants one instance at a time the right to run the merge and
upload steps of a sync cycle. The lease is a small JSON object at a well-known
key in the remote object store:

    {"owner_id": "...", "acquired_at_ms": ..., "expires_at_ms": ..., "ttl_ms": ...}

Protocol:
    - acquire: create-if-absent (If-None-Match: *)
    - stale lease: overwrite-if-match on the stale lease's ETag, so two
      instances reclaiming the same stale lease cannot both win
    - renew: overwrite-if-match on the ETag this owner last wrote
    - release: delete-if-match on the same ETag

Invariants:
    - At most one unexpired lease exists at any instant
    - Any remote failure during acquire is a denial (fail closed)
    - A renew after the lease was reclaimed by someone else always fails
    - release() never raises; an unreleased lease simply expires

How to change safely:
    - Never replace a conditional write with read-then-write
    - Keep the lease TTL above one worst-case sync cycle (ServerConfig.validate)
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..errors import LeaseExpiredError, NetworkFailureError
from ..remote.base import ObjectStore, ObjectStoreError, PreconditionFailedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A lease held by this instance.

    Attributes:
        key: Remote key of the lease object
        owner_id: Instance holding the lease
        acquired_at_ms: Acquisition time (Unix ms)
        expires_at_ms: Expiry time (Unix ms)
        etag: ETag of the lease object version this owner wrote
    """

    key: str
    owner_id: str
    acquired_at_ms: int
    expires_at_ms: int
    etag: str

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.expires_at_ms - now_ms)


@dataclass(frozen=True)
class LockDenied:
    """Result of an acquisition that did not grant the lease.

    Attributes:
        holder: Current holder, when known
        expires_at_ms: Expiry of the current holder's lease, when known
        network: True if the denial was caused by a remote failure
        reason: Human-readable explanation
    """

    holder: str | None = None
    expires_at_ms: int | None = None
    network: bool = False
    reason: str = ""


def _parse_lease(body: bytes) -> dict[str, Any] | None:
    try:
        data = json.loads(body.decode("utf-8"))
        int(data["expires_at_ms"])
        return data
    except (ValueError, KeyError, TypeError, UnicodeDecodeError):
        return None


class LockManager:
    """Acquires, renews and releases the sync lease.

    Attributes:
        remote: Object store holding the lease
        owner_id: Identifier written as lease owner
        lock_key: Key of the lease object
        ttl_seconds: Default lease validity

    Example:
        >>> locks = LockManager(remote, owner_id="instance-a")
        >>> result = await locks.acquire()
        >>> if isinstance(result, Lease):
        ...     try:
        ...         ...  # merge and upload
        ...     finally:
        ...         await locks.release(result)
    """

    def __init__(
        self,
        remote: ObjectStore,
        owner_id: str,
        lock_key: str = "locks/catalog.lease",
        ttl_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the lock manager.

        Args:
            remote: ObjectStore instance
            owner_id: This instance's identifier
            lock_key: Remote key of the lease object
            ttl_seconds: Default lease validity in seconds
            clock: Wall clock returning Unix seconds (injectable for tests)
        """
        self.remote = remote
        self.owner_id = owner_id
        self.lock_key = lock_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _lease_body(self, acquired_at_ms: int, expires_at_ms: int) -> bytes:
        return json.dumps(
            {
                "owner_id": self.owner_id,
                "acquired_at_ms": acquired_at_ms,
                "expires_at_ms": expires_at_ms,
                "ttl_ms": expires_at_ms - acquired_at_ms,
            }
        ).encode("utf-8")

    async def acquire(
        self,
        ttl_seconds: float | None = None,
        wait_seconds: float = 0.0,
    ) -> Lease | LockDenied:
        """Try to acquire the lease.

        Args:
            ttl_seconds: Lease validity (defaults to the manager's TTL)
            wait_seconds: Keep retrying against a valid foreign lease this long

        Returns:
            Lease if granted, LockDenied otherwise. Never raises for remote
            failures; those are reported as LockDenied(network=True).
        """
        ttl_ms = int((ttl_seconds or self.ttl_seconds) * 1000)
        deadline = time.monotonic() + wait_seconds

        while True:
            result = await self._try_acquire(ttl_ms)
            if isinstance(result, Lease) or result.network or time.monotonic() >= deadline:
                break
            await asyncio.sleep(0.05 + random.uniform(0.0, 0.05))

        if isinstance(result, Lease):
            logger.debug(
                "Acquired sync lease",
                extra={"owner_id": self.owner_id, "expires_at_ms": result.expires_at_ms},
            )
        else:
            # Expected under contention; not an error
            logger.info(
                f"Sync lease denied: {result.reason}",
                extra={"owner_id": self.owner_id, "holder": result.holder},
            )
        return result

    async def _try_acquire(self, ttl_ms: int) -> Lease | LockDenied:
        now = self.now_ms()
        body = self._lease_body(now, now + ttl_ms)

        try:
            etag = await self.remote.put(
                self.lock_key, body, if_none_match=True, content_type="application/json"
            )
            return Lease(self.lock_key, self.owner_id, now, now + ttl_ms, etag)
        except PreconditionFailedError:
            pass
        except ObjectStoreError as e:
            return LockDenied(network=True, reason=f"lease create failed: {e}")

        # A lease object exists: inspect it and reclaim it if stale
        try:
            current = await self.remote.get(self.lock_key)
        except ObjectStoreError as e:
            return LockDenied(network=True, reason=f"lease read failed: {e}")

        if current is None:
            # Released between our create and read; retry on the next attempt
            return LockDenied(reason="lease released concurrently")

        data = _parse_lease(current.body)
        holder = data.get("owner_id") if data else None
        expires_at_ms = int(data["expires_at_ms"]) if data else 0

        if now < expires_at_ms:
            return LockDenied(
                holder=holder,
                expires_at_ms=expires_at_ms,
                reason=f"lease held by {holder}",
            )

        try:
            etag = await self.remote.put(
                self.lock_key, body, if_match=current.etag, content_type="application/json"
            )
        except PreconditionFailedError:
            return LockDenied(reason="lost race reclaiming stale lease")
        except ObjectStoreError as e:
            return LockDenied(network=True, reason=f"lease reclaim failed: {e}")

        logger.warning(
            "Reclaimed expired sync lease",
            extra={"owner_id": self.owner_id, "previous_holder": holder},
        )
        return Lease(self.lock_key, self.owner_id, now, now + ttl_ms, etag)

    async def renew(self, lease: Lease, ttl_seconds: float | None = None) -> Lease:
        """Extend a held lease.

        Args:
            lease: Lease previously returned by acquire() or renew()
            ttl_seconds: New validity measured from now

        Returns:
            The renewed lease (new ETag and expiry)

        Raises:
            LeaseExpiredError: If the lease expired, was reclaimed or replaced
            NetworkFailureError: If the remote store is unreachable
        """
        now = self.now_ms()
        if lease.is_expired(now):
            raise LeaseExpiredError(
                f"Lease expired {now - lease.expires_at_ms}ms ago", owner_id=lease.owner_id
            )

        try:
            current = await self.remote.get(lease.key)
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Lease renew failed: {e}", operation="renew") from e

        if current is None or current.etag != lease.etag:
            raise LeaseExpiredError("Lease was released or reclaimed", owner_id=lease.owner_id)

        data = _parse_lease(current.body)
        if data is None or data.get("owner_id") != lease.owner_id:
            raise LeaseExpiredError("Lease is owned by another instance", owner_id=lease.owner_id)

        ttl_ms = int((ttl_seconds or self.ttl_seconds) * 1000)
        body = self._lease_body(lease.acquired_at_ms, now + ttl_ms)

        try:
            etag = await self.remote.put(
                lease.key, body, if_match=lease.etag, content_type="application/json"
            )
        except PreconditionFailedError as e:
            raise LeaseExpiredError(
                "Lease changed during renew", owner_id=lease.owner_id
            ) from e
        except ObjectStoreError as e:
            raise NetworkFailureError(f"Lease renew failed: {e}", operation="renew") from e

        return Lease(lease.key, lease.owner_id, lease.acquired_at_ms, now + ttl_ms, etag)

    async def release(self, lease: Lease) -> None:
        """Release a held lease. Never raises."""
        try:
            await self.remote.delete(lease.key, if_match=lease.etag)
            logger.debug("Released sync lease", extra={"owner_id": lease.owner_id})
        except PreconditionFailedError:
            logger.warning(
                "Lease was taken over before release",
                extra={"owner_id": lease.owner_id},
            )
        except ObjectStoreError as e:
            logger.warning(
                f"Failed to release lease, it will expire: {e}",
                extra={"owner_id": lease.owner_id, "expires_at_ms": lease.expires_at_ms},
            )
