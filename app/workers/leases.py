# app/workers/leases.py
from __future__ import annotations

"""
Transfer leases (Redis)
=======================

Guarantees that at most one job streams bytes for a given transfer, even when
the queue delivers the same work twice (resume re-enqueue, reconciliation
sweep, RQ retry racing a slow attempt).

Keys per transfer
-----------------
- `transfers:lock:<id>`     native redis-py `Lock`, TTL renewed while streaming
- `transfers:running:<id>`  set while a holder is active, cleared on clean exit
- `transfers:stalled:<id>`  number of times a holder vanished without cleanup

A fresh holder that finds the running marker under a *free* lock knows the
previous holder died mid-transfer (worker killed, OOM, host lost). That counts
as one stall; the worker abandons the record once the count passes
`TRANSFER_MAX_STALLED`.
"""

import logging
from typing import Optional

from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, RedisError

from app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

__all__ = ["LeaseLostError", "TransferLease", "LeaseProvider", "RedisTransferLease", "RedisLeaseProvider"]


class LeaseLostError(RuntimeError):
    """The lock expired or was taken over before it could be renewed."""


class TransferLease:
    """Per-transfer exclusivity handle used by `TransferWorker`."""

    async def acquire(self) -> bool:
        """Try once; False means another holder is active."""
        raise NotImplementedError

    async def mark_running(self) -> int:
        """Set the running marker and return the stall count observed."""
        raise NotImplementedError

    async def renew(self) -> None:
        """Extend the TTL; raise `LeaseLostError` if no longer owned."""
        raise NotImplementedError

    async def release(self, *, settled: bool = False) -> None:
        """Clear the running marker and unlock. ``settled`` also resets stalls."""
        raise NotImplementedError


class LeaseProvider:
    def lease(self, transfer_id: str) -> TransferLease:
        raise NotImplementedError

    async def is_active(self, transfer_id: str) -> bool:
        """True while some holder owns the lock (used by the reconciliation sweep)."""
        raise NotImplementedError


# ─────────────────────────────────────────────────────────────
# 🔒 Redis implementation
# ─────────────────────────────────────────────────────────────
class RedisTransferLease(TransferLease):
    def __init__(self, client: Redis, transfer_id: str, *, ttl_seconds: int, marker_ttl_seconds: int, prefix: str):
        self._client = client
        self._ttl = ttl_seconds
        self._marker_ttl = marker_ttl_seconds
        self.lock_key = f"{prefix}:lock:{transfer_id}"
        self.running_key = f"{prefix}:running:{transfer_id}"
        self.stalled_key = f"{prefix}:stalled:{transfer_id}"
        self._lock: Optional[Lock] = None

    async def acquire(self) -> bool:
        lock = self._client.lock(self.lock_key, timeout=self._ttl, blocking=False)
        acquired = bool(await lock.acquire(blocking=False))
        if acquired:
            self._lock = lock
        return acquired

    async def mark_running(self) -> int:
        previous = await self._client.getset(self.running_key, "1")
        await self._client.expire(self.running_key, self._marker_ttl)
        if previous is None:
            raw = await self._client.get(self.stalled_key)
            return int(raw or 0)
        stalls = int(await self._client.incr(self.stalled_key))
        await self._client.expire(self.stalled_key, self._marker_ttl)
        logger.warning("Stale running marker found key=%s stalls=%s", self.running_key, stalls)
        return stalls

    async def renew(self) -> None:
        if self._lock is None:
            raise LeaseLostError(self.lock_key)
        try:
            await self._lock.reacquire()
        except LockError as e:
            raise LeaseLostError(self.lock_key) from e

    async def release(self, *, settled: bool = False) -> None:
        keys = [self.running_key, self.stalled_key] if settled else [self.running_key]
        try:
            await self._client.delete(*keys)
        except RedisError:
            logger.warning("Lease marker cleanup failed key=%s", self.running_key, exc_info=True)
        if self._lock is not None:
            try:
                await self._lock.release()
            except LockError:
                logger.debug("Lease already expired key=%s", self.lock_key)
            finally:
                self._lock = None


class RedisLeaseProvider(LeaseProvider):
    def __init__(self, client: Redis, *, cfg: Settings = default_settings, prefix: str = "transfers"):
        self._client = client
        self._ttl = cfg.TRANSFER_LEASE_TTL_SECONDS
        # Outlive the longest job so a crash is still visible to the next attempt.
        self._marker_ttl = cfg.TRANSFER_JOB_TIMEOUT_SECONDS + cfg.TRANSFER_FAILURE_TTL_SECONDS
        self._prefix = prefix

    def lease(self, transfer_id: str) -> RedisTransferLease:
        return RedisTransferLease(
            self._client,
            str(transfer_id),
            ttl_seconds=self._ttl,
            marker_ttl_seconds=self._marker_ttl,
            prefix=self._prefix,
        )

    async def is_active(self, transfer_id: str) -> bool:
        return bool(await self._client.exists(f"{self._prefix}:lock:{transfer_id}"))
