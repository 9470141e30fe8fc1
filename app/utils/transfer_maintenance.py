# app/utils/transfer_maintenance.py
from __future__ import annotations

"""
Vidvault — transfer maintenance sweeps
--------------------------------------
- Re-enqueue `pending` transfers whose job never reached a worker (enqueue
  failed, Redis flushed) and `downloading` transfers whose worker died without
  leaving a live lease behind
- Purge completed transfers past `expires_at` for users with auto-delete on
- Replica-safe via a Redis distributed lock
- Interval from `TRANSFER_SWEEP_INTERVAL_MINUTES`
"""

import logging
import os
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional
from uuid import UUID

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.redis_client import redis_wrapper
from app.db.base_class import utcnow
from app.db.models.storage_quota import StorageQuota
from app.db.models.transfer import Transfer
from app.db.session import async_session_maker
from app.schemas.enums import TransferStatus
from app.services import storage_accounting
from app.services.transfer_queue import TransferJob, TransferQueue, get_transfer_queue
from app.workers.leases import LeaseProvider, RedisLeaseProvider

logger = logging.getLogger("transfer-maintenance")

_LOCK_KEY = "maintenance:transfers:lock"
_LOCK_TTL_SECONDS = int(os.getenv("TRANSFER_SWEEP_LOCK_TTL_SECONDS", "300"))


# ─────────────────────────────────────────────
# 🔁 Reconciliation
# ─────────────────────────────────────────────
async def reconcile_stale_pending(
    session_factory: async_sessionmaker[AsyncSession],
    queue: TransferQueue,
    leases: Optional[LeaseProvider] = None,
    *,
    cfg: Settings = default_settings,
    now: Optional[datetime] = None,
) -> int:
    """
    Re-enqueue transfers stuck before or during streaming.

    - `pending` and untouched for `TRANSFER_STALE_PENDING_MINUTES`
    - `downloading`, untouched for as long, and no worker holds its lease
      (only checked when ``leases`` is given)

    `updated_at` is bumped on every re-enqueue so a record is retried at most
    once per stale window. Returns the number of jobs enqueued.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=cfg.TRANSFER_STALE_PENDING_MINUTES)
    statuses = [TransferStatus.PENDING]
    if leases is not None:
        statuses.append(TransferStatus.DOWNLOADING)

    async with session_factory() as db:
        res = await db.execute(
            select(Transfer)
            .where(
                Transfer.status.in_(statuses),
                Transfer.deleted_at.is_(None),
                Transfer.updated_at < cutoff,
            )
            .order_by(Transfer.updated_at)
        )
        candidates: List[Transfer] = list(res.scalars().all())

        enqueued = 0
        for record in candidates:
            if record.status == TransferStatus.DOWNLOADING and await leases.is_active(str(record.id)):
                continue
            job = TransferJob(
                transfer_id=str(record.id),
                user_id=str(record.user_id),
                content_id=str(record.content_id),
                quality=record.quality,
            )
            try:
                record.queue_job_id = await queue.enqueue(job)
            except Exception:
                logger.exception("Reconcile enqueue failed transfer=%s", record.id)
                continue
            record.updated_at = utcnow()
            enqueued += 1
        await db.commit()

    if enqueued:
        logger.info("Transfer reconcile: re-enqueued=%s of candidates=%s", enqueued, len(candidates))
    else:
        logger.debug("Transfer reconcile: nothing stale")
    return enqueued


# ─────────────────────────────────────────────
# 🧹 Auto-delete
# ─────────────────────────────────────────────
async def purge_expired_transfers(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: Optional[datetime] = None,
) -> int:
    """
    Hard-delete completed transfers past `expires_at` for users who enabled
    auto-delete, remove their files, and recompute each affected quota.
    """
    moment = now or utcnow()
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(Transfer.id, Transfer.user_id, Transfer.file_path)
                .join(StorageQuota, StorageQuota.user_id == Transfer.user_id)
                .where(
                    StorageQuota.auto_delete_enabled.is_(True),
                    Transfer.status == TransferStatus.COMPLETED,
                    Transfer.deleted_at.is_(None),
                    Transfer.expires_at.is_not(None),
                    Transfer.expires_at < moment,
                )
            )
        ).all()
        if not rows:
            logger.debug("Transfer purge: nothing expired")
            return 0

        by_user: Dict[UUID, List[UUID]] = defaultdict(list)
        for row in rows:
            by_user[row.user_id].append(row.id)
            if row.file_path:
                try:
                    Path(row.file_path).unlink(missing_ok=True)
                except OSError:
                    logger.warning("Expired file not removed path=%s", row.file_path, exc_info=True)

        await db.execute(
            delete(Transfer)
            .where(Transfer.id.in_([row.id for row in rows]))
            .execution_options(synchronize_session=False)
        )
        for user_id in by_user:
            await storage_accounting.refresh_used(db, user_id)
        await db.commit()

    logger.info("Transfer purge: deleted=%s users=%s cutoff=%s", len(rows), len(by_user), moment.isoformat())
    return len(rows)


# ─────────────────────────────────────────────
# 🔒 Locked entrypoint
# ─────────────────────────────────────────────
async def run_transfer_sweeps() -> None:
    """
    Both sweeps under one Redis lock so only one replica runs them at a time.
    """
    if not await redis_wrapper.is_connected():
        await redis_wrapper.connect()

    try:
        async with redis_wrapper.lock(_LOCK_KEY, timeout=_LOCK_TTL_SECONDS, blocking_timeout=2):
            await reconcile_stale_pending(
                async_session_maker,
                get_transfer_queue(),
                RedisLeaseProvider(redis_wrapper.client, cfg=default_settings),
            )
            await purge_expired_transfers(async_session_maker)
    except TimeoutError:
        logger.debug("Transfer sweeps skipped; another replica holds the lock")


# ─────────────────────────────────────────────
# ⏰ Scheduler
# ─────────────────────────────────────────────
def start_transfer_maintenance_scheduler(
    *,
    interval_minutes: Optional[int] = None,
    jitter_seconds: int = int(os.getenv("TRANSFER_SWEEP_JITTER_SECONDS", "15")),
):
    """
    Start the APScheduler job on the running event loop.

    Args:
        interval_minutes: override; defaults to TRANSFER_SWEEP_INTERVAL_MINUTES.
        jitter_seconds: small randomization to avoid thundering herd.
    """
    minutes = int(interval_minutes if interval_minutes is not None else default_settings.TRANSFER_SWEEP_INTERVAL_MINUTES)

    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    scheduler.add_job(
        run_transfer_sweeps,
        IntervalTrigger(minutes=minutes, jitter=jitter_seconds, timezone=timezone.utc),
        id="transfer_sweeps",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Transfer maintenance scheduler started | interval=%sm, jitter=%ss", minutes, jitter_seconds)
    return scheduler


__all__ = [
    "reconcile_stale_pending",
    "purge_expired_transfers",
    "run_transfer_sweeps",
    "start_transfer_maintenance_scheduler",
]
