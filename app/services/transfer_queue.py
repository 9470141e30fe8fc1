# app/services/transfer_queue.py
from __future__ import annotations

"""
Transfer Job Queue (Redis + RQ)
===============================

Decouples the admission decision (API request) from the byte transfer
(worker process). One RQ job carries `(transfer_id, user_id, content_id,
quality)`; the queue owns retry scheduling, the `transfers` row owns state.

Durability knobs (all from `Settings`)
--------------------------------------
- `Retry(max=TRANSFER_MAX_ATTEMPTS - 1, interval=transfer_backoff_schedule)`:
  bounded attempts with exponential backoff (2s, 4s, 8s, ... by default)
- `job_timeout`  → TRANSFER_JOB_TIMEOUT_SECONDS
- `result_ttl` / `failure_ttl` → finished and failed jobs stay in RQ's
  registries as history

Job ids are unique per enqueue (`transfer:<id>:<nonce>`) so history survives
re-admission; duplicate execution for the same row is prevented by the
worker's per-transfer lease, not by the id.

`enqueue` is async for callers but RQ is a blocking client, so the Redis
round-trip runs in a worker thread.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

__all__ = [
    "TRANSFER_JOB_FUNC",
    "TransferJob",
    "TransferQueue",
    "RQTransferQueue",
    "get_redis_connection",
    "get_transfer_queue",
]

# Import path resolved by the RQ worker process.
TRANSFER_JOB_FUNC = "app.workers.transfer_worker.run_transfer_job"


@dataclass(frozen=True)
class TransferJob:
    """Queue payload. Ids travel as strings so the job pickles cleanly."""

    transfer_id: str
    user_id: str
    content_id: str
    quality: str

    def as_kwargs(self) -> Dict[str, Any]:
        return asdict(self)


class TransferQueue:
    """Queue interface consumed by admission and the maintenance sweeps."""

    async def enqueue(self, job: TransferJob) -> str:
        """Schedule ``job``; returns the queue's job id."""
        raise NotImplementedError


# ─────────────────────────────────────────────────────────────
# 🔌 Redis / RQ wiring
# ─────────────────────────────────────────────────────────────
def get_redis_connection(cfg: Settings = default_settings) -> Redis:
    """Blocking Redis connection used by RQ (no response decoding; RQ pickles)."""
    return Redis.from_url(cfg.REDIS_URL)


class RQTransferQueue(TransferQueue):
    def __init__(self, queue: Queue, cfg: Settings = default_settings) -> None:
        self._queue = queue
        self._cfg = cfg

    @classmethod
    def from_settings(cls, cfg: Settings = default_settings) -> "RQTransferQueue":
        queue = Queue(
            name=cfg.TRANSFER_QUEUE_NAME,
            connection=get_redis_connection(cfg),
            default_timeout=cfg.TRANSFER_JOB_TIMEOUT_SECONDS,
        )
        return cls(queue, cfg)

    @property
    def queue(self) -> Queue:
        return self._queue

    def _retry_policy(self) -> Optional[Retry]:
        schedule = self._cfg.transfer_backoff_schedule
        if not schedule:
            return None
        return Retry(max=len(schedule), interval=schedule)

    def enqueue_sync(self, job: TransferJob) -> Job:
        return self._queue.enqueue(
            TRANSFER_JOB_FUNC,
            kwargs=job.as_kwargs(),
            job_id=f"transfer:{job.transfer_id}:{uuid.uuid4().hex[:12]}",
            retry=self._retry_policy(),
            job_timeout=self._cfg.TRANSFER_JOB_TIMEOUT_SECONDS,
            result_ttl=self._cfg.TRANSFER_RESULT_TTL_SECONDS,
            failure_ttl=self._cfg.TRANSFER_FAILURE_TTL_SECONDS,
            description=f"transfer {job.transfer_id} ({job.quality})",
        )

    async def enqueue(self, job: TransferJob) -> str:
        rq_job = await asyncio.to_thread(self.enqueue_sync, job)
        logger.info("Transfer job enqueued transfer=%s job=%s", job.transfer_id, rq_job.id)
        return rq_job.id


_default_queue: Optional[RQTransferQueue] = None


def get_transfer_queue() -> TransferQueue:
    """FastAPI dependency: process-wide RQ queue, built lazily on first use."""
    global _default_queue
    if _default_queue is None:
        _default_queue = RQTransferQueue.from_settings()
    return _default_queue
