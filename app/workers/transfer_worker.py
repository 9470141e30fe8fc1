# app/workers/transfer_worker.py
from __future__ import annotations

"""
📥 Vidvault — Transfer Worker
=============================

Streams one transfer's bytes from object storage to the user's local
directory, resumably, and drives the record through
`downloading → completed | failed`.

Flow
----
1. Load the record and its content. Missing record, missing content or a
   content row without an object key is **unrecoverable**: the record (if any)
   is marked failed and the job returns normally so RQ does not retry.
2. Paused, cancelled, completed or soft-deleted records are skipped.
3. Take the per-transfer lease. A second job for the same transfer exits as a
   no-op. A stale running marker counts as a stall; past `max_stalled` the
   record is failed and the job abandoned.
4. Resume offset: the **on-disk file size is authoritative**. An explicit
   offset is clamped to it; an offset at or past the remote size restarts the
   file from zero.
5. Ranged GET from S3; append (resume) or truncate (fresh) the local file.
6. Persist `{bytes_transferred, progress}` every `progress_interval_bytes`
   (0 = every chunk). Each persist re-reads status, so a pause or cancel made
   through the API stops the stream at the next checkpoint.
7. Completion: `completed`, `file_path`, `bytes_transferred = byte_size`,
   progress 100, quota recomputed.
8. Any other error: `failed`, `error_message`, `retry_count + 1`, re-raise for
   the RQ retry policy.

Byte counters
-------------
`bytes_transferred` is expressed in the record's own unit (`byte_size`, the
admission estimate): streamed bytes are projected onto `byte_size` in
proportion to the remote object size, clamped, and never decrease while the
record is downloading.

Entrypoint
----------
`run_transfer_job(...)` is the synchronous callable RQ imports
(`app.workers.transfer_worker.run_transfer_job`). It builds its own NullPool
engine, Redis client and S3 client for a single `asyncio.run` scope.
"""

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

from loguru import logger as loguru_logger
from rq import get_current_job
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.redis_client import build_async_redis
from app.db.base_class import utcnow
from app.db.models.content import Content
from app.db.models.transfer import Transfer
from app.db.session import create_worker_engine, session_factory_for
from app.schemas.enums import TransferEvent, TransferStatus
from app.services import storage_accounting
from app.services.transfer_queue import TransferJob
from app.services.transfer_state import apply_transition, can_transition
from app.utils.aws import S3Client
from app.workers.leases import LeaseLostError, LeaseProvider, RedisLeaseProvider, TransferLease

logger = logging.getLogger(__name__)

__all__ = ["TransferOutcome", "TransferWorker", "build_local_path", "run_transfer_job"]

_ERROR_MESSAGE_MAX = 2000


class TransferOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    LEASE_LOST = "lease_lost"
    ABANDONED = "abandoned"
    UNRECOVERABLE = "unrecoverable"


class UnrecoverableTransferError(RuntimeError):
    """Retrying cannot help (record/content/object reference missing)."""


class _Halted(Exception):
    """Internal: the record left `downloading` while the stream was running."""

    def __init__(self, outcome: TransferOutcome):
        super().__init__(outcome.value)
        self.outcome = outcome


def build_local_path(root_dir: Path | str, user_id: Any, content_id: Any, quality: str) -> Path:
    """`<root>/users/<user_id>/<content_id>_<quality>.mp4`"""
    return Path(root_dir) / "users" / str(user_id) / f"{content_id}_{quality}.mp4"


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove partial file path=%s", path, exc_info=True)


class TransferWorker:
    """
    Executes transfer jobs.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Opens short-lived sessions; each checkpoint commits on its own.
    storage : S3Client-like
        Needs `object_size(key, bucket=)` and
        `open_range(key, start=, bucket=, chunk_size=)` returning an object
        with `iter_chunks()` and `close()`. Both are blocking; they run in a
        thread.
    leases : LeaseProvider
        Per-transfer exclusivity.
    root_dir : Path
        Root of the per-user download tree.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: Any,
        leases: LeaseProvider,
        *,
        root_dir: Path | str,
        chunk_size: int = 1024 * 1024,
        progress_interval_bytes: int = 8 * 1024 * 1024,
        lease_renew_seconds: float = 15,
        max_stalled: int = 2,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._leases = leases
        self.root_dir = Path(root_dir)
        self.chunk_size = int(chunk_size)
        self.progress_interval_bytes = max(int(progress_interval_bytes), 0)
        self.lease_renew_seconds = float(lease_renew_seconds)
        self.max_stalled = int(max_stalled)

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        storage: Any,
        leases: LeaseProvider,
        cfg: Settings = default_settings,
    ) -> "TransferWorker":
        return cls(
            session_factory,
            storage,
            leases,
            root_dir=cfg.TRANSFER_ROOT_DIR,
            chunk_size=cfg.TRANSFER_CHUNK_SIZE_BYTES,
            progress_interval_bytes=cfg.TRANSFER_PROGRESS_INTERVAL_BYTES,
            lease_renew_seconds=cfg.TRANSFER_LEASE_RENEW_SECONDS,
            max_stalled=cfg.TRANSFER_MAX_STALLED,
        )

    # ────────────────────────────────────────────────────────────────────────
    # ▶️ Job entry
    # ────────────────────────────────────────────────────────────────────────
    async def run(self, job: TransferJob, *, resume_offset: Optional[int] = None) -> TransferOutcome:
        transfer_id = UUID(str(job.transfer_id))

        # ── [Step 1] Load record + content ─────────────────────────────────
        async with self._session_factory() as db:
            record = await db.get(Transfer, transfer_id)
            if record is None:
                logger.error("Transfer record missing transfer=%s; dropping job", transfer_id)
                return TransferOutcome.UNRECOVERABLE
            if str(record.user_id) != str(job.user_id) or str(record.content_id) != str(job.content_id):
                logger.error("Job payload does not match transfer=%s; dropping job", transfer_id)
                return TransferOutcome.UNRECOVERABLE

            # ── [Step 2] Decline records that must not run ─────────────────
            if record.deleted_at is not None or not can_transition(record.status, TransferEvent.START):
                logger.info("Transfer not runnable transfer=%s status=%s", transfer_id, record.status)
                return TransferOutcome.SKIPPED

            content = await db.get(Content, record.content_id)
            source_key = content.s3_key if content is not None else None
            source_bucket = content.s3_bucket if content is not None else None

        if not source_key:
            await self._mark_failed(transfer_id, "Content source unavailable", count_attempt=False)
            return TransferOutcome.UNRECOVERABLE

        # ── [Step 3] Lease ──────────────────────────────────────────────────
        lease = self._leases.lease(str(transfer_id))
        if not await lease.acquire():
            logger.info("Transfer already running elsewhere transfer=%s", transfer_id)
            return TransferOutcome.DUPLICATE

        outcome: Optional[TransferOutcome] = None
        try:
            stalls = await lease.mark_running()
            if stalls > self.max_stalled:
                await self._mark_failed(
                    transfer_id,
                    f"Transfer stalled {stalls} times; abandoned",
                    count_attempt=True,
                )
                outcome = TransferOutcome.ABANDONED
                return outcome

            outcome = await self._run_leased(
                transfer_id,
                lease,
                source_key=source_key,
                source_bucket=source_bucket,
                resume_offset=resume_offset,
            )
            return outcome
        finally:
            await lease.release(
                settled=outcome in (TransferOutcome.COMPLETED, TransferOutcome.ABANDONED, TransferOutcome.UNRECOVERABLE)
            )

    async def _run_leased(
        self,
        transfer_id: UUID,
        lease: TransferLease,
        *,
        source_key: str,
        source_bucket: Optional[str],
        resume_offset: Optional[int],
    ) -> TransferOutcome:
        lost = asyncio.Event()
        keeper = asyncio.create_task(self._keep_alive(lease, lost))
        try:
            return await self._transfer(
                transfer_id,
                source_key=source_key,
                source_bucket=source_bucket,
                resume_offset=resume_offset,
                lease_lost=lost,
            )
        except _Halted as halt:
            logger.info("Transfer stopped cooperatively transfer=%s outcome=%s", transfer_id, halt.outcome.value)
            return halt.outcome
        except LeaseLostError:
            logger.warning("Lease lost mid-transfer transfer=%s; leaving record to the new holder", transfer_id)
            return TransferOutcome.LEASE_LOST
        except UnrecoverableTransferError as e:
            await self._mark_failed(transfer_id, str(e), count_attempt=False)
            return TransferOutcome.UNRECOVERABLE
        except Exception as e:
            logger.exception("Transfer attempt failed transfer=%s", transfer_id)
            try:
                await self._mark_failed(transfer_id, str(e) or e.__class__.__name__, count_attempt=True)
            except Exception:
                logger.exception("Could not record failure transfer=%s", transfer_id)
            raise
        finally:
            keeper.cancel()
            try:
                await keeper
            except asyncio.CancelledError:
                pass

    async def _keep_alive(self, lease: TransferLease, lost: asyncio.Event) -> None:
        while True:
            await asyncio.sleep(self.lease_renew_seconds)
            try:
                await lease.renew()
            except LeaseLostError:
                lost.set()
                return
            except Exception:
                logger.warning("Lease renewal failed; will retry", exc_info=True)

    # ────────────────────────────────────────────────────────────────────────
    # 🚚 Streaming
    # ────────────────────────────────────────────────────────────────────────
    async def _transfer(
        self,
        transfer_id: UUID,
        *,
        source_key: str,
        source_bucket: Optional[str],
        resume_offset: Optional[int],
        lease_lost: asyncio.Event,
    ) -> TransferOutcome:
        remote_size = await asyncio.to_thread(self._storage.object_size, source_key, bucket=source_bucket)
        if remote_size is None:
            raise UnrecoverableTransferError("Source object not found")

        # ── [Step 4] Resume offset (disk is authoritative) ─────────────────
        async with self._session_factory() as db:
            record = await db.get(Transfer, transfer_id)
            if record is None:
                raise UnrecoverableTransferError("Transfer record disappeared")
            path = build_local_path(self.root_dir, record.user_id, record.content_id, record.quality)

            on_disk = path.stat().st_size if path.exists() else 0
            offset = on_disk if resume_offset is None else min(max(int(resume_offset), 0), on_disk)
            if offset > remote_size:
                # Local file is longer than the source; start over.
                offset = 0

            # ── [Step 5] Flip to downloading (re-checks status) ────────────
            if record.deleted_at is not None or not can_transition(record.status, TransferEvent.START):
                raise _Halted(self._halt_outcome(record.status, record.deleted_at) or TransferOutcome.SKIPPED)
            was_downloading = record.status == TransferStatus.DOWNLOADING
            apply_transition(record, TransferEvent.START)
            projected = self._project(offset, remote_size, int(record.byte_size))
            percent = self._percent(offset, remote_size)
            if was_downloading:
                record.bytes_transferred = max(int(record.bytes_transferred or 0), projected)
                record.progress = max(int(record.progress or 0), percent)
            else:
                # New attempt: counters rebase onto what is actually on disk.
                record.bytes_transferred = projected
                record.progress = percent
            record.file_path = str(path)
            record.error_message = None
            await db.commit()
            user_id = record.user_id

        path.parent.mkdir(parents=True, exist_ok=True)
        if offset < on_disk:
            os.truncate(path, offset)

        # ── [Step 6] Stream with batched checkpoints ───────────────────────
        written = offset
        if offset == remote_size:
            # Local copy already holds every byte; nothing left to fetch.
            path.touch(exist_ok=True)
            logger.info("Transfer already on disk transfer=%s size=%s", transfer_id, remote_size)
        else:
            mode = "ab" if offset > 0 else "wb"
            logger.info(
                "Transfer streaming transfer=%s offset=%s remote_size=%s mode=%s",
                transfer_id, offset, remote_size, mode,
            )
            written = await self._stream(
                transfer_id,
                path,
                mode,
                source_key=source_key,
                source_bucket=source_bucket,
                offset=offset,
                remote_size=remote_size,
                lease_lost=lease_lost,
            )

        if written < remote_size:
            raise IOError(f"Stream ended early at {written} of {remote_size} bytes")

        # ── [Step 7] Finalize ──────────────────────────────────────────────
        async with self._session_factory() as db:
            record = await db.get(Transfer, transfer_id)
            if record is None:
                raise UnrecoverableTransferError("Transfer record disappeared")
            halted = self._halt_outcome(record.status, record.deleted_at)
            if halted is not None:
                self._cleanup_after_halt(halted, path)
                raise _Halted(halted)
            apply_transition(record, TransferEvent.COMPLETE)
            record.file_path = str(path)
            record.bytes_transferred = int(record.byte_size)
            record.progress = 100
            record.error_message = None
            await db.flush()
            await storage_accounting.refresh_used(db, user_id)
            await db.commit()

        logger.info("Transfer completed transfer=%s bytes=%s path=%s", transfer_id, written, path)
        return TransferOutcome.COMPLETED

    async def _stream(
        self,
        transfer_id: UUID,
        path: Path,
        mode: str,
        *,
        source_key: str,
        source_bucket: Optional[str],
        offset: int,
        remote_size: int,
        lease_lost: asyncio.Event,
    ) -> int:
        """Append the remote bytes from ``offset`` to ``path``; returns the bytes on disk."""
        ranged = await asyncio.to_thread(
            self._storage.open_range,
            source_key,
            start=offset,
            bucket=source_bucket,
            chunk_size=self.chunk_size,
        )
        written = offset
        last_checkpoint = offset
        try:
            chunks = ranged.iter_chunks()
            with open(path, mode) as fh:
                while True:
                    chunk = await asyncio.to_thread(next, chunks, None)
                    if chunk is None:
                        break
                    if lease_lost.is_set():
                        raise LeaseLostError(str(transfer_id))
                    await asyncio.to_thread(fh.write, chunk)
                    written += len(chunk)
                    if written - last_checkpoint >= self.progress_interval_bytes:
                        await asyncio.to_thread(fh.flush)
                        await self._checkpoint(transfer_id, written, remote_size, path)
                        last_checkpoint = written
        finally:
            await asyncio.to_thread(ranged.close)
        return written

    async def _checkpoint(self, transfer_id: UUID, written: int, remote_size: int, path: Path) -> None:
        """Persist progress if the record is still downloading; otherwise halt."""
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    select(
                        Transfer.status,
                        Transfer.deleted_at,
                        Transfer.byte_size,
                        Transfer.bytes_transferred,
                        Transfer.progress,
                    ).where(Transfer.id == transfer_id)
                )
            ).one_or_none()
            if row is None:
                self._cleanup_after_halt(TransferOutcome.CANCELLED, path)
                raise _Halted(TransferOutcome.CANCELLED)
            halted = self._halt_outcome(row.status, row.deleted_at)
            if halted is not None:
                self._cleanup_after_halt(halted, path)
                raise _Halted(halted)

            new_bytes = max(int(row.bytes_transferred), self._project(written, remote_size, int(row.byte_size)))
            new_progress = max(int(row.progress), self._percent(written, remote_size))
            await db.execute(
                update(Transfer)
                .where(Transfer.id == transfer_id, Transfer.status == TransferStatus.DOWNLOADING)
                .values(bytes_transferred=new_bytes, progress=new_progress, updated_at=utcnow())
            )
            await db.commit()
        logger.debug("Transfer checkpoint transfer=%s written=%s progress=%s", transfer_id, written, new_progress)

    # ────────────────────────────────────────────────────────────────────────
    # 🧰 Helpers
    # ────────────────────────────────────────────────────────────────────────
    @staticmethod
    def _project(written: int, remote_size: int, byte_size: int) -> int:
        if remote_size <= 0:
            return 0
        return min(byte_size, (int(written) * byte_size) // int(remote_size))

    @staticmethod
    def _percent(written: int, remote_size: int) -> int:
        if remote_size <= 0:
            return 0
        return min(100, (int(written) * 100) // int(remote_size))

    @staticmethod
    def _halt_outcome(status: TransferStatus, deleted_at: Any) -> Optional[TransferOutcome]:
        if deleted_at is not None or status == TransferStatus.CANCELLED:
            return TransferOutcome.CANCELLED
        if status == TransferStatus.PAUSED:
            return TransferOutcome.PAUSED
        if status != TransferStatus.DOWNLOADING:
            return TransferOutcome.SKIPPED
        return None

    @staticmethod
    def _cleanup_after_halt(outcome: TransferOutcome, path: Path) -> None:
        # Paused transfers keep their partial file for the next resume.
        if outcome == TransferOutcome.CANCELLED:
            _unlink_quietly(path)

    async def _mark_failed(self, transfer_id: UUID, message: str, *, count_attempt: bool) -> None:
        """Record a failure unless the user already moved the record elsewhere."""
        async with self._session_factory() as db:
            record = await db.get(Transfer, transfer_id)
            if record is None or record.deleted_at is not None:
                return
            if not can_transition(record.status, TransferEvent.FAIL):
                logger.info(
                    "Failure not recorded transfer=%s status=%s error=%s", transfer_id, record.status, message
                )
                return
            apply_transition(record, TransferEvent.FAIL)
            record.error_message = message[:_ERROR_MESSAGE_MAX]
            if count_attempt:
                record.retry_count = int(record.retry_count or 0) + 1
            await db.commit()
        logger.warning("Transfer marked failed transfer=%s error=%s", transfer_id, message)


# ─────────────────────────────────────────────────────────────
# 🔌 RQ entrypoint
# ─────────────────────────────────────────────────────────────
async def _run_job(job: TransferJob, cfg: Settings) -> str:
    engine = create_worker_engine()
    redis_client = build_async_redis(cfg.REDIS_URL)
    try:
        worker = TransferWorker.from_settings(
            session_factory_for(engine),
            S3Client(),
            RedisLeaseProvider(redis_client, cfg=cfg),
            cfg=cfg,
        )
        outcome = await worker.run(job)
        return outcome.value
    finally:
        await redis_client.aclose()
        await engine.dispose()


def run_transfer_job(
    transfer_id: str,
    user_id: str,
    content_id: str,
    quality: str,
) -> str:
    """Synchronous job callable imported by the RQ worker."""
    current = get_current_job()
    job = TransferJob(transfer_id=str(transfer_id), user_id=str(user_id), content_id=str(content_id), quality=quality)
    with loguru_logger.contextualize(job_id=current.id if current else None, transfer_id=job.transfer_id):
        return asyncio.run(_run_job(job, default_settings))
