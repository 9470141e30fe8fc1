# app/services/transfer_service.py
from __future__ import annotations

"""
Vidvault — Transfer Admission Service
=====================================

Gatekeeper for every user-initiated change to an offline transfer. It never
touches bytes itself: it validates, records, and hands work to the queue.

Operations
----------
- `request_transfer`  → validate quality + content, conflict check, quota check,
                        upsert `pending`, enqueue one job (best-effort)
- `pause` / `resume`  → state flips; resume re-enqueues so a worker picks it up
- `cancel`            → non-completed → cancelled (+soft-deleted), partial file removed
- `delete`            → completed → soft-deleted, file removed, quota recomputed
- `delete_all`        → bulk hard-delete with pre-deletion freed-bytes summary
- `list_transfers` / `get_progress` / `dashboard` / `get_playable_file` → reads

Failure semantics
-----------------
- Client errors are `AppException` subclasses with stable reason codes.
- Infrastructure hiccups (enqueue, file unlink) are logged and swallowed; the
  record is already committed, and the reconciliation sweep re-enqueues
  `pending` records that never reached a worker.
- The service commits its own unit of work; the quota cache is recomputed in
  the same transaction as the state change that affects it.
"""

import logging
import math
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete as sa_delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import (
    ContentUnavailableError,
    InsufficientStorageError,
    InvalidQualityError,
    SubscriptionRequiredError,
    TransferConflictError,
    TransferNotFoundError,
)
from app.db.base_class import utcnow
from app.db.models.content import Content
from app.db.models.transfer import Transfer
from app.schemas.enums import TransferEvent, TransferStatus
from app.services import storage_accounting
from app.services.transfer_queue import TransferJob, TransferQueue
from app.services.transfer_state import (
    apply_transition,
    can_readmit,
    reset_for_readmission,
)

logger = logging.getLogger(__name__)

__all__ = ["TransferService", "serialize_transfer", "clamp_pagination", "remove_local_file"]

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


# ─────────────────────────────────────────────────────────────
# 🧰 Helpers
# ─────────────────────────────────────────────────────────────
def clamp_pagination(page: Optional[int], take: Optional[int]) -> Tuple[int, int]:
    """page ≥ 1, take ∈ [1, 100] (default 20)."""
    page_num = max(1, int(page or 1))
    take_num = min(MAX_PAGE_SIZE, max(1, int(take if take is not None else DEFAULT_PAGE_SIZE)))
    return page_num, take_num


def remove_local_file(path: Optional[str]) -> bool:
    """Best-effort unlink. Returns True when a file was removed."""
    if not path:
        return False
    try:
        Path(path).unlink()
        logger.info("Deleted local file path=%s", path)
        return True
    except FileNotFoundError:
        return False
    except OSError:
        logger.exception("Error deleting local file path=%s", path)
        return False


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_transfer(record: Transfer, *, title: Optional[str] = None) -> Dict[str, Any]:
    """Client view of a record. 64-bit byte counters are sent as strings."""
    byte_size = int(record.byte_size or 0)
    transferred = int(record.bytes_transferred or 0)
    body: Dict[str, Any] = {
        "id": str(record.id),
        "user_id": str(record.user_id),
        "content_id": str(record.content_id),
        "status": TransferStatus(record.status).value,
        "quality": record.quality,
        "progress": int(record.progress or 0),
        "byte_size": str(byte_size),
        "bytes_transferred": str(transferred),
        "file_size": storage_accounting.format_bytes(byte_size),
        "downloaded": storage_accounting.format_bytes(transferred),
        "error_message": record.error_message,
        "retry_count": int(record.retry_count or 0),
        "expires_at": _iso(record.expires_at),
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }
    if title is not None:
        body["content"] = {"id": str(record.content_id), "title": title}
    return body


# ─────────────────────────────────────────────────────────────
# 🚦 Service
# ─────────────────────────────────────────────────────────────
class TransferService:
    """Admission controller for offline transfers.

    Parameters
    ----------
    db : AsyncSession
        Request-scoped session; the service commits its own work.
    queue : TransferQueue
        Injected job queue (RQ in production, an in-memory fake in tests).
    cfg : Settings
        Multiplier table, retention window and defaults.
    """

    def __init__(self, db: AsyncSession, queue: TransferQueue, cfg: Settings = default_settings) -> None:
        self.db = db
        self.queue = queue
        self.cfg = cfg

    # ── Lookups ────────────────────────────────────────────────
    async def _get_owned(self, user_id: UUID, transfer_id: UUID) -> Transfer:
        res = await self.db.execute(
            select(Transfer).where(
                Transfer.id == transfer_id,
                Transfer.user_id == user_id,
                Transfer.deleted_at.is_(None),
            )
        )
        record = res.scalar_one_or_none()
        if record is None:
            raise TransferNotFoundError()
        return record

    async def _find_for_pair(self, user_id: UUID, content_id: UUID) -> Optional[Transfer]:
        res = await self.db.execute(
            select(Transfer).where(Transfer.user_id == user_id, Transfer.content_id == content_id)
        )
        return res.scalar_one_or_none()

    async def _enqueue(self, record: Transfer) -> Optional[str]:
        """Fire-and-forget enqueue. Failures are logged; the record stays `pending`/`downloading`."""
        job = TransferJob(
            transfer_id=str(record.id),
            user_id=str(record.user_id),
            content_id=str(record.content_id),
            quality=record.quality,
        )
        try:
            job_id = await self.queue.enqueue(job)
        except Exception:
            logger.exception("Enqueue failed transfer=%s; left for reconciliation sweep", record.id)
            return None
        record.queue_job_id = job_id
        await self.db.commit()
        return job_id

    # ────────────────────────────────────────────────────────────
    # ➕ Request
    # ────────────────────────────────────────────────────────────
    async def request_transfer(
        self,
        user_id: UUID,
        content_id: UUID,
        quality: Optional[str] = None,
    ) -> Transfer:
        """
        Admit a transfer request.

        Steps
        -----
        - **[Step 1]** Quality must be a key of the multiplier table.
        - **[Step 2]** Content must exist, be published and not deleted.
        - **[Step 3]** A live record for the pair is a conflict; a failed,
          cancelled or soft-deleted one is reset in place.
        - **[Step 4]** Estimated size must fit the remaining quota.
        - **[Step 5]** Upsert `pending` with fresh counters and expiry; commit.
        - **[Step 6]** Enqueue one job (best-effort).
        """
        multipliers = self.cfg.TRANSFER_QUALITY_MULTIPLIERS
        label = (quality or self.cfg.TRANSFER_DEFAULT_QUALITY).strip().lower()

        # ── [Step 1] Quality ───────────────────────────────────────
        if label not in multipliers:
            raise InvalidQualityError(quality=label, allowed=sorted(multipliers))

        # ── [Step 2] Content ───────────────────────────────────────
        content = await self.db.get(Content, content_id)
        if content is None or not content.is_transferable:
            raise ContentUnavailableError()
        estimate = storage_accounting.estimate_transfer_size(int(content.file_size_bytes or 0), label, multipliers)

        # ── [Step 3] Conflict / reset ──────────────────────────────
        existing = await self._find_for_pair(user_id, content_id)
        if existing is not None and not can_readmit(existing):
            raise TransferConflictError(
                current_status=TransferStatus(existing.status).value,
                existing=serialize_transfer(existing, title=content.title),
            )

        # ── [Step 4] Quota ─────────────────────────────────────────
        check = await storage_accounting.check_available(self.db, user_id, estimate)
        if not check.available:
            if check.code == "SUBSCRIPTION_REQUIRED":
                raise SubscriptionRequiredError("Storage quota not available for this user")
            raise InsufficientStorageError(storage_info=check.storage_info())

        # ── [Step 5] Upsert ────────────────────────────────────────
        expires_at = utcnow() + timedelta(days=self.cfg.TRANSFER_RETENTION_DAYS)
        if existing is not None:
            stale_path = existing.file_path if existing.quality != label else None
            record = reset_for_readmission(existing, quality=label, byte_size=estimate, expires_at=expires_at)
            remove_local_file(stale_path)
        else:
            record = Transfer(
                user_id=user_id,
                content_id=content_id,
                status=TransferStatus.PENDING,
                quality=label,
                byte_size=estimate,
                bytes_transferred=0,
                progress=0,
                retry_count=0,
                expires_at=expires_at,
            )
            self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent request for the same pair.
            await self.db.rollback()
            winner = await self._find_for_pair(user_id, content_id)
            raise TransferConflictError(
                current_status=TransferStatus(winner.status).value if winner else TransferStatus.PENDING.value,
                existing=serialize_transfer(winner, title=content.title) if winner else None,
            )
        logger.info(
            "Transfer admitted transfer=%s user=%s content=%s quality=%s bytes=%s",
            record.id, user_id, content_id, label, estimate,
        )

        # ── [Step 6] Enqueue ───────────────────────────────────────
        await self._enqueue(record)
        return record

    # ────────────────────────────────────────────────────────────
    # ⏯️ Pause / resume
    # ────────────────────────────────────────────────────────────
    async def pause(self, user_id: UUID, transfer_id: UUID) -> Transfer:
        record = await self._get_owned(user_id, transfer_id)
        apply_transition(record, TransferEvent.PAUSE)
        await self.db.commit()
        logger.info("Transfer paused transfer=%s", transfer_id)
        return record

    async def resume(self, user_id: UUID, transfer_id: UUID) -> Transfer:
        """Flip `paused → downloading` and enqueue a job to continue from disk."""
        record = await self._get_owned(user_id, transfer_id)
        apply_transition(record, TransferEvent.RESUME)
        await self.db.commit()
        logger.info("Transfer resumed transfer=%s", transfer_id)
        await self._enqueue(record)
        return record

    # ────────────────────────────────────────────────────────────
    # 🗑️ Cancel / delete
    # ────────────────────────────────────────────────────────────
    async def cancel(self, user_id: UUID, transfer_id: UUID) -> Transfer:
        record = await self._get_owned(user_id, transfer_id)
        apply_transition(record, TransferEvent.CANCEL)
        remove_local_file(record.file_path)
        await self.db.flush()
        await storage_accounting.refresh_used(self.db, user_id)
        await self.db.commit()
        logger.info("Transfer cancelled transfer=%s", transfer_id)
        return record

    async def delete(self, user_id: UUID, transfer_id: UUID) -> Dict[str, Any]:
        """Remove a completed transfer; returns the record and bytes freed."""
        record = await self._get_owned(user_id, transfer_id)
        apply_transition(record, TransferEvent.DELETE)
        file_deleted = remove_local_file(record.file_path)
        await self.db.flush()
        await storage_accounting.refresh_used(self.db, user_id)
        await self.db.commit()
        freed = int(record.byte_size or 0)
        logger.info("Transfer deleted transfer=%s freed=%s", transfer_id, freed)
        return {
            "download": serialize_transfer(record),
            "file_deleted": file_deleted,
            "freed_storage": storage_accounting.format_bytes(freed),
            "freed_storage_bytes": str(freed),
        }

    async def delete_all(self, user_id: UUID) -> Dict[str, Any]:
        """
        Hard-delete every non-deleted record for the user.

        Freed bytes are summed from completed records **before** deletion;
        only those were counted against the quota.
        """
        rows = (
            await self.db.execute(
                select(Transfer.id, Transfer.status, Transfer.byte_size, Transfer.file_path).where(
                    Transfer.user_id == user_id,
                    Transfer.deleted_at.is_(None),
                )
            )
        ).all()
        if not rows:
            return {
                "message": "No downloads to delete",
                "deleted_count": 0,
                "files_deleted": 0,
                "freed_storage": "0 B",
                "freed_storage_bytes": "0",
            }

        files_deleted = sum(1 for row in rows if remove_local_file(row.file_path))
        freed = sum(int(row.byte_size or 0) for row in rows if row.status == TransferStatus.COMPLETED)

        await self.db.execute(
            sa_delete(Transfer)
            .where(Transfer.id.in_([row.id for row in rows]))
            .execution_options(synchronize_session=False)
        )
        await storage_accounting.refresh_used(self.db, user_id)
        await self.db.commit()

        freed_text = storage_accounting.format_bytes(freed)
        logger.info("Transfers cleared user=%s count=%s freed=%s", user_id, len(rows), freed)
        return {
            "message": f"All downloads deleted - freed {freed_text}",
            "deleted_count": len(rows),
            "files_deleted": files_deleted,
            "freed_storage": freed_text,
            "freed_storage_bytes": str(freed),
        }

    # ────────────────────────────────────────────────────────────
    # 🔎 Reads
    # ────────────────────────────────────────────────────────────
    async def list_transfers(
        self,
        user_id: UUID,
        *,
        status: Optional[TransferStatus] = None,
        page: Optional[int] = 1,
        take: Optional[int] = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        """Paged, newest-activity-first list with content titles."""
        page_num, take_num = clamp_pagination(page, take)
        filters = [Transfer.user_id == user_id, Transfer.deleted_at.is_(None)]
        if status is not None:
            filters.append(Transfer.status == status)

        total = int((await self.db.execute(select(func.count(Transfer.id)).where(*filters))).scalar_one())
        res = await self.db.execute(
            select(Transfer, Content.title)
            .outerjoin(Content, Content.id == Transfer.content_id)
            .where(*filters)
            .order_by(Transfer.updated_at.desc(), Transfer.id)
            .offset((page_num - 1) * take_num)
            .limit(take_num)
        )
        items: List[Dict[str, Any]] = [serialize_transfer(rec, title=title or "") for rec, title in res.all()]
        return {
            "downloads": items,
            "pagination": {
                "page": page_num,
                "take": take_num,
                "total": total,
                "totalPages": math.ceil(total / take_num) if total else 0,
            },
        }

    async def get_progress(self, user_id: UUID, transfer_id: UUID) -> Dict[str, Any]:
        record = await self._get_owned(user_id, transfer_id)
        title = (await self.db.execute(select(Content.title).where(Content.id == record.content_id))).scalar_one_or_none()
        return serialize_transfer(record, title=title or "")

    async def get_playable_file(self, user_id: UUID, transfer_id: UUID) -> Path:
        """Local path of a completed transfer, for Range-aware playback."""
        res = await self.db.execute(
            select(Transfer).where(
                Transfer.id == transfer_id,
                Transfer.user_id == user_id,
                Transfer.status == TransferStatus.COMPLETED,
                Transfer.deleted_at.is_(None),
            )
        )
        record = res.scalar_one_or_none()
        if record is None:
            raise TransferNotFoundError("Download not found or not completed")
        path = Path(record.file_path) if record.file_path else None
        if path is None or not path.is_file():
            raise TransferNotFoundError("Downloaded file not found")
        return path

    async def status_summary(self, user_id: UUID) -> Dict[str, int]:
        counts = {s.value: 0 for s in TransferStatus}
        res = await self.db.execute(
            select(Transfer.status, func.count(Transfer.id))
            .where(Transfer.user_id == user_id, Transfer.deleted_at.is_(None))
            .group_by(Transfer.status)
        )
        for status_value, count in res.all():
            counts[TransferStatus(status_value).value] = int(count)
        return counts

    async def dashboard(self, user_id: UUID, *, page: Optional[int] = 1, take: Optional[int] = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        """Quota snapshot, alert, per-status counts and a page of transfers."""
        storage = await storage_accounting.storage_snapshot(self.db, user_id)
        if storage is None:
            raise SubscriptionRequiredError("Storage not available for this user")
        alert = await storage_accounting.alert_status(self.db, user_id)
        listing = await self.list_transfers(user_id, page=page, take=take)
        return {
            "storage": storage,
            "alert": alert.as_dict() if alert else None,
            "downloads_summary": await self.status_summary(user_id),
            **listing,
        }
