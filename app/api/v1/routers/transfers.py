# ╔══════════════════════════════════════════════════════════════════════════╗
# ║ Vidvault · Offline Transfers API                                         ║
# ╠──────────────────────────────────────────────────────────────────────────╣
# ║ Endpoints (user-authenticated):                                          ║
# ║  - POST   /transfers                      → Request a transfer (201)     ║
# ║  - GET    /transfers                      → List (status filter, paged)  ║
# ║  - GET    /transfers/quota                → Storage snapshot             ║
# ║  - DELETE /transfers/cleanup              → Delete all transfers         ║
# ║  - GET    /transfers/{id}/progress        → Progress of one transfer     ║
# ║  - PATCH  /transfers/{id}/pause           → Pause                        ║
# ║  - PATCH  /transfers/{id}/resume          → Resume (re-enqueues)         ║
# ║  - DELETE /transfers/{id}                 → Cancel a non-completed one   ║
# ║  - DELETE /transfers/{id}/delete          → Delete a completed one       ║
# ║  - GET    /transfers/{id}/play            → Range-aware local playback   ║
# ╠──────────────────────────────────────────────────────────────────────────╣
# ║ Security & Operational Practices                                         ║
# ║  - Auth: Bearer access token via `get_current_user`.                     ║
# ║  - Entitlement: requesting, resuming and playing need an active paid     ║
# ║    plan; listing, cancelling and deleting stay open so lapsed users can  ║
# ║    clean up.                                                             ║
# ║  - Rate limiting (SlowAPI) on every mutating route.                      ║
# ║  - Cache control: JSON responses are `Cache-Control: no-store`.          ║
# ║  - Errors leave as the `{success: false, reason, ...}` envelope.         ║
# ╚══════════════════════════════════════════════════════════════════════════╝

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.http_utils import iter_file_range, json_no_store, parse_byte_range
from app.core.exceptions import SubscriptionRequiredError
from app.core.limiter import rate_limit
from app.core.security import get_current_user
from app.db.models.user import User
from app.db.session import get_async_db
from app.dependencies.entitlement import require_transfer_entitlement
from app.schemas.enums import TransferStatus
from app.schemas.transfers import TransferCreate
from app.services import storage_accounting
from app.services.transfer_queue import TransferQueue, get_transfer_queue
from app.services.transfer_service import TransferService, serialize_transfer

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/transfers",
    tags=["Transfers"],
    responses={
        400: {"description": "Bad Request"},
        401: {"description": "Unauthorized"},
        403: {"description": "Subscription required"},
        404: {"description": "Not Found"},
        409: {"description": "Conflict"},
        413: {"description": "Insufficient storage"},
        429: {"description": "Too Many Requests"},
        500: {"description": "Internal Server Error"},
    },
)


# ─────────────────────────────────────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────────────────────────────────────

def get_transfer_service(
    db: AsyncSession = Depends(get_async_db),
    queue: TransferQueue = Depends(get_transfer_queue),
) -> TransferService:
    return TransferService(db, queue)


# ─────────────────────────────────────────────────────────────────────────────
# ➕ Request
# ─────────────────────────────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED, summary="Request an offline transfer")
@rate_limit("10/minute")
async def request_transfer(
    payload: TransferCreate,
    request: Request,
    response: Response,
    current_user: User = Depends(require_transfer_entitlement),
    service: TransferService = Depends(get_transfer_service),
):
    """
    Admit a transfer for `content_id` at `quality` and queue the byte copy.

    Responses
    ---------
    - 201 `{success, message, download}`
    - 400 `INVALID_QUALITY`
    - 403 `SUBSCRIPTION_REQUIRED`
    - 404 `CONTENT_NOT_FOUND`
    - 409 `TRANSFER_EXISTS` (existing record under `download`)
    - 413 `INSUFFICIENT_STORAGE` (figures under `storage_info`)
    """
    record = await service.request_transfer(current_user.id, payload.content_id, payload.quality)
    return json_no_store(
        {"success": True, "message": "Download started", "download": serialize_transfer(record)},
        status_code=status.HTTP_201_CREATED,
    )


# ─────────────────────────────────────────────────────────────────────────────
# 📋 Reads
# ─────────────────────────────────────────────────────────────────────────────

@router.get("", summary="List the caller's transfers")
async def list_transfers(
    status_filter: Optional[TransferStatus] = Query(None, alias="status"),
    page: int = Query(1),
    take: int = Query(20),
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    """Newest activity first. `page` < 1 and `take` outside 1..100 are clamped."""
    listing = await service.list_transfers(current_user.id, status=status_filter, page=page, take=take)
    return json_no_store({"success": True, **listing})


@router.get("/quota", summary="Storage quota snapshot")
async def transfer_quota(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    snapshot = await storage_accounting.storage_snapshot(db, current_user.id)
    if snapshot is None:
        raise SubscriptionRequiredError("Storage quota not available for this user")
    return json_no_store({"success": True, "storage": snapshot})


# Declared before `/{transfer_id}` so "cleanup" is never parsed as an id.
@router.delete("/cleanup", summary="Delete every transfer of the caller")
@rate_limit("5/minute")
async def delete_all_transfers(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    summary = await service.delete_all(current_user.id)
    return json_no_store({"success": True, **summary})


@router.get("/{transfer_id}/progress", summary="Progress of one transfer")
async def transfer_progress(
    transfer_id: UUID,
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    download = await service.get_progress(current_user.id, transfer_id)
    return json_no_store({"success": True, "download": download})


# ─────────────────────────────────────────────────────────────────────────────
# ⏯️ Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@router.patch("/{transfer_id}/pause", summary="Pause a pending or downloading transfer")
@rate_limit("30/minute")
async def pause_transfer(
    transfer_id: UUID,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    record = await service.pause(current_user.id, transfer_id)
    return json_no_store({"success": True, "message": "Download paused", "download": serialize_transfer(record)})


@router.patch("/{transfer_id}/resume", summary="Resume a paused transfer")
@rate_limit("30/minute")
async def resume_transfer(
    transfer_id: UUID,
    request: Request,
    response: Response,
    current_user: User = Depends(require_transfer_entitlement),
    service: TransferService = Depends(get_transfer_service),
):
    record = await service.resume(current_user.id, transfer_id)
    return json_no_store({"success": True, "message": "Download resumed", "download": serialize_transfer(record)})


@router.delete("/{transfer_id}", summary="Cancel a transfer that has not completed")
@rate_limit("30/minute")
async def cancel_transfer(
    transfer_id: UUID,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    record = await service.cancel(current_user.id, transfer_id)
    return json_no_store({"success": True, "message": "Download cancelled", "download": serialize_transfer(record)})


@router.delete("/{transfer_id}/delete", summary="Delete a completed transfer and its file")
@rate_limit("30/minute")
async def delete_transfer(
    transfer_id: UUID,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    result = await service.delete(current_user.id, transfer_id)
    return json_no_store({"success": True, "message": "Download deleted", **result})


# ─────────────────────────────────────────────────────────────────────────────
# ▶️ Playback
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/{transfer_id}/play", summary="Stream a completed transfer (Range aware)")
async def play_transfer(
    transfer_id: UUID,
    request: Request,
    current_user: User = Depends(require_transfer_entitlement),
    service: TransferService = Depends(get_transfer_service),
):
    """
    Serve the local file of a completed transfer.

    - With `Range: bytes=start-end` → 206 and `Content-Range`.
    - Without → 200 with the whole file.
    - Unsatisfiable range → 416 with `Content-Range: bytes */<size>`.
    """
    path = await service.get_playable_file(current_user.id, transfer_id)
    size = path.stat().st_size
    byte_range = parse_byte_range(request.headers.get("range"), size)

    headers = {"Accept-Ranges": "bytes", "Cache-Control": "private, no-store"}
    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(
            iter_file_range(path, 0, size - 1),
            status_code=status.HTTP_200_OK,
            media_type="video/mp4",
            headers=headers,
        )

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)
    logger.debug("Playback range transfer=%s %s-%s/%s", transfer_id, start, end, size)
    return StreamingResponse(
        iter_file_range(path, start, end),
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type="video/mp4",
        headers=headers,
    )


__all__ = ["router", "get_transfer_service"]
