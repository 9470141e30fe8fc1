"""
Vidvault · Storage API
======================

Quota dashboard and settings for offline storage.

Endpoints
---------
- GET   /storage/dashboard          → quota, alert, per-status counts, recent transfers
- GET   /storage/quota/remaining    → remaining bytes / percent only
- PATCH /storage/quota/settings     → toggle auto-delete
- POST  /storage/quota/upgrade      → align the quota with the active paid plan

Every route needs an authenticated user; quota rows exist only for users with
an entitlement, so a missing row answers 403 `SUBSCRIPTION_REQUIRED`.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.http_utils import json_no_store
from app.api.v1.routers.transfers import get_transfer_service
from app.core.exceptions import SubscriptionRequiredError
from app.core.limiter import rate_limit
from app.core.security import get_current_user
from app.db.models.user import User
from app.db.session import get_async_db
from app.schemas.transfers import QuotaSettingsUpdate, QuotaUpgradeRequest
from app.services import quota_service, storage_accounting
from app.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage", tags=["Storage"])


@router.get("/dashboard", summary="Storage dashboard")
async def storage_dashboard(
    page: int = Query(1),
    take: int = Query(20),
    current_user: User = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    """
    One call for the offline-storage screen.

    Returns the quota snapshot, the alert state, a count per transfer status
    and a page of transfers ordered by `updated_at` (newest first).
    """
    dashboard = await service.dashboard(current_user.id, page=page, take=take)
    return json_no_store({"success": True, **dashboard})


@router.get("/quota/remaining", summary="Remaining offline storage")
async def remaining_storage(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    snapshot = await storage_accounting.storage_snapshot(db, current_user.id)
    if snapshot is None:
        raise SubscriptionRequiredError("Storage quota not available for this user")
    return json_no_store(
        {
            "success": True,
            "remaining_storage": snapshot["remaining_storage"],
            "remaining_storage_bytes": snapshot["remaining_storage_bytes"],
            "remaining_percent": snapshot["remaining_percent"],
            "tier": snapshot["tier"],
        }
    )


@router.patch("/quota/settings", summary="Update storage settings")
@rate_limit("20/minute")
async def update_storage_settings(
    payload: QuotaSettingsUpdate,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Enabling auto-delete resets the retention window to the policy value."""
    quota = await quota_service.update_quota_settings(
        db, current_user.id, auto_delete_enabled=payload.auto_delete_enabled
    )
    await db.commit()
    logger.info("Storage settings updated user=%s auto_delete=%s", current_user.id, quota.auto_delete_enabled)
    return json_no_store(
        {
            "success": True,
            "message": "Storage settings updated",
            "settings": {
                "auto_delete_enabled": bool(quota.auto_delete_enabled),
                "auto_delete_days": int(quota.auto_delete_days),
                "notification_threshold": int(quota.alert_threshold_percent),
            },
        }
    )


@router.post("/quota/upgrade", summary="Sync quota with the active subscription")
@rate_limit("5/minute")
async def upgrade_storage(
    payload: QuotaUpgradeRequest,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Create or upgrade the caller's quota from their active subscription.

    - 201 when the quota row is created, 200 when an existing row is upgraded.
    - 400 `PLAN_MISMATCH` / `INVALID_PLAN` / `PLAN_DOWNGRADE`.
    - 403 `SUBSCRIPTION_REQUIRED` without an active subscription.
    """
    quota, created = await quota_service.sync_quota_with_subscription(db, current_user.id, payload.plan)
    await db.commit()
    snapshot = await storage_accounting.storage_snapshot(db, current_user.id)
    return json_no_store(
        {
            "success": True,
            "message": "Storage quota created" if created else "Storage quota upgraded",
            "storage": snapshot,
        },
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


__all__ = ["router"]
