# app/services/quota_service.py
from __future__ import annotations

"""
Quota Service — provisioning & settings for offline storage
===========================================================

Writes to `storage_quotas` that are *triggered* elsewhere:

- `provision_quota`   → entitlement granted (subscription activated); upsert
- `upgrade_quota`     → plan changed; tiers only move up, never down
- `revoke_quota`      → entitlement lost (cancel / failed payment); delete
- `sync_quota_with_subscription` → reconcile the row with the active plan
- `update_quota_settings` → user-controlled auto-delete switch

This service never *decides* entitlement. Callers pass the plan they
already validated; the only policy here is plan → byte ceiling and the
"no downgrade" rule.

Nothing here commits; callers own the transaction.
"""

import logging
from typing import Dict, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import AppException, SubscriptionRequiredError
from app.db.models.storage_quota import StorageQuota
from app.db.models.subscription import Subscription
from app.schemas.enums import StoragePlan, SubscriptionStatus
from app.services import storage_accounting

logger = logging.getLogger(__name__)

__all__ = [
    "PLAN_LEVELS",
    "resolve_plan",
    "plan_limit_bytes",
    "provision_quota",
    "upgrade_quota",
    "revoke_quota",
    "sync_quota_with_subscription",
    "update_quota_settings",
]

# Ordering used by the no-downgrade rule.
PLAN_LEVELS: Dict[str, int] = {
    StoragePlan.NO_PLAN.value: 0,
    StoragePlan.BASIC.value: 1,
    StoragePlan.MOST_POPULAR.value: 2,
    StoragePlan.FAMILY.value: 3,
}

_PAID_PLANS = frozenset({StoragePlan.BASIC.value, StoragePlan.MOST_POPULAR.value, StoragePlan.FAMILY.value})


# ─────────────────────────────────────────────────────────────
# 🧮 Plan policy
# ─────────────────────────────────────────────────────────────
def resolve_plan(plan: Optional[str], cfg: Settings = default_settings) -> str:
    """Normalize a plan label; unknown labels fall back to the default plan."""
    label = (plan or "").strip().lower()
    if label == StoragePlan.NO_PLAN.value:
        return label
    if label in cfg.STORAGE_PLAN_LIMITS_BYTES:
        return label
    return cfg.STORAGE_DEFAULT_PLAN


def plan_limit_bytes(plan: Optional[str], cfg: Settings = default_settings) -> int:
    """Byte ceiling for ``plan`` (``no_plan`` → 0)."""
    label = resolve_plan(plan, cfg)
    return int(cfg.STORAGE_PLAN_LIMITS_BYTES.get(label, 0))


def _is_paid(plan: str) -> bool:
    return plan in _PAID_PLANS


# ─────────────────────────────────────────────────────────────
# ✍️ Writers
# ─────────────────────────────────────────────────────────────
async def provision_quota(
    db: AsyncSession,
    user_id: UUID,
    plan: Optional[str] = None,
    *,
    cfg: Settings = default_settings,
) -> StorageQuota:
    """Create (or re-point) the user's quota row for ``plan``.

    Idempotent: an existing row has its tier and ceiling updated in place and
    its cached usage recomputed.
    """
    label = resolve_plan(plan, cfg)
    total = plan_limit_bytes(label, cfg)

    quota = await storage_accounting.get_quota(db, user_id)
    if quota is None:
        quota = StorageQuota(
            user_id=user_id,
            tier=label,
            total_bytes=total,
            used_bytes=0,
            auto_delete_enabled=False,
            auto_delete_days=cfg.STORAGE_AUTO_DELETE_DAYS,
            alert_threshold_percent=cfg.STORAGE_ALERT_THRESHOLD_PERCENT,
        )
        db.add(quota)
        await db.flush()
        logger.info("Quota provisioned user=%s tier=%s total=%s", user_id, label, total)
    else:
        quota.tier = label
        quota.total_bytes = total
        await db.flush()
        logger.info("Quota re-provisioned user=%s tier=%s total=%s", user_id, label, total)

    await storage_accounting.refresh_used(db, user_id)
    return quota


async def upgrade_quota(
    db: AsyncSession,
    user_id: UUID,
    plan: str,
    *,
    cfg: Settings = default_settings,
) -> StorageQuota:
    """Move the user's quota to a higher (or equal) tier.

    Raises
    ------
    SubscriptionRequiredError
        When the user has no quota row yet.
    AppException (400, PLAN_DOWNGRADE)
        When ``plan`` ranks below the current tier.
    """
    label = resolve_plan(plan, cfg)
    quota = await storage_accounting.get_quota(db, user_id)
    if quota is None:
        raise SubscriptionRequiredError("Storage quota is only available for subscribed users")

    if PLAN_LEVELS.get(label, 0) < PLAN_LEVELS.get(quota.tier, 0):
        raise AppException(
            status_code=status.HTTP_400_BAD_REQUEST,
            message="Cannot downgrade storage plan",
            reason="PLAN_DOWNGRADE",
            extra={"current_tier": quota.tier, "requested_tier": label},
        )

    quota.tier = label
    quota.total_bytes = plan_limit_bytes(label, cfg)
    await db.flush()
    logger.info("Quota upgraded user=%s tier=%s", user_id, label)
    return quota


async def revoke_quota(db: AsyncSession, user_id: UUID) -> bool:
    """Delete the user's quota row. Returns True when a row was removed.

    Transfer rows and files are left alone; without a quota row every new
    admission fails closed with ``SUBSCRIPTION_REQUIRED``.
    """
    res = await db.execute(delete(StorageQuota).where(StorageQuota.user_id == user_id))
    removed = bool(res.rowcount)
    if removed:
        logger.info("Quota revoked user=%s", user_id)
    return removed


async def sync_quota_with_subscription(
    db: AsyncSession,
    user_id: UUID,
    requested_plan: Optional[str] = None,
    *,
    cfg: Settings = default_settings,
) -> tuple[StorageQuota, bool]:
    """Align the quota row with the user's active subscription.

    Returns ``(quota, created)``. Creates the row when missing, otherwise
    applies the upgrade-only rule.
    """
    res = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
    )
    sub = res.scalar_one_or_none()
    if sub is None:
        raise SubscriptionRequiredError("Active subscription required to manage storage quota")

    active_plan = (sub.plan or "").strip().lower()
    if requested_plan and requested_plan.strip().lower() != active_plan:
        raise AppException(
            status_code=status.HTTP_400_BAD_REQUEST,
            message="Requested plan does not match active subscription plan",
            reason="PLAN_MISMATCH",
        )
    if not _is_paid(active_plan):
        raise AppException(
            status_code=status.HTTP_400_BAD_REQUEST,
            message="Invalid plan. Must be 'most_popular', 'basic', or 'family'",
            reason="INVALID_PLAN",
        )

    existing = await storage_accounting.get_quota(db, user_id)
    if existing is None:
        return await provision_quota(db, user_id, active_plan, cfg=cfg), True
    return await upgrade_quota(db, user_id, active_plan, cfg=cfg), False


async def update_quota_settings(
    db: AsyncSession,
    user_id: UUID,
    *,
    auto_delete_enabled: bool,
    cfg: Settings = default_settings,
) -> StorageQuota:
    """Toggle auto-delete. Enabling resets the retention window to policy days.

    The alert threshold is a fixed policy value and is not user-editable.
    """
    quota = await storage_accounting.get_quota(db, user_id)
    if quota is None:
        raise SubscriptionRequiredError("Storage settings are only available for subscribed users")

    quota.auto_delete_enabled = bool(auto_delete_enabled)
    if auto_delete_enabled:
        quota.auto_delete_days = cfg.STORAGE_AUTO_DELETE_DAYS
    await db.flush()
    return quota
