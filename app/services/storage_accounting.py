# app/services/storage_accounting.py
from __future__ import annotations

"""
Storage Accounting — offline quota arithmetic
=============================================

Read/aggregate logic behind the offline-storage quota:

- `compute_used`        → SUM(byte_size) of a user's completed, non-deleted transfers
- `check_available`     → admission gate (fails closed without a quota row)
- `alert_status`        → used % vs. the fixed alert threshold
- `refresh_used`        → recompute-and-store into the quota cache
- `storage_snapshot`    → the quota view served by the API
- `estimate_transfer_size` / `format_bytes` → pure helpers

Key properties
--------------
- **Recompute, never increment.** `used_bytes` on the quota row is a cache that
  is always rewritten from the transfers table, so concurrent completions and
  deletions converge on the same value regardless of order.
- **Integer bytes.** Sizes are Python ints end to end; quality multipliers are
  `Decimal` and the estimate is an exact integer ceiling.
- Nothing here commits. Callers own the transaction.
"""

import logging
from dataclasses import asdict, dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidQualityError
from app.db.models.storage_quota import StorageQuota
from app.db.models.transfer import Transfer
from app.schemas.enums import TransferStatus

logger = logging.getLogger(__name__)

__all__ = [
    "QuotaCheck",
    "AlertStatus",
    "format_bytes",
    "estimate_transfer_size",
    "used_percent",
    "compute_used",
    "check_available",
    "alert_status",
    "refresh_used",
    "get_quota",
    "storage_snapshot",
]

_UNITS = ("B", "KB", "MB", "GB", "TB")
_TWO_PLACES = Decimal("0.01")


# ─────────────────────────────────────────────────────────────
# 🧮 Pure helpers
# ─────────────────────────────────────────────────────────────
def format_bytes(num_bytes: int) -> str:
    """Render a byte count in base-1024 units with at most two decimals.

    Trailing zeros are trimmed, so ``600_000_000`` renders as ``"572.2 MB"``
    and ``1024`` as ``"1 KB"``. Zero renders as ``"0 B"``.
    """
    n = int(num_bytes or 0)
    if n <= 0:
        return "0 B"
    exponent = 0
    while exponent < len(_UNITS) - 1 and n >= 1024 ** (exponent + 1):
        exponent += 1
    scaled = (Decimal(n) / (Decimal(1024) ** exponent)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    text = format(scaled.normalize(), "f")
    return f"{text} {_UNITS[exponent]}"


def estimate_transfer_size(size_bytes: int, quality: str, multipliers: Mapping[str, Decimal]) -> int:
    """Estimated on-disk size for ``quality``: ``ceil(size_bytes × multiplier)``.

    Raises
    ------
    InvalidQualityError
        When ``quality`` is not a key of ``multipliers``.
    """
    try:
        factor = Decimal(multipliers[quality])
    except KeyError:
        raise InvalidQualityError(quality=quality, allowed=sorted(multipliers)) from None
    estimate = (Decimal(int(size_bytes)) * factor).to_integral_value(rounding=ROUND_CEILING)
    return int(estimate)


def used_percent(used: int, total: int) -> int:
    """Integer (floored) percentage of ``total`` consumed; 0 when ``total`` is 0."""
    if total <= 0:
        return 0
    return (int(used) * 100) // int(total)


# ─────────────────────────────────────────────────────────────
# 📦 Result types
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class QuotaCheck:
    """Outcome of an admission quota check.

    When ``available`` is False, ``code``/``reason`` identify why, and for
    ``INSUFFICIENT_STORAGE`` the formatted byte figures explain by how much.
    """

    available: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    status_code: Optional[int] = None
    required: Optional[str] = None
    available_storage: Optional[str] = None
    used: Optional[str] = None
    total: Optional[str] = None
    used_percent: Optional[int] = None
    tier: Optional[str] = None
    required_bytes: int = 0
    available_bytes: int = 0

    def storage_info(self) -> Dict[str, Any]:
        """Client-facing payload for a 413 response."""
        return {
            "required": self.required,
            "available": self.available_storage,
            "used": self.used,
            "total": self.total,
            "used_percent": self.used_percent,
            "tier": self.tier,
        }


@dataclass(frozen=True)
class AlertStatus:
    used_percent: int
    threshold: int
    should_alert: bool
    tier: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─────────────────────────────────────────────────────────────
# 🔎 Queries
# ─────────────────────────────────────────────────────────────
async def get_quota(db: AsyncSession, user_id: UUID) -> Optional[StorageQuota]:
    res = await db.execute(select(StorageQuota).where(StorageQuota.user_id == user_id))
    return res.scalar_one_or_none()


async def compute_used(db: AsyncSession, user_id: UUID) -> int:
    """Sum of ``byte_size`` over the user's completed, non-deleted transfers."""
    stmt = select(func.coalesce(func.sum(Transfer.byte_size), 0)).where(
        Transfer.user_id == user_id,
        Transfer.status == TransferStatus.COMPLETED,
        Transfer.deleted_at.is_(None),
    )
    return int((await db.execute(stmt)).scalar_one())


async def check_available(db: AsyncSession, user_id: UUID, required_bytes: int) -> QuotaCheck:
    """Decide whether ``required_bytes`` fit in the user's remaining quota.

    Fails closed: no quota row, or a zero ceiling, is reported as
    ``SUBSCRIPTION_REQUIRED`` regardless of the requested size.
    """
    quota = await get_quota(db, user_id)
    if quota is None or int(quota.total_bytes or 0) <= 0:
        return QuotaCheck(
            available=False,
            code="SUBSCRIPTION_REQUIRED",
            reason="Subscription required",
            status_code=403,
            required_bytes=int(required_bytes),
        )

    total = int(quota.total_bytes)
    used = await compute_used(db, user_id)
    available = max(total - used, 0)
    pct = used_percent(used, total)

    if available < int(required_bytes):
        return QuotaCheck(
            available=False,
            code="INSUFFICIENT_STORAGE",
            reason="Insufficient storage space",
            status_code=413,
            required=format_bytes(required_bytes),
            available_storage=format_bytes(available),
            used=format_bytes(used),
            total=format_bytes(total),
            used_percent=pct,
            tier=quota.tier,
            required_bytes=int(required_bytes),
            available_bytes=available,
        )

    return QuotaCheck(
        available=True,
        used_percent=pct,
        tier=quota.tier,
        required_bytes=int(required_bytes),
        available_bytes=available,
    )


async def alert_status(db: AsyncSession, user_id: UUID) -> Optional[AlertStatus]:
    """Used % vs. the quota's alert threshold; ``None`` without a quota row."""
    quota = await get_quota(db, user_id)
    if quota is None:
        return None
    pct = used_percent(await compute_used(db, user_id), int(quota.total_bytes or 0))
    threshold = int(quota.alert_threshold_percent)
    return AlertStatus(used_percent=pct, threshold=threshold, should_alert=pct >= threshold, tier=quota.tier)


async def refresh_used(db: AsyncSession, user_id: UUID) -> int:
    """Recompute usage and store it on the quota row (flushes, never commits).

    Returns the recomputed byte count, even when the user has no quota row.
    """
    used = await compute_used(db, user_id)
    quota = await get_quota(db, user_id)
    if quota is not None and int(quota.used_bytes or 0) != used:
        quota.used_bytes = used
        await db.flush()
    logger.debug("Quota refreshed user=%s used=%s", user_id, used)
    return used


async def storage_snapshot(db: AsyncSession, user_id: UUID) -> Optional[Dict[str, Any]]:
    """Quota view for clients; ``None`` when the user has no quota row.

    Byte figures are returned both formatted and as decimal strings so
    JavaScript clients never lose precision on 64-bit values.
    """
    quota = await get_quota(db, user_id)
    if quota is None:
        return None

    total = int(quota.total_bytes or 0)
    used = await compute_used(db, user_id)
    remaining = max(total - used, 0)
    pct = used_percent(used, total)
    threshold = int(quota.alert_threshold_percent)

    return {
        "tier": quota.tier,
        "total_storage": format_bytes(total),
        "total_storage_bytes": str(total),
        "used_storage": format_bytes(used),
        "used_storage_bytes": str(used),
        "remaining_storage": format_bytes(remaining),
        "remaining_storage_bytes": str(remaining),
        "used_percent": pct,
        "remaining_percent": 100 - pct if total > 0 else 0,
        "auto_delete_enabled": bool(quota.auto_delete_enabled),
        "auto_delete_days": int(quota.auto_delete_days),
        "notification_threshold": threshold,
        "should_alert": pct >= threshold,
    }
