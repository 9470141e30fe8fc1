from __future__ import annotations

"""
Transfer entitlement guard
--------------------------
Offline downloads are a paid-plan feature. The billing integration keeps
`subscriptions` in sync; this module only reads it.

Exports
- has_transfer_entitlement(db, user_id): True for an active paid subscription
- require_transfer_entitlement: FastAPI dependency returning the current user
  or raising 403 `SUBSCRIPTION_REQUIRED`
"""

from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import SubscriptionRequiredError
from app.core.security import get_current_user
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.db.session import get_async_db
from app.schemas.enums import StoragePlan, SubscriptionStatus

_ENTITLED_PLANS = frozenset({StoragePlan.BASIC.value, StoragePlan.MOST_POPULAR.value, StoragePlan.FAMILY.value})


async def has_transfer_entitlement(db: AsyncSession, user_id: UUID) -> bool:
    plan = (
        await db.execute(
            select(Subscription.plan).where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
        )
    ).scalar_one_or_none()
    return (plan or "").strip().lower() in _ENTITLED_PLANS


async def require_transfer_entitlement(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
) -> User:
    if not await has_transfer_entitlement(db, current_user.id):
        raise SubscriptionRequiredError("Offline downloads are only available for subscribed users")
    return current_user
