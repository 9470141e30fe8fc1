from __future__ import annotations

"""
💳 Vidvault — Subscription (entitlement collaborator)
=====================================================

Mirror of the billing provider's subscription state, one row per user. The
transfer API consults it to decide whether a user may download at all; quota
provisioning is triggered from the same billing events.
"""

from sqlalchemy import Column, DateTime, Enum, ForeignKey, String, Uuid, text
from sqlalchemy.orm import relationship

from app.db.base_class import Base, TimestampMixin, UUIDPKMixin
from app.schemas.enums import SubscriptionStatus, enum_values


class Subscription(UUIDPKMixin, TimestampMixin, Base):
    __tablename__ = "subscriptions"

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    plan = Column(String(32), nullable=False, doc="Plan label, e.g. 'basic', 'most_popular', 'family'.")
    status = Column(
        Enum(SubscriptionStatus, name="subscription_status", values_callable=enum_values),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        server_default=text("'active'"),
    )
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"eager_defaults": True}

    user = relationship("User", back_populates="subscription", lazy="noload")

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Subscription user={self.user_id} plan={self.plan} status={self.status}>"
