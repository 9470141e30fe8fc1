from __future__ import annotations

"""
👤 Vidvault — User (identity collaborator)
==========================================

Minimal account entity the transfer pipeline relies on. Authentication and
account management live outside this service; we only need a stable id and
an activity flag to authorize requests.

Design highlights
-----------------
• **Case-insensitive uniqueness** for email (stored lower-cased by the writer).
• **Cascade-friendly**: quota, subscription and transfer rows delete with the user.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, String, text
from sqlalchemy.orm import relationship

from app.db.base_class import Base, TimestampMixin, UUIDPKMixin


class User(UUIDPKMixin, TimestampMixin, Base):
    """Account record referenced by subscriptions, quotas and transfers."""

    __tablename__ = "users"

    # ── Identity ──────────────────────────────────────────────
    email = Column(String(320), nullable=False, unique=True)
    full_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        CheckConstraint("length(email) > 0", name="email_not_blank"),
    )

    # ── Relationships ─────────────────────────────────────────
    storage_quota = relationship(
        "StorageQuota",
        back_populates="user",
        uselist=False,
        lazy="noload",
        passive_deletes=True,
    )
    subscription = relationship(
        "Subscription",
        back_populates="user",
        uselist=False,
        lazy="noload",
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} email={self.email!r} active={self.is_active}>"
