from __future__ import annotations

"""
💾 Vidvault — StorageQuota (per-user offline storage ceiling)
=============================================================

One row per user holding the plan tier, the byte ceiling derived from it and a
**cached** `used_bytes` figure.

Design highlights
-----------------
• `used_bytes` is a cache only. It is always rewritten by a full recompute over
  completed, non-deleted transfers (`storage_accounting.refresh_used`), never
  incremented, so concurrent completions and deletions commute.
• Rows are created when an entitlement is granted and deleted when it is
  revoked (`quota_service.provision_quota` / `revoke_quota`).
• `alert_threshold_percent` is a policy value; clients cannot change it.
• All byte columns are **BIGINT**.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship

from app.db.base_class import Base, TimestampMixin, UUIDPKMixin


class StorageQuota(UUIDPKMixin, TimestampMixin, Base):
    """Offline storage ceiling and cached usage for a single user."""

    __tablename__ = "storage_quotas"

    # ── Ownership ─────────────────────────────────────────────
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    # ── Ceiling & usage ───────────────────────────────────────
    tier = Column(String(32), nullable=False)
    total_bytes = Column(BigInteger, nullable=False, default=0, server_default=text("0"))
    used_bytes = Column(BigInteger, nullable=False, default=0, server_default=text("0"))

    # ── Policy ────────────────────────────────────────────────
    auto_delete_enabled = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    auto_delete_days = Column(Integer, nullable=False, default=30, server_default=text("30"))
    alert_threshold_percent = Column(Integer, nullable=False, default=80, server_default=text("80"))

    __mapper_args__ = {"eager_defaults": True}

    # ── Constraints ───────────────────────────────────────────
    __table_args__ = (
        CheckConstraint("total_bytes >= 0", name="total_nonneg"),
        CheckConstraint("used_bytes >= 0", name="used_nonneg"),
        CheckConstraint("auto_delete_days > 0", name="auto_delete_days_pos"),
        CheckConstraint(
            "alert_threshold_percent BETWEEN 1 AND 100",
            name="alert_threshold_range",
        ),
    )

    user = relationship("User", back_populates="storage_quota", lazy="noload")

    @property
    def available_bytes(self) -> int:
        """Remaining bytes against the cached usage (never negative)."""
        return max(int(self.total_bytes or 0) - int(self.used_bytes or 0), 0)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<StorageQuota user={self.user_id} tier={self.tier} used={self.used_bytes}/{self.total_bytes}>"
