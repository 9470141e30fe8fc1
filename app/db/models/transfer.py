from __future__ import annotations

"""
📥 Vidvault — Transfer (offline copy of one content item for one user)
======================================================================

The unit of idempotency and resumability for offline downloads: one row per
`(user_id, content_id)` pair tracking status, quality, byte counters, the local
file path and retry bookkeeping.

Design highlights
-----------------
• **One row per pair** (`UniqueConstraint(user_id, content_id)`). Failed,
  cancelled or soft-deleted rows are *re-admitted in place*: counters reset,
  error and delete marker cleared, fresh expiry.
• `byte_size` is fixed at admission (content size × quality multiplier, ceiling)
  and never recomputed mid-transfer.
• `0 <= bytes_transferred <= byte_size` is enforced by CHECK constraints and by
  the worker's progress clamp.
• `file_path` is stored **verbatim**; nothing else derives it.
• Byte columns are **BIGINT**.

Writers
-------
• Admission (`TransferService`) creates rows and performs user-facing
  transitions (pause/resume/cancel/delete).
• The worker (`TransferWorker`) owns `downloading` progress and the final
  `completed` / `failed` transitions.
"""

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from app.db.base_class import Base, SoftDeleteMixin, TimestampMixin, UUIDPKMixin
from app.schemas.enums import TransferStatus, enum_values


class Transfer(UUIDPKMixin, TimestampMixin, SoftDeleteMixin, Base):
    """A requested offline copy and its byte-level progress."""

    __tablename__ = "transfers"

    # ── Identity & scope ──────────────────────────────────────
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content_id = Column(Uuid, ForeignKey("contents.id", ondelete="CASCADE"), nullable=False, index=True)

    # ── State ─────────────────────────────────────────────────
    status = Column(
        Enum(TransferStatus, name="transfer_status", values_callable=enum_values),
        nullable=False,
        default=TransferStatus.PENDING,
        server_default=text("'pending'"),
    )
    quality = Column(String(16), nullable=False)

    # ── Byte accounting ───────────────────────────────────────
    byte_size = Column(BigInteger, nullable=False, doc="Estimated size fixed at admission.")
    bytes_transferred = Column(BigInteger, nullable=False, default=0, server_default=text("0"))
    progress = Column(Integer, nullable=False, default=0, server_default=text("0"))

    # ── Local storage & diagnostics ───────────────────────────
    file_path = Column(String(1024), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    queue_job_id = Column(String(128), nullable=True, doc="Last enqueued job id (diagnostics only).")

    expires_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"eager_defaults": True}

    # ── Constraints & Indexes ─────────────────────────────────
    __table_args__ = (
        UniqueConstraint("user_id", "content_id", name="uq_transfers_user_content"),
        CheckConstraint("byte_size >= 0", name="byte_size_nonneg"),
        CheckConstraint("bytes_transferred >= 0", name="bytes_transferred_nonneg"),
        CheckConstraint("bytes_transferred <= byte_size", name="bytes_within_size"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="progress_range"),
        CheckConstraint("retry_count >= 0", name="retry_count_nonneg"),
        Index("ix_transfers_user_status", "user_id", "status"),
        Index("ix_transfers_user_updated", "user_id", "updated_at"),
        Index("ix_transfers_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Transfer id={self.id} user={self.user_id} content={self.content_id} "
            f"status={self.status} {self.bytes_transferred}/{self.byte_size}>"
        )
