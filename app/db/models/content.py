from __future__ import annotations

"""
🎬 Vidvault — Content (catalog collaborator)
============================================

The slice of the catalog the transfer pipeline reads: publication state,
canonical byte size and the object-storage location of the master file.
Catalog management owns writes; transfers never mutate this table.

Design highlights
-----------------
• `file_size_bytes` is a **BIGINT**: multi-gigabyte masters overflow INT.
• `s3_key` may be NULL while an upload is still processing; the worker treats
  that as an unrecoverable job.
"""

from sqlalchemy import BigInteger, CheckConstraint, Column, Enum, Index, String, text

from app.db.base_class import Base, SoftDeleteMixin, TimestampMixin, UUIDPKMixin
from app.schemas.enums import ContentStatus, enum_values


class Content(UUIDPKMixin, TimestampMixin, SoftDeleteMixin, Base):
    """Playable catalog item with a downloadable master file."""

    __tablename__ = "contents"

    # ── Catalog fields ────────────────────────────────────────
    title = Column(String(255), nullable=False)
    status = Column(
        Enum(ContentStatus, name="content_status", values_callable=enum_values),
        nullable=False,
        default=ContentStatus.DRAFT,
        server_default=text("'draft'"),
    )

    # ── Storage location ──────────────────────────────────────
    file_size_bytes = Column(BigInteger, nullable=False, default=0, server_default=text("0"))
    s3_bucket = Column(String(255), nullable=True, doc="Overrides the default bucket when set.")
    s3_key = Column(String(1024), nullable=True)

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        CheckConstraint("file_size_bytes >= 0", name="file_size_nonneg"),
        Index("ix_contents_status_deleted", "status", "deleted_at"),
    )

    @property
    def is_transferable(self) -> bool:
        """Published and not soft-deleted."""
        return self.status == ContentStatus.PUBLISHED and self.deleted_at is None

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Content id={self.id} status={self.status} size={self.file_size_bytes}>"
