from __future__ import annotations

"""
Vidvault • Transfer & Storage Request Schemas
=============================================

Inputs accepted by the `/transfers` and `/storage` routers. Responses are
plain dicts built by `serialize_transfer` / `storage_snapshot` so 64-bit byte
counters leave the API as strings.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransferCreate(BaseModel):
    """Body for `POST /transfers`."""

    model_config = ConfigDict(extra="forbid")

    content_id: UUID
    quality: Optional[str] = Field(
        default=None,
        max_length=16,
        description="Quality label (e.g. 480p, 720p, 1080p, 4k). Defaults to 720p.",
    )

    @field_validator("quality", mode="before")
    @classmethod
    def _normalize_quality(cls, v):
        if v is None:
            return None
        s = str(v).strip().lower()
        return s or None


class QuotaSettingsUpdate(BaseModel):
    """Body for `PATCH /storage/quota/settings`."""

    model_config = ConfigDict(extra="forbid")

    auto_delete_enabled: bool


class QuotaUpgradeRequest(BaseModel):
    """Body for `POST /storage/quota/upgrade`. The plan must match the active subscription."""

    plan: Optional[str] = Field(default=None, max_length=32)


__all__ = ["TransferCreate", "QuotaSettingsUpdate", "QuotaUpgradeRequest"]
