from __future__ import annotations

"""
Central enum definitions used across Vidvault.

Design notes
------------
• All enums subclass `str, PyEnum` for JSON-friendly serialization.
• VALUE STRINGS are **stable** once deployed (rows and API payloads depend on them).
• Columns persist the *value* (lowercase) via `enum_values`, not the member name.
"""

from enum import Enum as PyEnum
from typing import List, Type


def enum_values(enum_cls: Type[PyEnum]) -> List[str]:
    """`values_callable` for SQLAlchemy `Enum` columns (store values, not names)."""
    return [member.value for member in enum_cls]


# ──────────────────────────────────────────────────────────────
# Catalog
# ──────────────────────────────────────────────────────────────
class ContentStatus(str, PyEnum):
    """Publication state of a catalog item. Only PUBLISHED can be transferred."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


# ──────────────────────────────────────────────────────────────
# Billing / entitlement
# ──────────────────────────────────────────────────────────────
class SubscriptionStatus(str, PyEnum):
    """Lifecycle of a subscription as mirrored from the billing provider."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class StoragePlan(str, PyEnum):
    """Plan labels that map to an offline-storage ceiling."""
    NO_PLAN = "no_plan"
    BASIC = "basic"
    MOST_POPULAR = "most_popular"
    FAMILY = "family"


# ──────────────────────────────────────────────────────────────
# Offline transfers
# ──────────────────────────────────────────────────────────────
class TransferStatus(str, PyEnum):
    """Lifecycle state of a transfer record."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferEvent(str, PyEnum):
    """Events that drive the transfer state machine."""
    REQUEST = "request"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    DELETE = "delete"
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"


__all__ = [
    "enum_values",
    "ContentStatus",
    "SubscriptionStatus",
    "StoragePlan",
    "TransferStatus",
    "TransferEvent",
]
