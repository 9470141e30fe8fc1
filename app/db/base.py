# app/db/base.py
"""
Vidvault — SQLAlchemy Base registry
===================================

Import all ORM models so their tables are registered on `Base.metadata`.
Alembic autogeneration and the test fixtures (`create_all`) import `Base`
from here.

Tip: Keep this file import-only; no runtime logic.
"""

from app.db.base_class import Base

# ───────────────────────────────────────────────────────────────
# Collaborators: identity, entitlement, catalog
# ───────────────────────────────────────────────────────────────
from app.db.models.user import User
from app.db.models.subscription import Subscription
from app.db.models.content import Content

# ───────────────────────────────────────────────────────────────
# Offline storage: quota + transfers
# ───────────────────────────────────────────────────────────────
from app.db.models.storage_quota import StorageQuota
from app.db.models.transfer import Transfer

__all__ = [
    "Base",
    "User",
    "Subscription",
    "Content",
    "StorageQuota",
    "Transfer",
]
