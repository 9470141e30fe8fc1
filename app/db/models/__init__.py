"""
Vidvault — ORM models
=====================

Importing this package registers every table on `Base.metadata`.
"""

from .user import User
from .subscription import Subscription
from .content import Content
from .storage_quota import StorageQuota
from .transfer import Transfer

__all__ = [
    "User",
    "Subscription",
    "Content",
    "StorageQuota",
    "Transfer",
]
