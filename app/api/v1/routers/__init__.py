"""
🧭 Vidvault • API v1 Router Aggregator
=====================================

Exports the **combined `router`** and each sub-router so callers can mount
them as needed.

Quick usage
-----------
    from app.api.v1.routers import router as v1_router
    app.include_router(v1_router, prefix="/api/v1")

Security notes
--------------
- This layer is a pure aggregator; **auth & rate limits live in child routers**.
"""

from fastapi import APIRouter

from .storage import router as storage_router
from .transfers import router as transfers_router


def build_v1_router() -> APIRouter:
    """
    Compose the API v1 surface into a single `APIRouter`.

    Returns
    -------
    fastapi.APIRouter
        `/transfers/*` and `/storage/*`.
    """
    r = APIRouter()
    r.include_router(transfers_router)
    r.include_router(storage_router)
    return r


router = build_v1_router()


__all__ = [
    "router",
    "build_v1_router",
    "transfers_router",
    "storage_router",
]
