from __future__ import annotations

"""
Vidvault — Database Engines & Session Dependencies

- Async engine/session for FastAPI (`get_async_db`).
- `create_worker_engine()` builds a short-lived NullPool engine for job
  processes: each RQ job runs its own event loop, and pooled asyncpg
  connections must not outlive the loop that opened them.
"""

from typing import AsyncGenerator
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.core.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# Pool knobs
# ─────────────────────────────────────────────────────────────
_POOL_PRE_PING = True
_POOL_RECYCLE = 1800
_POOL_TIMEOUT = 30
_POOL_SIZE = 10
_MAX_OVERFLOW = 20

ASYNC_DATABASE_URL: str = settings.ASYNC_DATABASE_URL

# ─────────────────────────────────────────────────────────────
# ⚡ ASYNC ENGINE · used by the API process
# ─────────────────────────────────────────────────────────────
async_engine: AsyncEngine = create_async_engine(
    ASYNC_DATABASE_URL,
    pool_pre_ping=_POOL_PRE_PING,
    pool_recycle=_POOL_RECYCLE,
    pool_size=_POOL_SIZE,
    max_overflow=_MAX_OVERFLOW,
    pool_timeout=_POOL_TIMEOUT,
    echo=False,
)

async_session_maker = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async SQLAlchemy session."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def db_healthcheck() -> bool:
    """Quick SELECT 1 to verify DB connectivity (used by /readyz)."""
    try:
        async with async_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("DB healthcheck failed")
        return False


# ─────────────────────────────────────────────────────────────
# 🛠️ WORKER ENGINE · one per job event loop
# ─────────────────────────────────────────────────────────────
def create_worker_engine(url: str | None = None) -> AsyncEngine:
    """NullPool engine for a single `asyncio.run` scope; dispose when done."""
    return create_async_engine(url or ASYNC_DATABASE_URL, poolclass=NullPool, echo=False)


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


__all__ = [
    "async_engine",
    "async_session_maker",
    "get_async_db",
    "db_healthcheck",
    "create_worker_engine",
    "session_factory_for",
]
