# app/core/security.py
from __future__ import annotations

"""
Vidvault — Security helpers
===========================
- Access-token minting (`create_access_token`) for service-to-service calls and tests
- `get_current_user` dependency: Bearer JWT → active `User`

Token verification is delegated to `app.core.jwt` (single source of truth).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidTokenException
from app.core.jwt import decode_access_token
from app.db.models.user import User
from app.db.session import get_async_db

logger = logging.getLogger("auth")

security = HTTPBearer(auto_error=False)

__all__ = ["create_access_token", "get_user_id_from_payload", "get_current_user", "security"]


# ───────────────────────────────────────────────
# 🪪 JWT · Access Token Generation
# ───────────────────────────────────────────────
def create_access_token(user_id: UUID, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed **access token** for ``user_id``."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "exp": expire,
        "iat": now,
        "nbf": now,
        "jti": str(uuid4()),
        "token_type": "access",
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY.get_secret_value(), algorithm=settings.JWT_ALGORITHM)


# ───────────────────────────────────────────────
# 🆔 Helpers · Extract User ID from Payload
# ───────────────────────────────────────────────
def get_user_id_from_payload(payload: Dict[str, Any]) -> UUID:
    """Extract and validate `sub` as a UUID; raise 401 if malformed."""
    try:
        return UUID(str(payload.get("sub") or payload.get("user_id")))
    except ValueError:
        raise InvalidTokenException(detail="Invalid token: malformed user_id")


# ───────────────────────────────────────────────
# 👤 Dependency · Get Current User
# ───────────────────────────────────────────────
async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_async_db),
) -> User:
    """Authenticate a user from the presented **access** token.

    Steps:
    1) Decode & validate JWT via `app.core.jwt`.
    2) Load user from DB, ensure active.
    3) Expose `request.state.user_id` for per-user rate limiting.
    """
    if credentials is None or (credentials.scheme or "").lower() != "bearer":
        raise InvalidTokenException(detail="Not authenticated")

    # 1) Decode & validate (delegated)
    payload = decode_access_token(credentials.credentials)
    user_id = get_user_id_from_payload(payload)

    # 2) Load user
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive or missing user")

    # 3) Attach to request
    request.state.user_id = user.id
    logger.debug("[Auth] Authenticated user=%s", user.id)
    return user
