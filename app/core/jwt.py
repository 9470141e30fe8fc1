# app/core/jwt.py
from __future__ import annotations

"""
Vidvault — JWT helpers
======================
- `decode_token` with optional issuer/audience enforcement and token-type check
- Thin `decode_access_token()` wrapper (access-only)

Notes
-----
- Token *creation* lives in `app.core.security`.
- Account management (login, refresh, revocation) is owned by the identity
  service; this API only verifies the access tokens it issues.
"""

import logging
import os
from typing import Any, Dict, Optional, Sequence

from jose import ExpiredSignatureError, JWTError, jwt

from app.core.config import settings
from app.core.exceptions import InvalidTokenException

logger = logging.getLogger("auth")


def _get_expected_issuer() -> Optional[str]:
    return os.getenv("JWT_ISSUER") or None


def _get_expected_audience() -> Optional[str]:
    return os.getenv("JWT_AUDIENCE") or None


# ─────────────────────────────────────────────────────────────
# 🔓 Decode JWT Token
# ─────────────────────────────────────────────────────────────
def decode_token(token: str, *, expected_types: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Decode and validate a JWT.

    Security checks
    ---------------
    1) Verify signature and standard claims (exp/nbf/iat)
    2) Enforce issuer/audience when configured
    3) Require `sub` and optional `token_type` membership

    Raises
    ------
    InvalidTokenException
        401 for invalid/expired tokens or type mismatch.
    """
    issuer = _get_expected_issuer()
    audience = _get_expected_audience()

    # 1) Decode & base checks
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": bool(audience)},
            audience=audience,
            issuer=issuer,
        )
    except ExpiredSignatureError:
        logger.info("Token expired.")
        raise InvalidTokenException(detail="Token has expired.")
    except JWTError as e:
        logger.warning("JWT decoding failed: %s", e)
        raise InvalidTokenException(detail="Invalid token.")

    # 2) Required subject
    if not (payload.get("sub") or payload.get("user_id")):
        raise InvalidTokenException(detail="Token missing user ID.")

    # 3) Token type enforcement (if caller specified)
    if expected_types is not None and payload.get("token_type") not in set(expected_types):
        logger.warning("Token type mismatch: got %r", payload.get("token_type"))
        raise InvalidTokenException(detail="Invalid token type.")

    return payload


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode an **access** token."""
    return decode_token(token, expected_types=["access"])


__all__ = ["decode_token", "decode_access_token"]
