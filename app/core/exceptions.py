# app/core/exceptions.py
from __future__ import annotations

"""
Vidvault — Application Exceptions
=================================
A small, consistent layer on top of FastAPI/Starlette's `HTTPException` that
lets us attach structured metadata and integrate cleanly with the JSON error
envelope rendered by `app.core.exception_handlers`.

Key ideas
---------
- One base `AppException` carrying `reason` (stable machine code), `details`,
  `extra`, and an optional `request_id`.
- Transfer/quota domain errors inherit from it and set the HTTP status, the
  reason code and the context a client needs to react (current status,
  required/available bytes, the conflicting record).
- `to_envelope()` renders the canonical `{"success": false, ...}` body.
- Callers already catching `HTTPException` keep working.

Usage
-----
    raise InvalidTransitionError(action="pause", current_status="completed")

    raise AppException(status_code=409, message="Already exists", reason="CONFLICT")
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

__all__ = [
    "AppException",
    "InvalidTokenException",
    "TransferNotFoundError",
    "ContentUnavailableError",
    "TransferConflictError",
    "InsufficientStorageError",
    "SubscriptionRequiredError",
    "InvalidTransitionError",
    "InvalidQualityError",
]


# ──────────────────────────────────────────────────────────────
# 📦 Core: AppException
# ──────────────────────────────────────────────────────────────
class AppException(HTTPException):
    """Base application-level exception with optional metadata.

    Attributes
    -----------
    status_code : int
        HTTP status code (e.g., 400/401/403/404/409/413/500).
    message : str
        Human-readable error message (serialized as `detail` as well).
    reason : str | None
        Stable, machine-readable reason code (e.g. ``INSUFFICIENT_STORAGE``).
    request_id : str | None
        Optional request correlation id (handlers fill it from the request).
    details : dict | list | str | None
        Machine-readable details (e.g., validation errors, ids).
    extra : dict | None
        Additional non-sensitive fields merged at the top level of the body.
    headers : dict | None
        Optional headers (e.g., `{"WWW-Authenticate": "Bearer"}`).
    """

    default_status: int = status.HTTP_400_BAD_REQUEST
    default_reason: Optional[str] = None

    def __init__(
        self,
        *,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Any] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        code = int(status_code or self.default_status)
        super().__init__(status_code=code, detail=message, headers=headers)
        self.message: str = message
        self.reason: Optional[str] = reason or self.default_reason
        self.request_id: Optional[str] = request_id
        self.details: Optional[Any] = details
        self.extra: Dict[str, Any] = extra or {}

    # ── [Helper] Canonical body used by handlers ───────────────────────────
    def to_envelope(self, *, fallback_request_id: Optional[str] = None) -> Dict[str, Any]:
        """Return the `{success: false, message, reason, ...}` error body."""
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.reason:
            body["reason"] = self.reason
        if self.details is not None:
            body["details"] = self.details
        # Avoid leaking obvious secrets if someone passed them in `extra`.
        extra_sanitized = dict(self.extra) if self.extra else {}
        for k in ("token", "authorization", "password", "secret"):
            extra_sanitized.pop(k, None)
        body.update(extra_sanitized)
        body["request_id"] = self.request_id or fallback_request_id or "N/A"
        return body


# ──────────────────────────────────────────────────────────────
# 🔑 Auth/Token exceptions
# ──────────────────────────────────────────────────────────────
class InvalidTokenException(AppException):
    """Raised for invalid or expired tokens (401 by default)."""

    default_status = status.HTTP_401_UNAUTHORIZED
    default_reason = "INVALID_TOKEN"

    def __init__(self, *, detail: str = "Invalid or expired token") -> None:
        super().__init__(message=detail, headers={"WWW-Authenticate": "Bearer"})


# ──────────────────────────────────────────────────────────────
# 📥 Transfer / quota domain exceptions
# ──────────────────────────────────────────────────────────────
class TransferNotFoundError(AppException):
    """Unknown transfer, another user's transfer, or a soft-deleted one."""

    default_status = status.HTTP_404_NOT_FOUND
    default_reason = "TRANSFER_NOT_FOUND"

    def __init__(self, message: str = "Download not found") -> None:
        super().__init__(message=message)


class ContentUnavailableError(AppException):
    """Content is missing, unpublished or soft-deleted."""

    default_status = status.HTTP_404_NOT_FOUND
    default_reason = "CONTENT_NOT_FOUND"

    def __init__(self, message: str = "Content not found or not available") -> None:
        super().__init__(message=message)


class TransferConflictError(AppException):
    """A live transfer already exists for this (user, content) pair.

    The existing record is surfaced under ``download`` so clients can offer
    "view / resume" instead of retrying blindly.
    """

    default_status = status.HTTP_409_CONFLICT
    default_reason = "TRANSFER_EXISTS"

    def __init__(self, *, current_status: str, existing: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=f"Download already exists with status: {current_status}",
            extra={"download": existing} if existing is not None else None,
        )
        self.current_status = current_status


class InsufficientStorageError(AppException):
    """Estimated transfer size exceeds the user's remaining quota."""

    default_status = 413
    default_reason = "INSUFFICIENT_STORAGE"

    def __init__(self, *, message: str = "Insufficient storage space", storage_info: Dict[str, Any]) -> None:
        super().__init__(message=message, extra={"storage_info": storage_info})


class SubscriptionRequiredError(AppException):
    """No quota record / zero ceiling / missing entitlement."""

    default_status = status.HTTP_403_FORBIDDEN
    default_reason = "SUBSCRIPTION_REQUIRED"

    def __init__(self, message: str = "Subscription required") -> None:
        super().__init__(message=message, extra={"upgrade_required": True})


class InvalidTransitionError(AppException):
    """A lifecycle action is not allowed from the record's current status."""

    default_status = status.HTTP_400_BAD_REQUEST
    default_reason = "INVALID_TRANSITION"

    def __init__(self, *, action: str, current_status: str) -> None:
        super().__init__(
            message=f"Cannot {action} download with status: {current_status}",
            extra={"current_status": current_status},
        )
        self.action = action
        self.current_status = current_status


class InvalidQualityError(AppException):
    """Quality label is not in the configured multiplier table."""

    default_status = status.HTTP_400_BAD_REQUEST
    default_reason = "INVALID_QUALITY"

    def __init__(self, *, quality: str, allowed: list[str]) -> None:
        super().__init__(
            message=f"Unsupported quality: {quality}",
            extra={"allowed_qualities": allowed},
        )
