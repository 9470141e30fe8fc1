# app/utils/aws.py
from __future__ import annotations

"""
🧊 Vidvault • S3 Utilities
==========================

Thin, hardened S3 wrapper used by the transfer worker to read content masters:

- `head`        → object metadata (size) or None
- `open_range`  → ranged GET (`Range: bytes=<offset>-`) returning a chunk iterator
- `delete`      → best-effort, idempotent delete (ops tooling)

🎯 Goals
--------
- Explicit timeouts + bounded retries (botocore "standard" mode)
- Defensive key normalization (no leading slash, no `..`)
- Pluggable creds (env / role / IRSA) with explicit override if provided
- Per-call bucket override: content rows may name their own bucket
- Zero secret leakage in logs

Implementation notes
--------------------
- boto3 is blocking. The async worker drives these calls through
  `asyncio.to_thread`, one chunk at a time, so a slow read never stalls the
  event loop that renews the transfer lease.
- S3-specific failures surface as `S3StorageError` so the worker can record a
  readable message before the queue retries.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional
import logging
import re

import boto3
import botocore
from botocore.config import Config as BotoConfig
from pydantic import SecretStr

from app.core.config import settings

logger = logging.getLogger(__name__)

__all__ = ["S3Client", "S3StorageError", "RangedObject"]


# ─────────────────────────────────────────────────────────────────────────────
# 🧱 Exceptions
# ─────────────────────────────────────────────────────────────────────────────

class S3StorageError(RuntimeError):
    """Raised when a storage operation fails (network, auth, policy, etc.)."""


# ─────────────────────────────────────────────────────────────────────────────
# 🧰 Key and value validation
# ─────────────────────────────────────────────────────────────────────────────

_KEY_ALLOWED_RE = re.compile(r"[A-Za-z0-9._\-/+=@() ]+")


def _normalize_key(key: str) -> str:
    """
    Normalize and validate S3 object keys.

    Steps
    -----
    1) Coerce to str, strip whitespace
    2) Remove leading '/'
    3) Collapse '//' runs
    4) Reject path traversal ('..') and disallowed characters

    Raises
    ------
    S3StorageError
        If key is empty or contains unsafe characters.
    """
    k = str(key or "").strip().lstrip("/")
    k = re.sub(r"/{2,}", "/", k)
    if not k:
        raise S3StorageError("Invalid storage key: empty")
    if ".." in k:
        raise S3StorageError("Invalid storage key: path traversal detected")
    if not _KEY_ALLOWED_RE.fullmatch(k):
        raise S3StorageError("Invalid storage key: contains forbidden characters")
    return k


def _secret_value(v: Optional[SecretStr | str]) -> Optional[str]:
    if v is None:
        return None
    return v.get_secret_value() if isinstance(v, SecretStr) else str(v)


# ─────────────────────────────────────────────────────────────────────────────
# 📦 Ranged read handle
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class RangedObject:
    """An open ranged GET.

    Attributes
    ----------
    start : int
        First byte offset actually served.
    content_length : int
        Bytes in this response (``total_size - start`` for open-ended ranges).
    total_size : int
        Full object size.
    """

    body: Any
    start: int
    content_length: int
    total_size: int
    chunk_size: int = 1024 * 1024

    def iter_chunks(self) -> Iterator[bytes]:
        return self.body.iter_chunks(chunk_size=self.chunk_size)

    def close(self) -> None:
        try:
            self.body.close()
        except Exception:  # pragma: no cover
            logger.debug("S3 body close failed", exc_info=True)


_CONTENT_RANGE_RE = re.compile(r"bytes (\d+)-(\d+)/(\d+|\*)")


# ─────────────────────────────────────────────────────────────────────────────
# 📦 S3 Client
# ─────────────────────────────────────────────────────────────────────────────

class S3Client:
    """
    High-level S3 wrapper with safe defaults.

    Parameters
    ----------
    bucket : str | None
        Default bucket. Defaults to `settings.AWS_BUCKET_NAME`; individual calls
        may pass `bucket=` to read from another one.
    region_name : str | None
        Region to use for the client. Defaults to `settings.AWS_REGION`.
    endpoint_url : str | None
        Custom S3-compatible endpoint (e.g., LocalStack/MinIO). Defaults
        to `settings.AWS_S3_ENDPOINT_URL`.
    read_timeout : int
        Socket read timeout for streaming bodies (seconds).

    Notes
    -----
    * Credentials: explicit `AWS_ACCESS_KEY_ID` + `AWS_SECRET_ACCESS_KEY` when
      configured, otherwise the standard AWS credential chain.
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        read_timeout: int = 60,
    ) -> None:
        self.bucket = bucket or settings.AWS_BUCKET_NAME
        region_cfg = region_name or settings.AWS_REGION
        endpoint_cfg = endpoint_url or settings.AWS_S3_ENDPOINT_URL

        cfg = BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 5, "mode": "standard"},
            connect_timeout=3,
            read_timeout=read_timeout,
            s3={"addressing_style": "path" if endpoint_cfg else "virtual"},
        )

        client_kwargs: Dict[str, Any] = {"config": cfg}
        if region_cfg:
            client_kwargs["region_name"] = region_cfg
        if endpoint_cfg:
            client_kwargs["endpoint_url"] = endpoint_cfg
        ak = settings.AWS_ACCESS_KEY_ID
        sk = _secret_value(settings.AWS_SECRET_ACCESS_KEY)
        if ak and sk:
            client_kwargs["aws_access_key_id"] = ak
            client_kwargs["aws_secret_access_key"] = sk

        try:
            self.client = boto3.client("s3", **client_kwargs)
        except Exception as e:  # pragma: no cover
            raise S3StorageError(f"Failed to create S3 client: {e}") from e

        self._repr = f"S3Client(bucket={self.bucket}, region={region_cfg}, endpoint={'yes' if endpoint_cfg else 'no'})"

    def _bucket(self, bucket: Optional[str]) -> str:
        b = bucket or self.bucket
        if not b:
            raise S3StorageError("AWS_BUCKET_NAME not configured")
        return b

    # ────────────────────────────────────────────────────────────────────────
    # 🔎 Metadata
    # ────────────────────────────────────────────────────────────────────────

    def head(self, key: str, *, bucket: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        HEAD the object and return its metadata, or None when it does not exist.

        Raises
        ------
        S3StorageError
            For failures other than "not found" (auth, throttling, network),
            so callers can retry instead of treating the object as missing.
        """
        k = _normalize_key(key)
        try:
            resp = self.client.head_object(Bucket=self._bucket(bucket), Key=k)
            return dict(resp or {})
        except botocore.exceptions.ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise S3StorageError(f"head_object failed: {code}") from e
        except botocore.exceptions.BotoCoreError as e:
            raise S3StorageError(f"head_object failed: {e}") from e

    def object_size(self, key: str, *, bucket: Optional[str] = None) -> Optional[int]:
        meta = self.head(key, bucket=bucket)
        if meta is None:
            return None
        return int(meta.get("ContentLength") or 0)

    # ────────────────────────────────────────────────────────────────────────
    # 📥 Ranged read
    # ────────────────────────────────────────────────────────────────────────

    def open_range(
        self,
        key: str,
        *,
        start: int = 0,
        bucket: Optional[str] = None,
        chunk_size: int = 1024 * 1024,
    ) -> RangedObject:
        """
        Open a GET starting at byte ``start`` (``Range: bytes=<start>-``).

        Parameters
        ----------
        key : str
            Object key (normalized).
        start : int
            First byte to read. ``0`` issues a plain GET.
        bucket : str | None
            Per-call bucket override.
        chunk_size : int
            Size of chunks yielded by `RangedObject.iter_chunks`.

        Raises
        ------
        S3StorageError
            On any S3 failure, including a range past the end of the object.
        """
        k = _normalize_key(key)
        params: Dict[str, Any] = {"Bucket": self._bucket(bucket), "Key": k}
        if start > 0:
            params["Range"] = f"bytes={int(start)}-"
        try:
            resp = self.client.get_object(**params)
        except botocore.exceptions.ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            raise S3StorageError(f"get_object failed: {code}") from e
        except botocore.exceptions.BotoCoreError as e:
            raise S3StorageError(f"get_object failed: {e}") from e

        length = int(resp.get("ContentLength") or 0)
        served_start, total = 0, length
        match = _CONTENT_RANGE_RE.match(resp.get("ContentRange") or "")
        if match:
            served_start = int(match.group(1))
            total = int(match.group(3)) if match.group(3) != "*" else served_start + length
        return RangedObject(
            body=resp["Body"],
            start=served_start,
            content_length=length,
            total_size=total,
            chunk_size=chunk_size,
        )

    def __repr__(self) -> str:  # pragma: no cover
        return self._repr
