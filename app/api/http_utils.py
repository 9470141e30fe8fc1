from __future__ import annotations

"""
Vidvault · HTTP Utilities
=========================

Shared helpers for API routers:

- No-store JSON helper (per-user responses must never be cached by proxies)
- Single `Range: bytes=` parsing for offline playback
- Chunked file iteration for `StreamingResponse`

Notes
-----
• Helpers raise `HTTPException` on client errors and are otherwise side-effect
  free.
• Only single ranges are served; multipart ranges fall back to the first one.
"""

import re
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from fastapi import HTTPException
from fastapi.responses import JSONResponse

__all__ = [
    "json_no_store",
    "parse_byte_range",
    "iter_file_range",
    "STREAM_CHUNK_SIZE",
]

STREAM_CHUNK_SIZE = 64 * 1024

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


# ─────────────────────────────────────────────────────────────────────────────
# 🧳 No-store JSON helper
# ─────────────────────────────────────────────────────────────────────────────

def json_no_store(payload: Any, status_code: int = 200, *, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """
    Return a JSON response with strict `no-store` caching.

    SlowAPI injects its `X-RateLimit-*` headers into the returned response.
    """
    resp = JSONResponse(content=payload, status_code=status_code, headers=headers)
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


# ─────────────────────────────────────────────────────────────────────────────
# 🎞️ Byte ranges
# ─────────────────────────────────────────────────────────────────────────────

def parse_byte_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a `Range` header into an inclusive `(start, end)` pair.

    Returns ``None`` when no usable header is present (serve the whole file).

    Raises
    ------
    HTTPException
        416 when the range cannot be satisfied for a file of ``size`` bytes.
    """
    if not header:
        return None
    first = header.split(",", 1)[0]
    match = _RANGE_RE.match(first)
    if not match:
        return None

    raw_start, raw_end = match.groups()
    if raw_start == "" and raw_end == "":
        return None

    if raw_start == "":
        # Suffix form: last N bytes.
        length = int(raw_end)
        if length == 0 or size == 0:
            raise _unsatisfiable(size)
        return max(size - length, 0), size - 1

    start = int(raw_start)
    end = int(raw_end) if raw_end else size - 1
    if start >= size or end < start:
        raise _unsatisfiable(size)
    return start, min(end, size - 1)


def _unsatisfiable(size: int) -> HTTPException:
    return HTTPException(
        status_code=416,
        detail="Requested range not satisfiable",
        headers={"Content-Range": f"bytes */{size}"},
    )


def iter_file_range(path: Path, start: int, end: int, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield bytes ``start..end`` (inclusive) of ``path`` in chunks."""
    remaining = end - start + 1
    with open(path, "rb") as fh:
        fh.seek(start)
        while remaining > 0:
            chunk = fh.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
