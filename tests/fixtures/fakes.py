# tests/fixtures/fakes.py
"""
In-memory stand-ins for the transfer pipeline's infrastructure seams:

- `FakeQueue`   records enqueued jobs (optionally failing every enqueue)
- `FakeS3`      serves byte strings by key, with ranged reads and an optional
                gate that parks the stream at a given chunk
- `FakeLeases`  per-transfer exclusivity with controllable stall counts
"""

from __future__ import annotations

import threading
from typing import Dict, Iterator, List, Optional, Tuple

import pytest

from app.services.transfer_queue import TransferJob, TransferQueue
from app.workers.leases import LeaseLostError, LeaseProvider, TransferLease


# ─────────────────────────────────────────────────────────────
# 📬 Queue
# ─────────────────────────────────────────────────────────────
class FakeQueue(TransferQueue):
    def __init__(self, *, fail: bool = False) -> None:
        self.jobs: List[TransferJob] = []
        self.fail = fail

    async def enqueue(self, job: TransferJob) -> str:
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.jobs.append(job)
        return f"job-{len(self.jobs)}"

    @property
    def transfer_ids(self) -> List[str]:
        return [job.transfer_id for job in self.jobs]


# ─────────────────────────────────────────────────────────────
# 🪣 Object storage
# ─────────────────────────────────────────────────────────────
class FakeRanged:
    def __init__(self, data: bytes, chunk_size: int, owner: "FakeS3") -> None:
        self._data = data
        self._chunk_size = chunk_size
        self._owner = owner
        self.closed = False

    def iter_chunks(self) -> Iterator[bytes]:
        for index, pos in enumerate(range(0, len(self._data), self._chunk_size)):
            if self._owner.gate_at is not None and index == self._owner.gate_at:
                self._owner.reached.set()
                self._owner.release.wait(timeout=10)
            if self._owner.truncate_at is not None and pos >= self._owner.truncate_at:
                return
            if self._owner.explode_at is not None and index == self._owner.explode_at:
                raise ConnectionResetError("connection reset by peer")
            yield self._data[pos:pos + self._chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeS3:
    """Blocking API shaped like `S3Client` (the worker calls it from a thread)."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None) -> None:
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.range_starts: List[int] = []
        self.gate_at: Optional[int] = None
        self.truncate_at: Optional[int] = None
        self.explode_at: Optional[int] = None
        self.reached = threading.Event()
        self.release = threading.Event()

    def object_size(self, key: str, *, bucket: Optional[str] = None) -> Optional[int]:
        data = self.objects.get(key)
        return None if data is None else len(data)

    def open_range(self, key: str, *, start: int = 0, bucket: Optional[str] = None, chunk_size: int = 1024) -> FakeRanged:
        self.range_starts.append(start)
        return FakeRanged(self.objects[key][start:], chunk_size, self)

    def park_at_chunk(self, index: int) -> None:
        self.gate_at = index
        self.reached.clear()
        self.release.clear()


# ─────────────────────────────────────────────────────────────
# 🔒 Leases
# ─────────────────────────────────────────────────────────────
class FakeLease(TransferLease):
    def __init__(self, provider: "FakeLeases", transfer_id: str) -> None:
        self._provider = provider
        self.transfer_id = transfer_id
        self._held = False

    async def acquire(self) -> bool:
        if self.transfer_id in self._provider.held:
            return False
        self._provider.held.add(self.transfer_id)
        self._held = True
        return True

    async def mark_running(self) -> int:
        return self._provider.stalls.get(self.transfer_id, 0)

    async def renew(self) -> None:
        if not self._held or self.transfer_id in self._provider.revoked:
            raise LeaseLostError(self.transfer_id)

    async def release(self, *, settled: bool = False) -> None:
        if self._held:
            self._provider.held.discard(self.transfer_id)
            self._held = False
        self._provider.releases.append((self.transfer_id, settled))


class FakeLeases(LeaseProvider):
    def __init__(self) -> None:
        self.held: set[str] = set()
        self.revoked: set[str] = set()
        self.stalls: Dict[str, int] = {}
        self.releases: List[Tuple[str, bool]] = []

    def lease(self, transfer_id: str) -> FakeLease:
        return FakeLease(self, str(transfer_id))

    async def is_active(self, transfer_id: str) -> bool:
        return str(transfer_id) in self.held


# ─────────────────────────────────────────────────────────────
# 🧷 Fixtures
# ─────────────────────────────────────────────────────────────
@pytest.fixture()
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture()
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture()
def fake_leases() -> FakeLeases:
    return FakeLeases()


__all__ = [
    "FakeQueue",
    "FakeRanged",
    "FakeS3",
    "FakeLease",
    "FakeLeases",
    "fake_queue",
    "fake_s3",
    "fake_leases",
]
