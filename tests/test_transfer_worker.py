import asyncio
import os
import pytest
from pathlib import Path

import anyio
from sqlalchemy import select

from app.db.models.storage_quota import StorageQuota
from app.db.models.transfer import Transfer
from app.schemas.enums import TransferStatus
from app.services.transfer_queue import TransferJob
from app.services.transfer_service import TransferService
from app.workers.transfer_worker import TransferOutcome, TransferWorker, build_local_path
from tests.fixtures.fakes import FakeQueue

SOURCE_KEY = "masters/long-take.mp4"
SOURCE = bytes(range(256)) * 40  # 10_240 bytes → 3 chunks of 4096
BYTE_SIZE = 6_144  # 0.6 × len(SOURCE)


@pytest.fixture
def worker(session_factory, fake_s3, fake_leases, transfer_cfg) -> TransferWorker:
    fake_s3.objects[SOURCE_KEY] = SOURCE
    return TransferWorker.from_settings(session_factory, fake_s3, fake_leases, cfg=transfer_cfg)


@pytest.fixture
def seeded(subscribed_user, create_content, create_transfer):
    async def _seed(**transfer_kwargs):
        user = await subscribed_user()
        content = await create_content(size=len(SOURCE), s3_key=transfer_kwargs.pop("s3_key", SOURCE_KEY))
        transfer_kwargs.setdefault("byte_size", BYTE_SIZE)
        record = await create_transfer(user, content, **transfer_kwargs)
        job = TransferJob(
            transfer_id=str(record.id),
            user_id=str(user.id),
            content_id=str(content.id),
            quality=record.quality,
        )
        return user, content, record, job

    return _seed


async def _load(session_factory, transfer_id) -> Transfer:
    async with session_factory() as db:
        return await db.get(Transfer, transfer_id)


def _local_path(worker: TransferWorker, user, content) -> Path:
    return build_local_path(worker.root_dir, user.id, content.id, "720p")


# ─────────────────────────────────────────────────────────────
# ✅ Happy path & resume
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_completes_and_recomputes_quota(worker, seeded, session_factory, fake_leases):
    user, content, record, job = await seeded()

    outcome = await worker.run(job)

    assert outcome is TransferOutcome.COMPLETED
    path = _local_path(worker, user, content)
    assert path.read_bytes() == SOURCE
    done = await _load(session_factory, record.id)
    assert done.status == TransferStatus.COMPLETED
    assert done.bytes_transferred == BYTE_SIZE
    assert done.progress == 100
    assert done.file_path == str(path)
    async with session_factory() as db:
        quota = (await db.execute(select(StorageQuota).where(StorageQuota.user_id == user.id))).scalar_one()
    assert quota.used_bytes == BYTE_SIZE
    assert fake_leases.releases == [(str(record.id), True)]
    assert fake_leases.held == set()


@pytest.mark.anyio
async def test_resumes_from_on_disk_size(worker, seeded, session_factory, fake_s3):
    user, content, record, job = await seeded(status=TransferStatus.FAILED, retry_count=1)
    path = _local_path(worker, user, content)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(SOURCE[:4096])

    outcome = await worker.run(job)

    assert outcome is TransferOutcome.COMPLETED
    assert fake_s3.range_starts == [4096]
    assert path.read_bytes() == SOURCE
    done = await _load(session_factory, record.id)
    assert done.bytes_transferred == BYTE_SIZE
    assert done.retry_count == 1


@pytest.mark.anyio
async def test_explicit_offset_is_clamped_to_disk(worker, seeded, fake_s3):
    user, content, _, job = await seeded()
    path = _local_path(worker, user, content)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(SOURCE[:4096])

    await worker.run(job, resume_offset=9000)

    assert fake_s3.range_starts == [4096]
    assert path.read_bytes() == SOURCE


@pytest.mark.anyio
async def test_smaller_explicit_offset_truncates_local_file(worker, seeded, fake_s3):
    user, content, _, job = await seeded()
    path = _local_path(worker, user, content)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(SOURCE[:4096])

    await worker.run(job, resume_offset=100)

    assert fake_s3.range_starts == [100]
    assert path.read_bytes() == SOURCE


@pytest.mark.anyio
async def test_oversized_local_file_restarts_from_zero(worker, seeded, fake_s3):
    user, content, _, job = await seeded()
    path = _local_path(worker, user, content)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * (len(SOURCE) + 10))

    await worker.run(job)

    assert fake_s3.range_starts == [0]
    assert path.read_bytes() == SOURCE


@pytest.mark.anyio
async def test_complete_local_file_finalizes_without_fetching(worker, seeded, session_factory, fake_s3, fake_leases):
    user, content, record, job = await seeded(status=TransferStatus.DOWNLOADING)
    path = _local_path(worker, user, content)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(SOURCE)

    outcome = await worker.run(job)

    assert outcome is TransferOutcome.COMPLETED
    assert fake_s3.range_starts == []
    assert path.read_bytes() == SOURCE
    done = await _load(session_factory, record.id)
    assert done.status == TransferStatus.COMPLETED
    assert done.bytes_transferred == BYTE_SIZE
    assert done.progress == 100
    assert fake_leases.releases == [(str(record.id), True)]


# ─────────────────────────────────────────────────────────────
# 💥 Failures
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_transient_error_marks_failed_and_reraises(worker, seeded, session_factory, fake_s3):
    user, content, record, job = await seeded()
    fake_s3.explode_at = 1

    with pytest.raises(ConnectionResetError):
        await worker.run(job)

    failed = await _load(session_factory, record.id)
    assert failed.status == TransferStatus.FAILED
    assert failed.retry_count == 1
    assert "connection reset" in failed.error_message
    partial = _local_path(worker, user, content)
    assert partial.stat().st_size == 4096

    # The queue's retry picks up from the partial file.
    fake_s3.explode_at = None
    assert await worker.run(job) is TransferOutcome.COMPLETED
    assert fake_s3.range_starts == [0, 4096]
    assert partial.read_bytes() == SOURCE
    done = await _load(session_factory, record.id)
    assert done.error_message is None


@pytest.mark.anyio
async def test_short_stream_is_a_failure(worker, seeded, session_factory, fake_s3):
    _, _, record, job = await seeded()
    fake_s3.truncate_at = 8192

    with pytest.raises(IOError, match="ended early"):
        await worker.run(job)
    assert (await _load(session_factory, record.id)).status == TransferStatus.FAILED


@pytest.mark.anyio
async def test_missing_source_key_is_unrecoverable(worker, seeded, session_factory, fake_s3):
    _, _, record, job = await seeded(s3_key=None)

    assert await worker.run(job) is TransferOutcome.UNRECOVERABLE

    failed = await _load(session_factory, record.id)
    assert failed.status == TransferStatus.FAILED
    assert failed.retry_count == 0
    assert failed.error_message == "Content source unavailable"
    assert fake_s3.range_starts == []


@pytest.mark.anyio
async def test_missing_object_is_unrecoverable(worker, seeded, session_factory, fake_s3):
    _, _, record, job = await seeded()
    fake_s3.objects.clear()

    assert await worker.run(job) is TransferOutcome.UNRECOVERABLE
    assert (await _load(session_factory, record.id)).error_message == "Source object not found"


@pytest.mark.anyio
async def test_missing_record_is_dropped(worker):
    job = TransferJob(
        transfer_id="6b0c9f0e-2b6f-4c1e-9a3a-8c4cbb0f9f01",
        user_id="6b0c9f0e-2b6f-4c1e-9a3a-8c4cbb0f9f02",
        content_id="6b0c9f0e-2b6f-4c1e-9a3a-8c4cbb0f9f03",
        quality="720p",
    )
    assert await worker.run(job) is TransferOutcome.UNRECOVERABLE


# ─────────────────────────────────────────────────────────────
# 🔒 Exclusivity & stalls
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_second_job_for_same_transfer_is_a_noop(worker, seeded, session_factory, fake_leases, fake_s3):
    _, _, record, job = await seeded()
    fake_leases.held.add(str(record.id))

    assert await worker.run(job) is TransferOutcome.DUPLICATE
    assert fake_s3.range_starts == []
    assert (await _load(session_factory, record.id)).status == TransferStatus.PENDING


@pytest.mark.anyio
async def test_repeated_stalls_abandon_the_transfer(worker, seeded, session_factory, fake_leases):
    _, _, record, job = await seeded(status=TransferStatus.DOWNLOADING)
    fake_leases.stalls[str(record.id)] = worker.max_stalled + 1

    assert await worker.run(job) is TransferOutcome.ABANDONED

    abandoned = await _load(session_factory, record.id)
    assert abandoned.status == TransferStatus.FAILED
    assert "stalled" in abandoned.error_message
    assert fake_leases.releases == [(str(record.id), True)]


@pytest.mark.anyio
@pytest.mark.parametrize("status", [TransferStatus.PAUSED, TransferStatus.COMPLETED, TransferStatus.CANCELLED])
async def test_non_runnable_records_are_skipped(worker, seeded, fake_s3, status):
    _, _, _, job = await seeded(status=status)
    assert await worker.run(job) is TransferOutcome.SKIPPED
    assert fake_s3.range_starts == []


# ─────────────────────────────────────────────────────────────
# ⏸️ Cooperative stop at checkpoints
# ─────────────────────────────────────────────────────────────
async def _run_parked(worker, fake_s3, job, action):
    """Start the job, park the stream at chunk 1, run ``action``, then let it continue."""
    fake_s3.park_at_chunk(1)
    task = asyncio.create_task(worker.run(job))
    assert await anyio.to_thread.run_sync(fake_s3.reached.wait, 5)
    try:
        await action()
    finally:
        fake_s3.release.set()
    return await task


@pytest.mark.anyio
async def test_pause_stops_stream_and_keeps_partial_file(worker, seeded, session_factory, fake_s3):
    user, content, record, job = await seeded()

    async def pause():
        async with session_factory() as db:
            await TransferService(db, FakeQueue()).pause(user.id, record.id)

    outcome = await _run_parked(worker, fake_s3, job, pause)

    assert outcome is TransferOutcome.PAUSED
    paused = await _load(session_factory, record.id)
    assert paused.status == TransferStatus.PAUSED
    assert 0 < paused.bytes_transferred < BYTE_SIZE
    path = _local_path(worker, user, content)
    assert 0 < path.stat().st_size < len(SOURCE)


@pytest.mark.anyio
async def test_cancel_stops_stream_and_removes_file(worker, seeded, session_factory, fake_s3):
    user, content, record, job = await seeded()

    async def cancel():
        async with session_factory() as db:
            await TransferService(db, FakeQueue()).cancel(user.id, record.id)

    outcome = await _run_parked(worker, fake_s3, job, cancel)

    assert outcome is TransferOutcome.CANCELLED
    cancelled = await _load(session_factory, record.id)
    assert cancelled.status == TransferStatus.CANCELLED
    assert not _local_path(worker, user, content).exists()


@pytest.mark.anyio
async def test_lost_lease_leaves_record_to_new_holder(worker, seeded, session_factory, fake_s3, fake_leases):
    _, _, record, job = await seeded()
    worker.lease_renew_seconds = 0.01

    async def revoke():
        fake_leases.revoked.add(str(record.id))
        await asyncio.sleep(0.1)

    outcome = await _run_parked(worker, fake_s3, job, revoke)

    assert outcome is TransferOutcome.LEASE_LOST
    assert (await _load(session_factory, record.id)).status == TransferStatus.DOWNLOADING


@pytest.mark.anyio
async def test_bytes_transferred_never_moves_backwards(worker, seeded, session_factory, fake_s3):
    _, _, record, job = await seeded(status=TransferStatus.DOWNLOADING, bytes_transferred=5_000, progress=80)
    seen = {}

    async def inspect():
        seen["mid"] = await _load(session_factory, record.id)

    outcome = await _run_parked(worker, fake_s3, job, inspect)

    assert outcome is TransferOutcome.COMPLETED
    assert seen["mid"].bytes_transferred >= 5_000
    assert seen["mid"].progress >= 80


def test_projection_is_clamped_to_byte_size():
    assert TransferWorker._project(0, 10_000, 6_000) == 0
    assert TransferWorker._project(5_000, 10_000, 6_000) == 3_000
    assert TransferWorker._project(20_000, 10_000, 6_000) == 6_000
    assert TransferWorker._project(5, 0, 6_000) == 0
    assert TransferWorker._percent(9_999, 10_000) == 99


def test_local_path_layout(tmp_path):
    path = build_local_path(tmp_path, "u-1", "c-9", "1080p")
    assert path == tmp_path / "users" / "u-1" / "c-9_1080p.mp4"
    assert os.fspath(path).endswith("c-9_1080p.mp4")
