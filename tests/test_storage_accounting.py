import pytest
from decimal import Decimal
from uuid import uuid4

from app.core.exceptions import InvalidQualityError
from app.db.models.storage_quota import StorageQuota
from app.schemas.enums import TransferStatus
from app.services import storage_accounting
from app.services.storage_accounting import estimate_transfer_size, format_bytes, used_percent

MULTIPLIERS = {"480p": Decimal("0.3"), "720p": Decimal("0.6"), "1080p": Decimal("1.0"), "4k": Decimal("2.0")}


# ─────────────────────────────────────────────────────────────
# 🧮 Pure helpers
# ─────────────────────────────────────────────────────────────
@pytest.mark.parametrize(
    "num_bytes, expected",
    [
        (0, "0 B"),
        (-5, "0 B"),
        (512, "512 B"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (600_000_000, "572.2 MB"),
        (500_000_000, "476.84 MB"),
        (5 * 1024 ** 3, "5 GB"),
        (3 * 1024 ** 4, "3 TB"),
        (4096 * 1024 ** 4, "4096 TB"),
    ],
)
def test_format_bytes(num_bytes, expected):
    assert format_bytes(num_bytes) == expected


def test_estimate_uses_exact_integer_ceiling():
    assert estimate_transfer_size(1_000_000_000, "720p", MULTIPLIERS) == 600_000_000
    assert estimate_transfer_size(1_000_000_000, "4k", MULTIPLIERS) == 2_000_000_000
    # 7 × 0.3 = 2.1 → 3
    assert estimate_transfer_size(7, "480p", MULTIPLIERS) == 3
    assert estimate_transfer_size(0, "1080p", MULTIPLIERS) == 0


def test_estimate_handles_sizes_beyond_32_bits():
    size = 40 * 1024 ** 3
    assert estimate_transfer_size(size, "1080p", MULTIPLIERS) == size


def test_estimate_rejects_unknown_quality():
    with pytest.raises(InvalidQualityError) as exc:
        estimate_transfer_size(100, "8k", MULTIPLIERS)
    assert exc.value.status_code == 400
    assert exc.value.extra["allowed_qualities"] == ["1080p", "480p", "4k", "720p"]


def test_used_percent_floors_and_guards_zero_total():
    assert used_percent(0, 0) == 0
    assert used_percent(799, 1000) == 79
    assert used_percent(1000, 1000) == 100


# ─────────────────────────────────────────────────────────────
# 📊 Quota checks against the database
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_admission_fits_when_estimate_below_available(db_session, create_user, create_quota):
    user = await create_user()
    await create_quota(user, total_bytes=700_000_000)

    check = await storage_accounting.check_available(db_session, user.id, 600_000_000)

    assert check.available is True
    assert check.available_bytes == 700_000_000
    assert check.code is None


@pytest.mark.anyio
async def test_admission_rejected_with_formatted_figures(
    db_session, create_user, create_quota, create_content, create_transfer
):
    user = await create_user()
    await create_quota(user, total_bytes=700_000_000)
    other = await create_content(title="Already Saved")
    await create_transfer(user, other, status=TransferStatus.COMPLETED, byte_size=200_000_000, bytes_transferred=200_000_000)

    check = await storage_accounting.check_available(db_session, user.id, 600_000_000)

    assert check.available is False
    assert check.code == "INSUFFICIENT_STORAGE"
    assert check.status_code == 413
    info = check.storage_info()
    assert info["required"] == "572.2 MB"
    assert info["available"] == "476.84 MB"
    assert info["used"] == format_bytes(200_000_000)
    assert info["used_percent"] == 28


@pytest.mark.anyio
async def test_missing_quota_fails_closed(db_session, create_user):
    user = await create_user()
    check = await storage_accounting.check_available(db_session, user.id, 1)
    assert check.available is False
    assert check.code == "SUBSCRIPTION_REQUIRED"
    assert check.status_code == 403


@pytest.mark.anyio
async def test_zero_ceiling_fails_closed(db_session, create_user, create_quota):
    user = await create_user()
    await create_quota(user, tier="no_plan", total_bytes=0)
    check = await storage_accounting.check_available(db_session, user.id, 0)
    assert check.code == "SUBSCRIPTION_REQUIRED"


@pytest.mark.anyio
async def test_compute_used_counts_only_completed_live_records(
    db_session, create_user, create_quota, create_content, create_transfer
):
    user = await create_user()
    await create_quota(user)
    statuses = [
        (TransferStatus.COMPLETED, False, 100),
        (TransferStatus.COMPLETED, True, 1_000),     # soft-deleted
        (TransferStatus.DOWNLOADING, False, 10_000),
        (TransferStatus.PAUSED, False, 100_000),
        (TransferStatus.FAILED, False, 1_000_000),
        (TransferStatus.COMPLETED, False, 300),
    ]
    for index, (status, deleted, size) in enumerate(statuses):
        content = await create_content(title=f"Item {index}")
        await create_transfer(user, content, status=status, byte_size=size, deleted=deleted)

    assert await storage_accounting.compute_used(db_session, user.id) == 400
    # Recompute is idempotent.
    assert await storage_accounting.refresh_used(db_session, user.id) == 400
    assert await storage_accounting.refresh_used(db_session, user.id) == 400
    quota = await storage_accounting.get_quota(db_session, user.id)
    assert isinstance(quota, StorageQuota)
    assert quota.used_bytes == 400


@pytest.mark.anyio
async def test_alert_status_at_threshold(db_session, create_user, create_quota, create_content, create_transfer):
    user = await create_user()
    await create_quota(user, total_bytes=1_000, alert_threshold_percent=80)
    content = await create_content()
    await create_transfer(user, content, status=TransferStatus.COMPLETED, byte_size=800, bytes_transferred=800)

    alert = await storage_accounting.alert_status(db_session, user.id)

    assert alert is not None
    assert alert.as_dict() == {"used_percent": 80, "threshold": 80, "should_alert": True, "tier": "most_popular"}


@pytest.mark.anyio
async def test_storage_snapshot_strings_and_percentages(
    db_session, create_user, create_quota, create_content, create_transfer
):
    user = await create_user()
    await create_quota(user, total_bytes=1024 ** 3)
    content = await create_content()
    await create_transfer(user, content, status=TransferStatus.COMPLETED, byte_size=256 * 1024 ** 2)

    snap = await storage_accounting.storage_snapshot(db_session, user.id)

    assert snap["total_storage"] == "1 GB"
    assert snap["used_storage"] == "256 MB"
    assert snap["remaining_storage"] == "768 MB"
    assert snap["remaining_storage_bytes"] == str(768 * 1024 ** 2)
    assert snap["used_percent"] == 25
    assert snap["remaining_percent"] == 75
    assert snap["should_alert"] is False
    assert await storage_accounting.storage_snapshot(db_session, uuid4()) is None
