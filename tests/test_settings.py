import pytest
from decimal import Decimal

from pydantic import ValidationError

from app.core.config import Settings


def test_multipliers_from_csv(monkeypatch):
    monkeypatch.setenv("TRANSFER_QUALITY_MULTIPLIERS", "480p=0.25, 1080p=1.1")
    cfg = Settings()
    assert cfg.TRANSFER_QUALITY_MULTIPLIERS == {"480p": Decimal("0.25"), "1080p": Decimal("1.1")}


def test_multipliers_from_json(monkeypatch):
    monkeypatch.setenv("TRANSFER_QUALITY_MULTIPLIERS", '{"4k": "2.5"}')
    assert Settings().TRANSFER_QUALITY_MULTIPLIERS == {"4k": Decimal("2.5")}


@pytest.mark.parametrize("raw", ["720p=0", "720p=fast", "720p", ""])
def test_bad_multipliers_rejected(monkeypatch, raw):
    monkeypatch.setenv("TRANSFER_QUALITY_MULTIPLIERS", raw)
    with pytest.raises(ValidationError):
        Settings()


def test_plan_limits_from_csv(monkeypatch):
    monkeypatch.setenv("STORAGE_PLAN_LIMITS_BYTES", "basic=1000,family=3000")
    assert Settings().STORAGE_PLAN_LIMITS_BYTES == {"basic": 1000, "family": 3000}


def test_backoff_schedule(monkeypatch):
    cfg = Settings()
    assert cfg.transfer_backoff_schedule == [2, 4, 8, 16]

    monkeypatch.setenv("TRANSFER_MAX_ATTEMPTS", "1")
    assert Settings().transfer_backoff_schedule == []


def test_async_dsn(monkeypatch):
    monkeypatch.setenv("POSTGRES_SERVER", "db.internal")
    monkeypatch.setenv("POSTGRES_DB", "vault")
    cfg = Settings()
    assert cfg.ASYNC_DATABASE_URL.startswith("postgresql+asyncpg://")
    assert cfg.ASYNC_DATABASE_URL.endswith("@db.internal:5432/vault")
