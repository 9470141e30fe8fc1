# app/core/config.py
from __future__ import annotations

"""
# Vidvault · Centralized Configuration (Pydantic v2)

Single `settings` object with strongly-typed, environment-driven config.

## Goals
- Safe defaults for local/dev; explicit where prod needs secrets.
- CSV / mapping env values normalized by validators (quality table, plan limits).
- Every transfer-pipeline knob (retention, retry schedule, chunking, leases)
  lives here so API and worker processes read the same policy.

## Usage
    from app.core.config import settings
"""

import json
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

log = logging.getLogger(__name__)
load_dotenv()  # harmless in prod; convenient in dev

GIB = 1024 ** 3


# ─────────────────────────────────────────────────────────────
# Small helpers
# ─────────────────────────────────────────────────────────────
def _split_csv(v: str | None) -> list[str]:
    """Split a comma-separated string into a trimmed list (empty-safe)."""
    if not v:
        return []
    return [s.strip() for s in str(v).split(",") if s and s.strip()]


def _parse_mapping(v: object) -> Dict[str, str]:
    """
    Accept a mapping as a dict, a JSON object string, or `k=v,k=v` CSV.

    Values are returned as strings; callers coerce to their numeric type.
    """
    if isinstance(v, dict):
        return {str(k).strip(): str(val).strip() for k, val in v.items()}
    s = str(v or "").strip()
    if not s:
        return {}
    if s.startswith("{"):
        loaded = json.loads(s)
        return {str(k).strip(): str(val).strip() for k, val in loaded.items()}
    out: Dict[str, str] = {}
    for pair in _split_csv(s):
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Malformed mapping entry: {pair!r}")
        out[key.strip()] = value.strip()
    return out


# ─────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────
class Settings(BaseSettings):
    """
    Global application settings sourced from environment.

    Security:
        - Explicit secret for JWT verification.

    Transfers:
        - `TRANSFER_*` keys shape admission, queueing and the worker loop.
        - `STORAGE_*` keys shape quota provisioning and alerts.

    Notes:
        - Prefer the string convenience properties when composing URLs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # don't crash on unknown keys
    )

    # ── App meta ──────────────────────────────────────────────
    PROJECT_NAME: str = "Vidvault API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENV: Literal["development", "staging", "production", "test"] = "development"
    ENABLE_DOCS: bool = True

    # ── Security / JWT ────────────────────────────────────────
    JWT_SECRET_KEY: SecretStr = Field(...)
    JWT_ALGORITHM: Literal["HS256", "HS384", "HS512"] = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(60, ge=5, le=24 * 60)

    # ── Redis / Rate limiting ─────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    DEFAULT_RATE_LIMIT: Optional[str] = None  # e.g., "200/minute"
    RATELIMIT_STORAGE_URI: Optional[str] = None  # fallback to REDIS_URL if unset

    # ── Database (PostgreSQL) ─────────────────────────────────
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: SecretStr = Field(...)
    POSTGRES_DB: str = "vidvault"

    # ── CORS ─────────────────────────────────────────────────
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = Field(
        default_factory=lambda: ["http://localhost:8000", "http://localhost:5173"]
    )
    FRONTEND_ORIGINS: Optional[str] = None  # CSV

    # ── Object storage (optional in dev) ──────────────────────
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[SecretStr] = None
    AWS_REGION: str = "us-east-1"
    AWS_BUCKET_NAME: Optional[str] = None
    AWS_S3_ENDPOINT_URL: Optional[str] = None  # MinIO / localstack

    # ── Transfers: admission & queue ──────────────────────────
    TRANSFER_QUEUE_NAME: str = "transfers"
    TRANSFER_ROOT_DIR: Path = Path("downloads")
    TRANSFER_RETENTION_DAYS: int = Field(30, ge=1, le=365)
    TRANSFER_DEFAULT_QUALITY: str = "720p"
    TRANSFER_QUALITY_MULTIPLIERS: Annotated[Dict[str, Decimal], NoDecode] = Field(
        default_factory=lambda: {
            "480p": Decimal("0.3"),
            "720p": Decimal("0.6"),
            "1080p": Decimal("1.0"),
            "4k": Decimal("2.0"),
        }
    )
    TRANSFER_MAX_ATTEMPTS: int = Field(5, ge=1, le=20)
    TRANSFER_BACKOFF_BASE_SECONDS: int = Field(2, ge=1, le=600)
    TRANSFER_JOB_TIMEOUT_SECONDS: int = Field(6 * 60 * 60, ge=60)
    TRANSFER_RESULT_TTL_SECONDS: int = Field(7 * 24 * 60 * 60, ge=0)
    TRANSFER_FAILURE_TTL_SECONDS: int = Field(30 * 24 * 60 * 60, ge=0)

    # ── Transfers: worker loop ────────────────────────────────
    TRANSFER_CHUNK_SIZE_BYTES: int = Field(1024 * 1024, ge=4096)
    TRANSFER_PROGRESS_INTERVAL_BYTES: int = Field(8 * 1024 * 1024, ge=0)
    TRANSFER_WORKER_CONCURRENCY: int = Field(2, ge=1, le=32)
    TRANSFER_LEASE_TTL_SECONDS: int = Field(30, ge=5, le=3600)
    TRANSFER_LEASE_RENEW_SECONDS: int = Field(15, ge=1, le=1800)
    TRANSFER_MAX_STALLED: int = Field(2, ge=0, le=20)

    # ── Transfers: maintenance sweeps ─────────────────────────
    TRANSFER_STALE_PENDING_MINUTES: int = Field(15, ge=1)
    TRANSFER_SWEEP_INTERVAL_MINUTES: int = Field(5, ge=1)
    TRANSFER_SWEEPS_ENABLED: bool = True

    # ── Storage quota policy ──────────────────────────────────
    STORAGE_PLAN_LIMITS_BYTES: Annotated[Dict[str, int], NoDecode] = Field(
        default_factory=lambda: {
            "basic": 5 * GIB,
            "most_popular": 50 * GIB,
            "family": 100 * GIB,
        }
    )
    STORAGE_DEFAULT_PLAN: str = "most_popular"
    STORAGE_ALERT_THRESHOLD_PERCENT: int = Field(80, ge=1, le=100)
    STORAGE_AUTO_DELETE_DAYS: int = Field(30, ge=1, le=365)

    # ── Validators / normalizers ──────────────────────────────
    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def _assemble_cors_origins(cls, v: str | List[str]):
        if isinstance(v, str):
            return _split_csv(v)
        return v

    @field_validator("FRONTEND_ORIGINS", mode="before")
    @classmethod
    def _normalize_frontend_csv(cls, v):
        return None if v is None else ",".join(_split_csv(str(v)))

    @field_validator("TRANSFER_QUALITY_MULTIPLIERS", mode="before")
    @classmethod
    def _parse_quality_multipliers(cls, v) -> Dict[str, Decimal]:
        """
        Parse `480p=0.3,720p=0.6` or a JSON object into `label → Decimal`.

        Multipliers are kept as `Decimal` so size estimates never round
        through binary floating point.
        """
        out: Dict[str, Decimal] = {}
        for label, raw in _parse_mapping(v).items():
            try:
                factor = Decimal(raw)
            except InvalidOperation as exc:
                raise ValueError(f"Invalid multiplier for {label!r}: {raw!r}") from exc
            if factor <= 0:
                raise ValueError(f"Multiplier for {label!r} must be positive")
            out[label] = factor
        if not out:
            raise ValueError("TRANSFER_QUALITY_MULTIPLIERS must not be empty")
        return out

    @field_validator("STORAGE_PLAN_LIMITS_BYTES", mode="before")
    @classmethod
    def _parse_plan_limits(cls, v) -> Dict[str, int]:
        return {plan: int(raw) for plan, raw in _parse_mapping(v).items()}

    # ── Derived / convenience properties ─────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENV.lower() == "development"

    # Database DSNs (stringified for simplicity)
    @property
    def DATABASE_URL(self) -> str:
        """Sync DSN."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD.get_secret_value()}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Async SQLAlchemy DSN."""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

    @property
    def TEST_DATABASE_URL(self) -> str:
        """Async test DSN (suffix `_test`)."""
        return (
            self.DATABASE_URL
            .replace(self.POSTGRES_DB, f"{self.POSTGRES_DB}_test")
            .replace("postgresql://", "postgresql+asyncpg://")
        )

    @property
    def frontend_origins_list(self) -> List[str]:
        """
        Preferred CORS allowlist:
        Priority → FRONTEND_ORIGINS (CSV) → BACKEND_CORS_ORIGINS (typed list).
        """
        if self.FRONTEND_ORIGINS:
            return _split_csv(self.FRONTEND_ORIGINS)
        return [str(u) for u in (self.BACKEND_CORS_ORIGINS or [])]

    @property
    def ratelimit_storage(self) -> Optional[str]:
        """
        Storage URI for SlowAPI/limits; prefer RATELIMIT_STORAGE_URI,
        otherwise use REDIS_URL when present.
        """
        return self.RATELIMIT_STORAGE_URI or (self.REDIS_URL if self.REDIS_URL else None)

    @property
    def transfer_backoff_schedule(self) -> List[int]:
        """
        Exponential retry delays in seconds, one per retry after the first attempt.

        With base 2 and 5 attempts → `[2, 4, 8, 16]`.
        """
        base = self.TRANSFER_BACKOFF_BASE_SECONDS
        return [base * (2 ** i) for i in range(max(self.TRANSFER_MAX_ATTEMPTS - 1, 0))]


# Singleton instance
settings = Settings()
