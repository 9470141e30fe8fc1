# tests/conftest.py
"""
Global test bootstrap
- Seeds the environment the settings object requires (before any app import)
- Makes SlowAPI rate-limiting test-friendly (bypass by default)
- Mounts a mock Redis client into app.core.redis_client
- Exposes a redis_client fixture + an opt-in ratelimit_on fixture
"""

from __future__ import annotations

import os
import random
import importlib
import pytest

# ──────────────────────────────────────────────────────────────────────────────
# 🌱 Test env (set BEFORE importing the app so Settings() validates)
# ──────────────────────────────────────────────────────────────────────────────
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-vidvault-tests-only")
os.environ.setdefault("POSTGRES_PASSWORD", "postgres")
os.environ.setdefault("LOG_TO_FILE", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RATELIMIT_STORAGE_URI", "memory://")     # in-memory storage for tests
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")             # keep middleware behavior
os.environ.setdefault("RATE_LIMIT_TEST_BYPASS", "1")            # bypass limits unless a test disables it
os.environ.setdefault("RATE_LIMIT_NAMESPACE", f"pytest-{random.getrandbits(32)}")  # isolate counters per run

# The limiter reads env at import time; reload once now that env is set.
import app.core.limiter as _limiter  # noqa: E402

importlib.reload(_limiter)

# ──────────────────────────────────────────────────────────────────────────────
# 🧪 Install mock Redis globally before any tests run
# ──────────────────────────────────────────────────────────────────────────────
from app.core.redis_client import redis_wrapper  # noqa: E402
from tests.fixtures.mocks.redis import MockRedisClient  # noqa: E402

redis_wrapper._client = MockRedisClient()

# ──────────────────────────────────────────────────────────────────────────────
# 📦 Pull in the rest of the fixtures (db, fakes, factories, app)
# ──────────────────────────────────────────────────────────────────────────────
from tests.fixtures.db import *          # noqa: F401,F403,E402
from tests.fixtures.fakes import *       # noqa: F401,F403,E402
from tests.fixtures.factories import *   # noqa: F401,F403,E402
from tests.fixtures.app import *         # noqa: F401,F403,E402


# ──────────────────────────────────────────────────────────────────────────────
# 🔌 Redis fixture (function-scoped), cleared between tests
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
async def redis_client():
    """Shared mock client, flushed before and after the test."""
    client = redis_wrapper.client
    await client.flushall()
    yield client
    await client.flushall()


# ──────────────────────────────────────────────────────────────────────────────
# 🚦 Opt-in real rate limiting for a single test
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def ratelimit_on(monkeypatch):
    """Disable the test bypass so SlowAPI enforces limits (memory backend)."""
    monkeypatch.setenv("RATE_LIMIT_TEST_BYPASS", "0")
    _limiter.limiter.reset()
    yield
    _limiter.limiter.reset()
