import pytest
from slowapi import Limiter
from starlette.requests import Request

from app.core import limiter as _limiter


def _request(path: str = "/api/v1/transfers", headers=None, user_id=None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("127.0.0.1", 5000),
    }
    request = Request(scope)
    if user_id is not None:
        request.state.user_id = user_id
    return request


def test_module_level_limiter_is_built():
    assert isinstance(_limiter.limiter, Limiter)


def test_key_prefers_user_then_forwarded_ip(monkeypatch):
    monkeypatch.setattr(_limiter, "NAMESPACE", "")
    assert _limiter.get_user_rate_limit_key(_request(user_id="u-1")) == "user:u-1"
    forwarded = _request(headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
    assert _limiter.get_user_rate_limit_key(forwarded) == "ip:203.0.113.7"
    assert _limiter.get_user_rate_limit_key(_request()) == "ip:127.0.0.1"


def test_test_bypass_exempts_everything():
    # conftest sets RATE_LIMIT_TEST_BYPASS for the whole session.
    assert _limiter.should_exempt_request(None) is True
    assert _limiter.should_exempt_request(_request()) is True


@pytest.mark.usefixtures("ratelimit_on")
def test_exemptions_when_enforcing():
    assert _limiter.should_exempt_request(None) is False
    assert _limiter.should_exempt_request(_request()) is False
    assert _limiter.should_exempt_request(_request("/healthz")) is True


def test_disabled_by_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_TEST_BYPASS", "0")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    assert _limiter.should_exempt_request(_request()) is True


def test_namespace_prefixes_key(monkeypatch):
    monkeypatch.setattr(_limiter, "NAMESPACE", "run-7")
    assert _limiter.get_user_rate_limit_key(_request(user_id="u-1")) == "run-7:user:u-1"
