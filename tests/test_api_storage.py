import pytest

from app.schemas.enums import SubscriptionStatus, TransferStatus
from tests.fixtures.factories import GIB

BASE = "/api/v1/storage"


@pytest.mark.anyio
async def test_healthz(async_client):
    resp = await async_client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


# ─────────────────────────────────────────────────────────────
# 📊 Dashboard & remaining
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_dashboard(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    user = await subscribed_user(total_bytes=1000, used_bytes=900)
    await create_transfer(user, await create_content(title="A"), status=TransferStatus.COMPLETED, byte_size=850)
    await create_transfer(user, await create_content(title="B"), status=TransferStatus.PAUSED)

    resp = await async_client.get(f"{BASE}/dashboard", headers=auth_headers(user))

    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    body = resp.json()
    assert body["success"] is True
    assert body["storage"]["used_storage_bytes"] == "850"
    assert body["storage"]["should_alert"] is True
    assert body["downloads_summary"]["completed"] == 1
    assert body["downloads_summary"]["paused"] == 1
    assert len(body["downloads"]) == 2
    assert body["alert"] is not None


@pytest.mark.anyio
async def test_remaining(async_client, auth_headers, subscribed_user):
    user = await subscribed_user(plan="basic", total_bytes=5 * GIB)

    resp = await async_client.get(f"{BASE}/quota/remaining", headers=auth_headers(user))

    assert resp.status_code == 200
    body = resp.json()
    assert body["remaining_storage"] == "5 GB"
    assert body["remaining_storage_bytes"] == str(5 * GIB)
    assert body["tier"] == "basic"


@pytest.mark.anyio
async def test_remaining_without_quota(async_client, auth_headers, create_user):
    user = await create_user()
    resp = await async_client.get(f"{BASE}/quota/remaining", headers=auth_headers(user))
    assert resp.status_code == 403
    assert resp.json()["reason"] == "SUBSCRIPTION_REQUIRED"


# ─────────────────────────────────────────────────────────────
# ⚙️ Settings
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_enable_auto_delete(async_client, auth_headers, subscribed_user):
    user = await subscribed_user()

    resp = await async_client.patch(
        f"{BASE}/quota/settings", json={"auto_delete_enabled": True}, headers=auth_headers(user)
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Storage settings updated"
    assert body["settings"] == {"auto_delete_enabled": True, "auto_delete_days": 30, "notification_threshold": 80}


@pytest.mark.anyio
async def test_threshold_is_not_user_editable(async_client, auth_headers, subscribed_user):
    user = await subscribed_user()
    resp = await async_client.patch(
        f"{BASE}/quota/settings",
        json={"auto_delete_enabled": False, "notification_threshold": 50},
        headers=auth_headers(user),
    )
    assert resp.status_code == 422


# ─────────────────────────────────────────────────────────────
# ⬆️ Upgrade
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_upgrade_creates_then_upgrades(async_client, auth_headers, db_session, create_user, create_subscription):
    user = await create_user()
    sub = await create_subscription(user, plan="basic")
    headers = auth_headers(user)

    created = await async_client.post(f"{BASE}/quota/upgrade", json={}, headers=headers)
    assert created.status_code == 201
    assert created.json()["message"] == "Storage quota created"
    assert created.json()["storage"]["tier"] == "basic"

    sub.plan = "family"
    await db_session.commit()

    upgraded = await async_client.post(f"{BASE}/quota/upgrade", json={"plan": "family"}, headers=headers)
    assert upgraded.status_code == 200
    assert upgraded.json()["message"] == "Storage quota upgraded"
    assert upgraded.json()["storage"]["total_storage_bytes"] == str(100 * GIB)


@pytest.mark.anyio
async def test_upgrade_refuses_downgrade(async_client, auth_headers, create_user, create_subscription, create_quota):
    user = await create_user()
    await create_subscription(user, plan="basic")
    await create_quota(user, tier="family", total_bytes=100 * GIB)

    resp = await async_client.post(f"{BASE}/quota/upgrade", json={}, headers=auth_headers(user))

    assert resp.status_code == 400
    assert resp.json()["reason"] == "PLAN_DOWNGRADE"


@pytest.mark.anyio
async def test_upgrade_plan_mismatch(async_client, auth_headers, create_user, create_subscription):
    user = await create_user()
    await create_subscription(user, plan="basic")
    resp = await async_client.post(f"{BASE}/quota/upgrade", json={"plan": "family"}, headers=auth_headers(user))
    assert resp.status_code == 400
    assert resp.json()["reason"] == "PLAN_MISMATCH"


@pytest.mark.anyio
async def test_upgrade_requires_active_subscription(async_client, auth_headers, create_user, create_subscription):
    user = await create_user()
    await create_subscription(user, plan="family", status=SubscriptionStatus.PAST_DUE)
    resp = await async_client.post(f"{BASE}/quota/upgrade", json={}, headers=auth_headers(user))
    assert resp.status_code == 403
    assert resp.json()["reason"] == "SUBSCRIPTION_REQUIRED"
