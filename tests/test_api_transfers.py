import pytest
from uuid import uuid4

from sqlalchemy import select

from app.db.models.transfer import Transfer
from app.schemas.enums import TransferStatus
from tests.fixtures.factories import GIB

BASE = "/api/v1/transfers"


# ─────────────────────────────────────────────────────────────
# 🔐 Auth & entitlement
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_requires_bearer_token(async_client):
    resp = await async_client.get(BASE)
    assert resp.status_code == 401
    body = resp.json()
    assert body["success"] is False
    assert body["reason"] == "INVALID_TOKEN"


@pytest.mark.anyio
async def test_garbage_token_rejected(async_client):
    resp = await async_client.get(BASE, headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_request_without_subscription(async_client, auth_headers, create_user, create_content):
    user = await create_user()
    content = await create_content()

    resp = await async_client.post(BASE, json={"content_id": str(content.id)}, headers=auth_headers(user))

    assert resp.status_code == 403
    body = resp.json()
    assert body["reason"] == "SUBSCRIPTION_REQUIRED"
    assert body["upgrade_required"] is True


# ─────────────────────────────────────────────────────────────
# ➕ Request
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_request_transfer_created(async_client, auth_headers, fake_queue, subscribed_user, create_content):
    user = await subscribed_user()
    content = await create_content(size=1_000_000_000)

    resp = await async_client.post(
        BASE, json={"content_id": str(content.id), "quality": "1080P"}, headers=auth_headers(user)
    )

    assert resp.status_code == 201
    assert resp.headers["Cache-Control"] == "no-store"
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "Download started"
    download = body["download"]
    assert download["status"] == "pending"
    assert download["quality"] == "1080p"
    assert download["byte_size"] == "1000000000"
    assert fake_queue.transfer_ids == [download["id"]]


@pytest.mark.anyio
async def test_request_conflict_returns_existing(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    content = await create_content()
    existing = await create_transfer(user, content, status=TransferStatus.DOWNLOADING)

    resp = await async_client.post(BASE, json={"content_id": str(content.id)}, headers=auth_headers(user))

    assert resp.status_code == 409
    body = resp.json()
    assert body["reason"] == "TRANSFER_EXISTS"
    assert body["message"] == "Download already exists with status: downloading"
    assert body["download"]["id"] == str(existing.id)


@pytest.mark.anyio
async def test_request_over_quota(async_client, auth_headers, db_session, subscribed_user, create_content):
    user = await subscribed_user(total_bytes=1 * GIB, used_bytes=0)
    content = await create_content(size=4 * GIB)

    resp = await async_client.post(BASE, json={"content_id": str(content.id)}, headers=auth_headers(user))

    assert resp.status_code == 413
    body = resp.json()
    assert body["reason"] == "INSUFFICIENT_STORAGE"
    assert set(body["storage_info"]) >= {"required", "available", "used", "total", "used_percent", "tier"}
    count = (await db_session.execute(select(Transfer.id).where(Transfer.user_id == user.id))).all()
    assert count == []


@pytest.mark.anyio
async def test_request_rejects_unknown_fields(async_client, auth_headers, subscribed_user, create_content):
    user = await subscribed_user()
    content = await create_content()

    resp = await async_client.post(
        BASE, json={"content_id": str(content.id), "priority": "high"}, headers=auth_headers(user)
    )

    assert resp.status_code == 422
    assert resp.json()["reason"] == "VALIDATION_ERROR"


@pytest.mark.anyio
async def test_request_unknown_content(async_client, auth_headers, subscribed_user):
    user = await subscribed_user()
    resp = await async_client.post(BASE, json={"content_id": str(uuid4())}, headers=auth_headers(user))
    assert resp.status_code == 404
    assert resp.json()["reason"] == "CONTENT_NOT_FOUND"


# ─────────────────────────────────────────────────────────────
# 📋 Reads
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_list_filters_by_status(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    paused = await create_transfer(user, await create_content(title="A"), status=TransferStatus.PAUSED)
    await create_transfer(user, await create_content(title="B"), status=TransferStatus.COMPLETED)

    resp = await async_client.get(BASE, params={"status": "paused"}, headers=auth_headers(user))

    assert resp.status_code == 200
    body = resp.json()
    assert [d["id"] for d in body["downloads"]] == [str(paused.id)]
    assert body["pagination"]["total"] == 1


@pytest.mark.anyio
async def test_list_rejects_unknown_status(async_client, auth_headers, subscribed_user):
    user = await subscribed_user()
    resp = await async_client.get(BASE, params={"status": "exploded"}, headers=auth_headers(user))
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_quota_snapshot(async_client, auth_headers, subscribed_user):
    user = await subscribed_user(total_bytes=10 * GIB)
    resp = await async_client.get(f"{BASE}/quota", headers=auth_headers(user))
    assert resp.status_code == 200
    storage = resp.json()["storage"]
    assert storage["total_storage_bytes"] == str(10 * GIB)
    assert storage["total_storage"] == "10 GB"


@pytest.mark.anyio
async def test_progress_of_unknown_transfer(async_client, auth_headers, subscribed_user):
    user = await subscribed_user()
    request_id = str(uuid4())
    resp = await async_client.get(
        f"{BASE}/{uuid4()}/progress", headers={**auth_headers(user), "X-Request-ID": request_id}
    )
    assert resp.status_code == 404
    body = resp.json()
    assert body["reason"] == "TRANSFER_NOT_FOUND"
    assert body["request_id"] == request_id
    assert resp.headers["X-Request-ID"] == request_id


@pytest.mark.anyio
async def test_progress_hidden_from_other_users(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    owner = await subscribed_user()
    intruder = await subscribed_user()
    record = await create_transfer(owner, await create_content())

    resp = await async_client.get(f"{BASE}/{record.id}/progress", headers=auth_headers(intruder))
    assert resp.status_code == 404


# ─────────────────────────────────────────────────────────────
# ⏯️ Lifecycle
# ─────────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_pause_then_resume(async_client, auth_headers, fake_queue, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    record = await create_transfer(user, await create_content(), status=TransferStatus.DOWNLOADING)
    headers = auth_headers(user)

    paused = await async_client.patch(f"{BASE}/{record.id}/pause", headers=headers)
    assert paused.status_code == 200
    assert paused.json()["message"] == "Download paused"
    assert paused.json()["download"]["status"] == "paused"

    again = await async_client.patch(f"{BASE}/{record.id}/pause", headers=headers)
    assert again.status_code == 400
    assert again.json()["reason"] == "INVALID_TRANSITION"
    assert again.json()["current_status"] == "paused"

    resumed = await async_client.patch(f"{BASE}/{record.id}/resume", headers=headers)
    assert resumed.status_code == 200
    assert resumed.json()["message"] == "Download resumed"
    assert resumed.json()["download"]["status"] == "downloading"
    assert fake_queue.transfer_ids == [str(record.id)]


@pytest.mark.anyio
async def test_cancel(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    record = await create_transfer(user, await create_content())

    resp = await async_client.delete(f"{BASE}/{record.id}", headers=auth_headers(user))

    assert resp.status_code == 200
    assert resp.json()["message"] == "Download cancelled"
    assert resp.json()["download"]["status"] == "cancelled"


@pytest.mark.anyio
async def test_delete_completed_removes_file(async_client, auth_headers, tmp_path, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    movie = tmp_path / "movie.mp4"
    movie.write_bytes(b"\x00" * 64)
    record = await create_transfer(
        user, await create_content(), status=TransferStatus.COMPLETED, byte_size=2048, file_path=str(movie)
    )

    resp = await async_client.delete(f"{BASE}/{record.id}/delete", headers=auth_headers(user))

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Download deleted"
    assert body["file_deleted"] is True
    assert body["freed_storage_bytes"] == "2048"
    assert body["freed_storage"] == "2 KB"
    assert not movie.exists()


@pytest.mark.anyio
async def test_cleanup_route_not_parsed_as_id(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    await create_transfer(user, await create_content(title="A"), status=TransferStatus.COMPLETED, byte_size=10)
    await create_transfer(user, await create_content(title="B"), status=TransferStatus.PAUSED)

    resp = await async_client.delete(f"{BASE}/cleanup", headers=auth_headers(user))

    assert resp.status_code == 200
    body = resp.json()
    assert body["deleted_count"] == 2
    assert body["freed_storage_bytes"] == "10"

    listing = await async_client.get(BASE, headers=auth_headers(user))
    assert listing.json()["downloads"] == []


@pytest.mark.anyio
async def test_cleanup_is_rate_limited(ratelimit_on, async_client, auth_headers, subscribed_user):
    user = await subscribed_user()
    headers = auth_headers(user)

    codes = [(await async_client.delete(f"{BASE}/cleanup", headers=headers)).status_code for _ in range(8)]

    assert codes[0] == 200
    assert 429 in codes


# ─────────────────────────────────────────────────────────────
# ▶️ Playback
# ─────────────────────────────────────────────────────────────
@pytest.fixture
async def playable(tmp_path, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    movie = tmp_path / "playable.mp4"
    movie.write_bytes(bytes(range(256)) * 4)
    record = await create_transfer(
        user, await create_content(), status=TransferStatus.COMPLETED, byte_size=1024, file_path=str(movie)
    )
    return user, record


@pytest.mark.anyio
async def test_play_whole_file(async_client, auth_headers, playable):
    user, record = playable
    resp = await async_client.get(f"{BASE}/{record.id}/play", headers=auth_headers(user))

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.headers["accept-ranges"] == "bytes"
    assert resp.headers["content-length"] == "1024"
    assert resp.content == bytes(range(256)) * 4


@pytest.mark.anyio
async def test_play_range(async_client, auth_headers, playable):
    user, record = playable
    resp = await async_client.get(
        f"{BASE}/{record.id}/play", headers={**auth_headers(user), "Range": "bytes=256-511"}
    )

    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 256-511/1024"
    assert resp.content == bytes(range(256))


@pytest.mark.anyio
async def test_play_unsatisfiable_range(async_client, auth_headers, playable):
    user, record = playable
    resp = await async_client.get(
        f"{BASE}/{record.id}/play", headers={**auth_headers(user), "Range": "bytes=4096-"}
    )

    assert resp.status_code == 416
    assert resp.headers["content-range"] == "bytes */1024"


@pytest.mark.anyio
async def test_play_incomplete_transfer(async_client, auth_headers, subscribed_user, create_content, create_transfer):
    user = await subscribed_user()
    record = await create_transfer(user, await create_content(), status=TransferStatus.DOWNLOADING)
    resp = await async_client.get(f"{BASE}/{record.id}/play", headers=auth_headers(user))
    assert resp.status_code == 404
