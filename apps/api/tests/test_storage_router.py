import time
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from config import settings
from database import get_db
from main import app
from services.session_token import SESSION_TOKEN_TYPE


def _bearer(user_id, email=None, *, token_type=SESSION_TOKEN_TYPE, expires_in=3600):
    claims = {"sub": user_id, "type": token_type, "exp": int(time.time()) + expires_in}
    if email:
        claims["email"] = email
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


TEST_USER_ID = "storage-router-user"
TEST_AUTH_HEADER = _bearer(TEST_USER_ID, "router@example.com")
ADMIN_HEADER = {"X-Admin-Key": settings.ADMIN_API_KEY}


@pytest_asyncio.fixture
async def storage_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with patch("services.credits.settings.FREE_TIER_CREDITS", 1000):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_upload_lifecycle_over_http(storage_client):
    begin_resp = await storage_client.post(
        "/storage/uploads",
        json={"file_size_bytes": 524288, "media_type": "image"},
        headers=TEST_AUTH_HEADER,
    )
    assert begin_resp.status_code == 200
    begun = begin_resp.json()
    assert begun["credits_required"] == 50

    finalize_resp = await storage_client.post(
        f"/storage/uploads/{begun['upload_id']}/finalize",
        json={"content_id": "blob://http-photo"},
        headers=TEST_AUTH_HEADER,
    )
    assert finalize_resp.status_code == 200
    assert finalize_resp.json() == {"new_balance": 950, "credits_charged": 50}

    replay_resp = await storage_client.post(
        f"/storage/uploads/{begun['upload_id']}/finalize",
        json={"content_id": "blob://http-photo"},
        headers=TEST_AUTH_HEADER,
    )
    assert replay_resp.json() == finalize_resp.json()

    upload_resp = await storage_client.get(f"/storage/uploads/{begun['upload_id']}", headers=TEST_AUTH_HEADER)
    assert upload_resp.status_code == 200
    assert upload_resp.json()["status"] == "complete"

    summary_resp = await storage_client.get("/storage/summary", headers=TEST_AUTH_HEADER)
    assert summary_resp.status_code == 200
    summary = summary_resp.json()
    assert summary["total_gb"] == 0.01
    assert summary["percentage_used"] == 5
    assert not any("credit" in key for key in summary)


@pytest.mark.asyncio
async def test_fail_endpoint_accepts_empty_body(storage_client):
    begin_resp = await storage_client.post(
        "/storage/uploads",
        json={"file_size_bytes": 524288, "media_type": "video"},
        headers={**TEST_AUTH_HEADER, "Idempotency-Key": "retry-me"},
    )
    upload_id = begin_resp.json()["upload_id"]

    retry_resp = await storage_client.post(
        "/storage/uploads",
        json={"file_size_bytes": 524288, "media_type": "video"},
        headers={**TEST_AUTH_HEADER, "Idempotency-Key": "retry-me"},
    )
    assert retry_resp.json()["upload_id"] == upload_id

    fail_resp = await storage_client.post(f"/storage/uploads/{upload_id}/fail", headers=TEST_AUTH_HEADER)
    assert fail_resp.status_code == 200
    assert fail_resp.json() == {"credits_released": 50}

    finalize_resp = await storage_client.post(
        f"/storage/uploads/{upload_id}/finalize",
        json={"content_id": "blob://too-late"},
        headers=TEST_AUTH_HEADER,
    )
    assert finalize_resp.status_code == 409
    assert finalize_resp.json()["code"] == "UPLOAD_CONFLICT"


@pytest.mark.asyncio
async def test_insufficient_storage_returns_402_in_gigabytes(storage_client):
    response = await storage_client.post(
        "/storage/uploads",
        json={"file_size_bytes": 20 * 1048576, "media_type": "video"},
        headers=TEST_AUTH_HEADER,
    )
    assert response.status_code == 402
    payload = response.json()
    assert payload["code"] == "STORAGE_LIMIT_REACHED"
    assert payload["required_gb"] == 0.02
    assert payload["available_gb"] == 0.01
    assert "credits" not in payload


@pytest.mark.asyncio
async def test_rate_limit_returns_429_with_retry_after(storage_client):
    limits = {"get-storage-summary": {"max_requests": 2, "window_minutes": 60}}
    with patch("services.admission.settings.RATE_LIMITS", limits):
        for _ in range(2):
            ok_resp = await storage_client.get("/storage/summary", headers=TEST_AUTH_HEADER)
            assert ok_resp.status_code == 200
        limited_resp = await storage_client.get("/storage/summary", headers=TEST_AUTH_HEADER)

    assert limited_resp.status_code == 429
    assert limited_resp.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(limited_resp.headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_frozen_account_returns_423(storage_client):
    await storage_client.get("/storage/summary", headers=TEST_AUTH_HEADER)

    freeze_resp = await storage_client.post(
        f"/admin/accounts/{TEST_USER_ID}/freeze",
        json={"reason": "chargeback", "frozen_by": "risk-team"},
        headers=ADMIN_HEADER,
    )
    assert freeze_resp.status_code == 200

    begin_resp = await storage_client.post(
        "/storage/uploads",
        json={"file_size_bytes": 1024, "media_type": "image"},
        headers=TEST_AUTH_HEADER,
    )
    assert begin_resp.status_code == 423
    assert begin_resp.json()["code"] == "ACCOUNT_FROZEN"

    unfreeze_resp = await storage_client.post(f"/admin/accounts/{TEST_USER_ID}/unfreeze", headers=ADMIN_HEADER)
    assert unfreeze_resp.status_code == 200
    retry_resp = await storage_client.post(
        "/storage/uploads",
        json={"file_size_bytes": 1024, "media_type": "image"},
        headers=TEST_AUTH_HEADER,
    )
    assert retry_resp.status_code == 200


@pytest.mark.asyncio
async def test_purchase_webhook_requires_admin_key_and_is_idempotent(storage_client):
    body = {
        "user_id": TEST_USER_ID,
        "provider": "stripe",
        "payment_reference": "pi_router",
        "credits": 102400,
        "amount_cents": 199,
    }
    denied = await storage_client.post("/billing/purchases", json=body)
    assert denied.status_code == 401

    first = await storage_client.post("/billing/purchases", json=body, headers=ADMIN_HEADER)
    second = await storage_client.post("/billing/purchases", json=body, headers=ADMIN_HEADER)
    assert first.status_code == 200
    assert first.json() == second.json()
    assert first.json()["new_balance"] == 103400

    history = await storage_client.get("/billing/purchases", headers=TEST_AUTH_HEADER)
    assert history.status_code == 200
    assert history.json()["count"] == 1
    assert history.json()["items"][0]["gb_added"] == 1.0

    reconcile = await storage_client.get(f"/admin/accounts/{TEST_USER_ID}/reconcile", headers=ADMIN_HEADER)
    assert reconcile.status_code == 200
    assert reconcile.json()["consistent"] is True


@pytest.mark.asyncio
async def test_admin_refund_and_ledger(storage_client):
    begun = (
        await storage_client.post(
            "/storage/uploads",
            json={"file_size_bytes": 524288, "media_type": "image"},
            headers=TEST_AUTH_HEADER,
        )
    ).json()
    await storage_client.post(
        f"/storage/uploads/{begun['upload_id']}/finalize",
        json={"content_id": "blob://refund"},
        headers=TEST_AUTH_HEADER,
    )

    refund_resp = await storage_client.post(
        f"/admin/uploads/{begun['upload_id']}/refund",
        json={"reason": "duplicate charge", "actor": "support"},
        headers=ADMIN_HEADER,
    )
    assert refund_resp.status_code == 200
    assert refund_resp.json()["new_balance"] == 1000

    ledger_resp = await storage_client.get(f"/admin/accounts/{TEST_USER_ID}/ledger", headers=ADMIN_HEADER)
    entry_types = [item["entry_type"] for item in ledger_resp.json()["items"]]
    assert sorted(entry_types) == ["charge_upload", "grant_free", "refund"]

    sweep_resp = await storage_client.post("/admin/sweep", json={}, headers=ADMIN_HEADER)
    assert sweep_resp.status_code == 200
    assert sweep_resp.json()["uploads_failed"] == 0


@pytest.mark.asyncio
async def test_storage_routes_require_session_token(storage_client):
    response = await storage_client.get("/storage/summary")
    assert response.status_code == 401

    missing = await storage_client.post(
        "/storage/uploads/does-not-exist/finalize",
        json={"content_id": "blob://x"},
        headers=TEST_AUTH_HEADER,
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "UPLOAD_NOT_FOUND"


@pytest.mark.asyncio
async def test_health_liveness_and_readiness(storage_client):
    live = await storage_client.get("/health/live")
    assert live.json() == {"alive": True}

    ready = await storage_client.get("/health/ready")
    assert ready.status_code == 200
    with patch("routers.health.settings.CREDITS_PER_MB", 0):
        not_ready = await storage_client.get("/health/ready")
    assert not_ready.status_code == 503
    assert not_ready.json()["missing"] == ["CREDITS_PER_MB"]


@pytest.mark.asyncio
async def test_expired_or_mistyped_session_tokens_are_rejected(storage_client):
    expired = await storage_client.get("/storage/summary", headers=_bearer(TEST_USER_ID, expires_in=-60))
    assert expired.status_code == 401
    assert expired.json()["detail"] == "Session token has expired."

    wrong_type = await storage_client.get("/storage/summary", headers=_bearer(TEST_USER_ID, token_type="refresh"))
    assert wrong_type.status_code == 401

    unsigned = jwt.encode(
        {"sub": TEST_USER_ID, "type": SESSION_TOKEN_TYPE, "exp": int(time.time()) + 60},
        "some-other-secret-entirely",
        algorithm=settings.JWT_ALGORITHM,
    )
    forged = await storage_client.get("/storage/summary", headers={"Authorization": f"Bearer {unsigned}"})
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_admin_actions_on_users_without_an_account(storage_client):
    freeze_resp = await storage_client.post(
        "/admin/accounts/nobody-yet/freeze",
        json={"reason": "fraud signal", "frozen_by": "risk-team"},
        headers=ADMIN_HEADER,
    )
    assert freeze_resp.status_code == 200
    assert freeze_resp.json()["is_frozen"] is True

    adjust_resp = await storage_client.post(
        "/admin/accounts/ghost/adjust",
        json={"delta": 500, "reason": "goodwill", "actor": "support"},
        headers=ADMIN_HEADER,
    )
    assert adjust_resp.status_code == 200
    assert adjust_resp.json()["new_balance"] == 1500

    reconcile_resp = await storage_client.get("/admin/accounts/ghost/reconcile", headers=ADMIN_HEADER)
    assert reconcile_resp.json()["consistent"] is True

    unknown_resp = await storage_client.get("/admin/accounts/stranger/reconcile", headers=ADMIN_HEADER)
    assert unknown_resp.status_code == 404
    assert unknown_resp.json()["code"] == "ACCOUNT_UNKNOWN"

    refund_resp = await storage_client.post(
        "/admin/uploads/no-such-upload/refund",
        json={"reason": "duplicate charge"},
        headers=ADMIN_HEADER,
    )
    assert refund_resp.status_code == 404
    assert refund_resp.json()["code"] == "UPLOAD_NOT_FOUND"


@pytest.mark.asyncio
async def test_health_reports_degraded_job_queue(storage_client):
    queue_down = AsyncMock(return_value={"up": False, "error": "connection refused"})
    with patch("routers.health._job_queue", new=queue_down):
        response = await storage_client.get("/health")

    assert response.status_code == 200
    report = response.json()
    assert report["status"] == "degraded"
    assert report["database"] == {"up": True}
    assert report["job_queue"]["up"] is False
    assert report["credit_config"] == {"ok": True, "missing": []}
