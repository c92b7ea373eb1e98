from unittest.mock import AsyncMock

import pytest

from fastapi.testclient import TestClient

from taskforge.dependencies import get_account_guard
from taskforge.main import app
from taskforge.services import otp_service
from taskforge.services.errors import StoreUnavailableError
from taskforge.services.mail_delivery_service import MailDeliveryError

client = TestClient(app)


@pytest.fixture(autouse=True)
def override_guard(guard, monkeypatch):
    monkeypatch.setattr(otp_service, "generate_otp", lambda: "482913")
    app.dependency_overrides[get_account_guard] = lambda: guard
    yield guard
    app.dependency_overrides.clear()


def _register(email="a@x.com", **extra):
    body = {"name": "Alice", "email": email, "password": "secret-pass"}
    body.update(extra)
    return client.post("/api/auth/register", json=body)


def _register_and_verify(email="a@x.com"):
    _register(email)
    response = client.post("/api/auth/verify-otp", json={"email": email, "otp": "482913"})
    assert response.status_code == 200
    return response.json()["data"]


def test_register_returns_created_envelope(mailer):
    response = _register()

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "success"
    assert body["message"] == "User registered! Please verify your email."
    assert body["requestId"] == response.headers["x-request-id"]
    assert len(mailer.sent) == 1


def test_register_duplicate_email():
    _register()
    response = _register()

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["message"] == "User already exists"


def test_register_rejects_malformed_email():
    response = _register(email="not-an-email")
    assert response.status_code == 422
    assert response.json()["message"] == "Validation error"


def test_register_delivery_failure_reports_mail_status(guard, rate_limited_mailer):
    guard.mailer = rate_limited_mailer
    response = _register()
    assert response.status_code == 429
    assert response.json()["status"] == "error"


def test_verify_otp_returns_user_and_token():
    data = _register_and_verify()

    assert data["user"]["email"] == "a@x.com"
    assert data["user"]["isVerified"] is True
    assert data["token"]


def test_verify_wrong_code_then_lockout():
    _register()
    for _ in range(5):
        response = client.post("/api/auth/verify-otp", json={"email": "a@x.com", "otp": "000000"})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid OTP"

    response = client.post("/api/auth/verify-otp", json={"email": "a@x.com", "otp": "482913"})
    assert response.status_code == 429
    body = response.json()
    assert body["data"]["waitMinutes"] == 5
    assert "5 minute(s)" in body["message"]


def test_verify_unknown_email_is_404():
    response = client.post("/api/auth/verify-otp", json={"email": "ghost@x.com", "otp": "123456"})
    assert response.status_code == 404
    assert response.json()["message"] == "User not found"


def test_resend_otp_limit():
    _register()
    for _ in range(5):
        assert client.post("/api/auth/resend-otp", json={"email": "a@x.com"}).status_code == 200

    response = client.post("/api/auth/resend-otp", json={"email": "a@x.com"})
    assert response.status_code == 429
    assert "blockedUntil" not in response.json()["data"]


def test_resend_verification_old_users_reports_blocked_until():
    _register()
    for _ in range(5):
        response = client.post("/api/auth/resend-verification-old-users", json={"email": "a@x.com"})
        assert response.status_code == 200
        assert response.json()["message"] == "Verification email sent successfully!"

    response = client.post("/api/auth/resend-verification-old-users", json={"email": "a@x.com"})
    assert response.status_code == 429
    assert "blockedUntil" in response.json()["data"]


def test_login_unverified_account_hints_resend():
    _register()
    response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "secret-pass"})

    assert response.status_code == 401
    body = response.json()
    assert body["data"] == {"action": "resend_verification", "email": "a@x.com"}


def test_login_and_profile_round_trip():
    _register_and_verify()
    response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "secret-pass"})
    assert response.status_code == 200
    token = response.json()["data"]["token"]

    profile = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.status_code == 200
    assert profile.json()["data"]["email"] == "a@x.com"

    updated = client.put(
        "/api/auth/profile",
        headers={"Authorization": f"Bearer {token}"},
        json={"name": "Alicia", "profileImageUrl": "https://img/a.png"},
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["user"]["name"] == "Alicia"
    assert updated.json()["data"]["user"]["profileImageUrl"] == "https://img/a.png"


def test_login_wrong_password():
    _register_and_verify()
    response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "nope"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid email or password"


def test_profile_requires_bearer_token():
    response = client.get("/api/auth/profile")
    assert response.status_code == 401
    assert response.json()["message"] == "Not authorized, no token"

    response = client.get("/api/auth/profile", headers={"Authorization": "Bearer junk"})
    assert response.status_code == 401
    assert response.json()["message"] == "Not authorized, token failed"


def test_forgot_and_reset_password(guard, mailer):
    _register_and_verify()

    response = client.post("/api/auth/forgot-password", json={"email": "a@x.com"})
    assert response.status_code == 200
    link = mailer.sent[-1]["text_body"].split("/reset-password/", 1)[1].split()[0]

    response = client.post(f"/api/auth/reset-password/{link}", json={"newPassword": "new-pass"})
    assert response.status_code == 200
    assert response.json()["message"] == "Password updated successfully!"

    response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "new-pass"})
    assert response.status_code == 200


def test_forgot_password_unknown_email_is_generic(mailer):
    response = client.post("/api/auth/forgot-password", json={"email": "ghost@x.com"})
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert mailer.sent == []


def test_reset_password_with_expired_token(guard, clock):
    data = _register_and_verify()
    token = guard.tokens.issue_password_reset_token(data["user"]["_id"])
    clock.advance(minutes=6)

    response = client.post(f"/api/auth/reset-password/{token}", json={"newPassword": "new-pass"})
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid or expired token"


def test_health_endpoints():
    assert client.get("/health").json() == {"status": "ok"}

    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "healthy"
    assert body["data"]["account_store"] == "memory"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["cache-control"] == "no-store"


def test_mail_error_categories_map_to_status(guard):
    guard.mailer.error = MailDeliveryError(
        "sender inactive", provider="brevo", category="sender_not_verified", status_code=400
    )
    response = _register()
    assert response.status_code == 503


def test_store_outage_is_reported_as_server_error(guard):
    guard.store = AsyncMock()
    guard.store.find_by_email.side_effect = StoreUnavailableError()

    response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "secret-pass"})

    assert response.status_code == 500
    assert response.json()["message"] == "Server error"
