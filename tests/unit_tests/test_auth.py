"""Tests for POST /api/auth/otp."""

import jwt
import pytest
from fastapi.testclient import TestClient

from signup_otp import config
from signup_otp.main import app
from tests.mocks.models import EMAIL, PASSWORD

URL = "/api/auth/otp"


def _generate(client, email=EMAIL, **headers):
    return client.post(URL, json={"action": "generate", "email": email}, headers=headers)


def _verify(client, otp, email=EMAIL, password=PASSWORD):
    return client.post(
        URL, json={"action": "verify", "email": email, "otp": otp, "password": password}
    )


class TestGenerate:
    def test_sends_code(self, client, api_sender):
        resp = _generate(client)
        assert resp.status_code == 200

        data = resp.json()
        assert data["success"] is True
        assert data["message"] == "Verification code sent"
        assert data["attemptsLeft"] == 4
        assert "expiresAt" in data
        assert "user" not in data
        assert len(api_sender.last_code(EMAIL)) == 6

    def test_email_is_normalised(self, client, api_sender):
        resp = _generate(client, email="  New.User@EXAMPLE.com")
        assert resp.status_code == 200
        assert api_sender.outbox[0].email == EMAIL

    def test_malformed_email_is_rejected(self, client, api_sender):
        resp = _generate(client, email="not-an-email")
        assert resp.status_code == 422
        assert api_sender.attempts == 0

    def test_unknown_action_is_rejected(self, client):
        resp = client.post(URL, json={"action": "delete", "email": EMAIL})
        assert resp.status_code == 422

    def test_registered_email_is_taken(self, client, api_sender):
        _generate(client)
        assert _verify(client, api_sender.last_code(EMAIL)).status_code == 200

        resp = _generate(client)
        assert resp.status_code == 400
        assert resp.json()["error"] == "EmailTaken"

    def test_rate_limited_after_five(self, client):
        for _ in range(5):
            assert _generate(client).status_code == 200

        resp = _generate(client)
        assert resp.status_code == 429
        data = resp.json()
        assert data["error"] == "RateLimited"
        assert "blockedUntil" in data
        assert int(resp.headers["Retry-After"]) > 0

    def test_delivery_failure(self, client, api_sender):
        api_sender.fail = True
        resp = _generate(client)
        assert resp.status_code == 500
        assert resp.json()["error"] == "DeliveryFailed"


class TestVerify:
    def test_creates_account_and_sets_session(self, client, api_sender):
        _generate(client)
        resp = _verify(client, api_sender.last_code(EMAIL))
        assert resp.status_code == 200

        data = resp.json()
        assert data["success"] is True
        assert data["user"]["email"] == EMAIL

        token = resp.cookies.get("session")
        assert token
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        assert claims["sub"] == data["user"]["id"]
        assert claims["email"] == EMAIL

    def test_wrong_code(self, client, api_sender):
        _generate(client)
        wrong = "000000" if api_sender.last_code(EMAIL) != "000000" else "111111"

        resp = _verify(client, wrong)
        assert resp.status_code == 400
        assert resp.json() == {
            "error": "InvalidOrExpiredCode",
            "message": "Invalid or expired verification code.",
        }
        assert "session" not in resp.cookies

    def test_missing_password(self, client):
        resp = client.post(URL, json={"action": "verify", "email": EMAIL, "otp": "123456"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"

    def test_short_password_is_rejected(self, client):
        resp = _verify(client, "123456", password="short")
        assert resp.status_code == 422

    def test_non_numeric_code_is_rejected(self, client):
        resp = _verify(client, "12ab56")
        assert resp.status_code == 422


class TestResend:
    def test_without_signup(self, client):
        resp = client.post(URL, json={"action": "resend", "email": EMAIL})
        assert resp.status_code == 400
        assert resp.json()["error"] == "NoActiveSignup"

    def test_too_soon(self, client):
        _generate(client)
        resp = client.post(URL, json={"action": "resend", "email": EMAIL})
        assert resp.status_code == 429
        assert resp.json()["error"] == "TooSoon"
        assert resp.json()["retryAfter"] == 60
        assert resp.headers["Retry-After"] == "60"

    @pytest.fixture()
    def no_cooldown_client(self, monkeypatch, _test_env):
        monkeypatch.setattr(config, "RESEND_COOLDOWN_SECONDS", 0)
        with TestClient(app, raise_server_exceptions=False) as tc:
            yield tc

    def test_resend_sends_new_code(self, no_cooldown_client, api_sender):
        _generate(no_cooldown_client)
        resp = no_cooldown_client.post(URL, json={"action": "resend", "email": EMAIL})

        assert resp.status_code == 200
        assert resp.json()["message"] == "New verification code sent"
        assert resp.json()["attemptsLeft"] == 2
        assert [m.template_kind for m in api_sender.outbox] == ["signup", "resend"]
