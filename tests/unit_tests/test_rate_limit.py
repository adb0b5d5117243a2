"""Tests for the per-IP throttle in front of the OTP endpoint."""

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from signup_otp.main import app
from signup_otp.rate_limit import client_ip


def _request(headers=None, client=("10.0.0.1", 4321)) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw, "client": client})


class TestClientIp:
    def test_uses_socket_address(self):
        assert client_ip(_request()) == "10.0.0.1"

    def test_honours_first_forwarded_hop(self):
        req = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert client_ip(req) == "203.0.113.9"

    def test_unknown_without_client(self):
        assert client_ip(_request(client=None)) == "unknown"


class TestRateLimiting:
    """Verify that the IP throttle kicks in on the OTP endpoint."""

    @pytest.fixture()
    def limited_client(self, _test_env):
        """
        TestClient with rate limiting **enabled** (unlike the default
        `client` fixture which disables it for convenience).
        """
        from signup_otp.rate_limit import limiter

        limiter.enabled = True
        # Reset in-memory state so previous tests don't pollute counts
        limiter.reset()

        with TestClient(app, raise_server_exceptions=False) as tc:
            yield tc

        limiter.enabled = False

    def test_otp_endpoint_rate_limit(self, limited_client):
        """POST /api/auth/otp is limited to 30 requests/minute per IP."""
        for i in range(30):
            resp = limited_client.post(
                "/api/auth/otp",
                json={"action": "generate", "email": f"user{i}@example.com"},
            )
            assert resp.status_code == 200, f"Request {i + 1} should succeed"

        # 31st request should be rate-limited, whatever the email
        resp = limited_client.post(
            "/api/auth/otp",
            json={"action": "generate", "email": "fresh@example.com"},
        )
        assert resp.status_code == 429
        assert "Rate limit exceeded" in resp.json()["error"]

    def test_limit_is_per_ip(self, limited_client):
        for i in range(30):
            limited_client.post(
                "/api/auth/otp",
                json={"action": "generate", "email": f"user{i}@example.com"},
                headers={"X-Forwarded-For": "198.51.100.1"},
            )

        resp = limited_client.post(
            "/api/auth/otp",
            json={"action": "generate", "email": "fresh@example.com"},
            headers={"X-Forwarded-For": "198.51.100.2"},
        )
        assert resp.status_code == 200

    def test_health_not_limited_at_low_volume(self, limited_client):
        for _ in range(40):
            assert limited_client.get("/api/health").status_code == 200
