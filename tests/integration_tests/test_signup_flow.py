"""
End-to-end signup flows through the HTTP API.

Each test drives the real app (lifespan, SQLite, service graph) with only
the email transport swapped for the in-memory fake.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from signup_otp import config, db
from signup_otp.main import app
from tests.mocks.models import EMAIL, OTHER_EMAIL, PASSWORD

URL = "/api/auth/otp"


@pytest.fixture()
def flow_client(monkeypatch, _test_env):
    monkeypatch.setattr(config, "RESEND_COOLDOWN_SECONDS", 0)
    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc


def _post(client, **body):
    return client.post(URL, json=body)


def test_signup_with_resent_code(flow_client, api_sender):
    assert _post(flow_client, action="generate", email=EMAIL).status_code == 200
    first = api_sender.last_code(EMAIL)

    wrong = "000000" if first != "000000" else "111111"
    resp = _post(flow_client, action="verify", email=EMAIL, otp=wrong, password=PASSWORD)
    assert resp.status_code == 400

    assert _post(flow_client, action="resend", email=EMAIL).status_code == 200
    second = api_sender.last_code(EMAIL)

    resp = _post(flow_client, action="verify", email=EMAIL, otp=second, password=PASSWORD)
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == EMAIL
    assert resp.cookies.get("session")

    # The address is now registered; neither code can be replayed.
    assert _post(flow_client, action="generate", email=EMAIL).json()["error"] == "EmailTaken"
    resp = _post(flow_client, action="verify", email=EMAIL, otp=second, password=PASSWORD)
    assert resp.json()["error"] == "InvalidOrExpiredCode"


def test_signups_for_different_addresses_are_independent(flow_client, api_sender):
    _post(flow_client, action="generate", email=EMAIL)
    _post(flow_client, action="generate", email=OTHER_EMAIL)

    for email in (OTHER_EMAIL, EMAIL):
        resp = _post(
            flow_client, action="verify", email=email,
            otp=api_sender.last_code(email), password=PASSWORD,
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == email


def test_storage_outage_fails_closed(flow_client, api_sender, monkeypatch):
    connection = db._db
    monkeypatch.setattr(db, "_db", None)
    try:
        resp = _post(flow_client, action="generate", email=EMAIL)
    finally:
        monkeypatch.setattr(db, "_db", connection)

    assert resp.status_code == 500
    assert resp.json()["error"] == "StorageUnavailable"
    assert api_sender.attempts == 0


def test_blocked_after_repeated_wrong_codes(flow_client, api_sender):
    _post(flow_client, action="generate", email=EMAIL)
    code = api_sender.last_code(EMAIL)
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(5):
        resp = _post(flow_client, action="verify", email=EMAIL, otp=wrong, password=PASSWORD)
        assert resp.status_code == 400

    resp = _post(flow_client, action="verify", email=EMAIL, otp=code, password=PASSWORD)
    assert resp.status_code == 429
    assert resp.json()["error"] == "RateLimited"
