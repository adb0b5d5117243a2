"""
Shared test fixtures.

Two flavours of setup:

  • service-level fixtures (`database`, `clock`, `otp_store`, `rate_limiter`,
    `otp_service`) run against a temporary SQLite file with a frozen clock;
  • `client` wraps the FastAPI app in a TestClient whose lifespan opens a
    temporary database and wires in the in-memory email sender.

Rate limiting by IP (slowapi) is disabled by default; see
tests/unit_tests/test_rate_limit.py for the tests that turn it back on.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from signup_otp import config, db
from signup_otp.main import app
from signup_otp.services.accounts import LocalAccountCreator
from signup_otp.services.otp_service import OTPService
from signup_otp.services.otp_store import OTPStore
from signup_otp.services.rate_limiter import DEFAULT_POLICIES, RateLimiter
from tests.mocks.models import T0
from tests.mocks.services import FakeEmailSender, FrozenClock

# ── Service-level fixtures ─────────────────────────────────────────────────


@pytest.fixture()
async def database(monkeypatch, tmp_path):
    """A fresh SQLite database for one test."""
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "test.db"))
    await db.init_db()
    yield db.get_db()
    await db.close_db()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture()
def sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture()
def otp_store(database, clock) -> OTPStore:
    return OTPStore(clock=clock)


@pytest.fixture()
def rate_limiter(database, clock) -> RateLimiter:
    return RateLimiter(DEFAULT_POLICIES, clock=clock)


@pytest.fixture()
def accounts(database, clock) -> LocalAccountCreator:
    return LocalAccountCreator(clock=clock)


@pytest.fixture()
def otp_service(otp_store, rate_limiter, sender, accounts, clock) -> OTPService:
    return OTPService(otp_store, rate_limiter, sender, accounts, clock=clock, send_timeout=1.0)


# ── API fixtures ───────────────────────────────────────────────────────────


@pytest.fixture()
def api_sender() -> FakeEmailSender:
    """The email sender the app under `client` delivers through."""
    return FakeEmailSender()


@pytest.fixture()
def _test_env(monkeypatch, tmp_path, api_sender):
    """
    Internal fixture that patches the DB path, the email transport and
    the IP limiter so the app lifespan runs against throwaway state.
    """
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.setattr("signup_otp.main.build_email_sender", lambda: api_sender)

    # ── Disable IP rate limiting in tests ─────────────────────────────
    from signup_otp.rate_limit import limiter as _limiter
    monkeypatch.setattr(_limiter, "enabled", False)


@pytest.fixture()
def client(_test_env) -> TestClient:
    """
    FastAPI TestClient with a temp DB and the fake email sender.

    Uses a context manager so the lifespan runs (DB init/shutdown).
    """
    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc
