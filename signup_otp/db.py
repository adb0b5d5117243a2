"""
SQLite database layer using aiosqlite.

Holds the shared coordination state of the signup flow: rate-limit
counters, OTP records and the accounts created from verified codes.
Tables are created automatically on first connect.

The connection runs in autocommit mode, so every statement is its own
transaction.  Counter updates are written as single statements for that
reason: a read-then-write in Python could interleave with another
request between the two awaits.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from signup_otp import config
from signup_otp.errors import StorageUnavailable

logger = logging.getLogger(__name__)

# ── Module-level connection ───────────────────────────────────────────────

_db: aiosqlite.Connection | None = None


async def init_db() -> None:
    """Open the database and create tables if they don't exist."""
    global _db
    db_path = Path(config.DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(db_path), isolation_level=None)
    _db.row_factory = aiosqlite.Row  # dict-like rows
    await _db.execute("PRAGMA journal_mode=WAL")
    await _db.execute("PRAGMA foreign_keys=ON")
    await _db.execute("PRAGMA busy_timeout=5000")

    await _db.executescript(_SCHEMA)
    logger.info("Database initialized at %s", db_path)


async def close_db() -> None:
    """Close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed")


def get_db() -> aiosqlite.Connection:
    """Return the active database connection (must call init_db first)."""
    assert _db is not None, "Database not initialized — call init_db() first"
    return _db


@asynccontextmanager
async def storage_call(
    operation: str,
    timeout: float | None = None,
) -> AsyncIterator[aiosqlite.Connection]:
    """
    Run a block of storage work with a bounded timeout.

    Any sqlite error, timeout or missing connection is re-raised as
    StorageUnavailable so callers only deal with one failure type.
    """
    if _db is None:
        logger.error("Storage call %s attempted before init_db()", operation)
        raise StorageUnavailable(operation)
    try:
        async with asyncio.timeout(timeout or config.STORAGE_TIMEOUT_SECONDS):
            yield _db
    except (sqlite3.Error, TimeoutError) as exc:
        logger.error("Storage call %s failed: %r", operation, exc)
        raise StorageUnavailable(operation) from exc


# ── Schema ────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS rate_limits (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    identifier      TEXT NOT NULL,
    action          TEXT NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    window_start    TEXT NOT NULL,
    blocked_until   TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE (identifier, action, window_start)
);

CREATE INDEX IF NOT EXISTS idx_rate_limits_lookup
    ON rate_limits(identifier, action, window_start);

CREATE TABLE IF NOT EXISTS otp_verifications (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL,
    otp_code        TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    verified_at     TEXT,
    attempts        INTEGER NOT NULL DEFAULT 0,
    blocked_until   TEXT,
    ip_address      TEXT,
    user_agent      TEXT
);

CREATE INDEX IF NOT EXISTS idx_otp_lookup
    ON otp_verifications(email, verified_at, expires_at);
CREATE INDEX IF NOT EXISTS idx_otp_created ON otp_verifications(email, created_at);

CREATE TABLE IF NOT EXISTS accounts (
    id                  TEXT PRIMARY KEY,
    email               TEXT NOT NULL UNIQUE,
    password_hash       TEXT NOT NULL,
    signup_source       TEXT NOT NULL DEFAULT 'otp_signup',
    email_verified_at   TEXT NOT NULL,
    created_at          TEXT NOT NULL
);
"""


# ── Helpers ───────────────────────────────────────────────────────────────


def to_db_time(dt: datetime | None) -> str | None:
    """
    Serialize a timestamp for storage.

    Always UTC with a fixed microsecond precision so that stored values
    compare correctly as plain strings inside SQL.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
