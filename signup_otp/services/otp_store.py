"""
Persistence of OTP records in the ``otp_verifications`` table.

Several records may exist for one email (every resend adds one); lookups
always prefer the most recently created one.  A record is verifiable iff
it is not yet verified, not expired and not currently blocked; the
``_VERIFIABLE`` predicate below is the single definition of that rule.

Every failure surfaces as StorageUnavailable.  Callers must treat it as
fatal for the request: skipping OTP persistence would let a client skip
verification altogether.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

import aiosqlite

from signup_otp import config
from signup_otp.db import from_db_time, storage_call, to_db_time, utcnow
from signup_otp.models import AttemptResult, OTPRecord

logger = logging.getLogger(__name__)

# Parameters: now, now.  Expiry is exclusive, the block boundary is not.
_VERIFIABLE = """
    verified_at IS NULL
    AND expires_at > ?
    AND (blocked_until IS NULL OR blocked_until <= ?)
"""


def _row_to_record(row: aiosqlite.Row) -> OTPRecord:
    return OTPRecord(
        id=row["id"],
        email=row["email"],
        otp_code=row["otp_code"],
        created_at=from_db_time(row["created_at"]),
        expires_at=from_db_time(row["expires_at"]),
        verified_at=from_db_time(row["verified_at"]),
        attempts=row["attempts"],
        blocked_until=from_db_time(row["blocked_until"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
    )


class OTPStore:
    """Repository for OTP records."""

    def __init__(
        self,
        *,
        max_attempts: int = config.OTP_MAX_ATTEMPTS,
        block_duration: timedelta = timedelta(seconds=config.OTP_BLOCK_SECONDS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._max_attempts = max_attempts
        self._block_duration = block_duration
        self._clock = clock

    # ── Writes ─────────────────────────────────────────────────────────

    async def insert(self, record: OTPRecord) -> str:
        """Persist a new record and return its id."""
        record_id = record.id or str(uuid4())
        async with storage_call("otp.insert") as db:
            await db.execute(
                """
                INSERT INTO otp_verifications (
                    id, email, otp_code, created_at, expires_at,
                    verified_at, attempts, blocked_until, ip_address, user_agent
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id, record.email, record.otp_code,
                    to_db_time(record.created_at), to_db_time(record.expires_at),
                    to_db_time(record.verified_at), record.attempts,
                    to_db_time(record.blocked_until),
                    record.ip_address, record.user_agent,
                ),
            )
        return record_id

    async def mark_verified(self, record_id: str) -> bool:
        """
        Set verified_at on a still-verifiable record.

        Returns False when another request verified it first or it stopped
        being verifiable in the meantime; exactly one caller can win.
        """
        now = to_db_time(self._clock())
        async with storage_call("otp.mark_verified") as db:
            cur = await db.execute(
                f"UPDATE otp_verifications SET verified_at = ? WHERE id = ? AND {_VERIFIABLE}",
                (now, record_id, now, now),
            )
        return cur.rowcount == 1

    async def increment_attempts(self, record_id: str) -> AttemptResult:
        """
        Count one failed guess against a record, blocking it at the ceiling.

        The read-modify-write is a single UPDATE, so concurrent guesses
        each land on their own increment.
        """
        now = self._clock()
        blocked_until = to_db_time(now + self._block_duration)
        async with storage_call("otp.increment_attempts") as db:
            async with db.execute(
                """
                UPDATE otp_verifications
                SET attempts = attempts + 1,
                    blocked_until = CASE
                        WHEN attempts + 1 >= ? AND blocked_until IS NULL THEN ?
                        ELSE blocked_until
                    END
                WHERE id = ?
                RETURNING attempts, blocked_until
                """,
                (self._max_attempts, blocked_until, record_id),
            ) as cur:
                rows = await cur.fetchall()

        if not rows:
            return AttemptResult(attempts=0, blocked=False)
        row = rows[0]
        until = from_db_time(row["blocked_until"])
        return AttemptResult(
            attempts=row["attempts"],
            blocked=until is not None and until > now,
        )

    async def delete(self, email: str, code: str) -> None:
        async with storage_call("otp.delete") as db:
            cur = await db.execute(
                "DELETE FROM otp_verifications WHERE email = ? AND otp_code = ?",
                (email, code),
            )
        logger.info("Deleted %d OTP record(s) for %s", cur.rowcount, email)

    async def purge_stale(self, older_than: datetime) -> int:
        """Delete records that expired before *older_than*."""
        async with storage_call("otp.purge") as db:
            cur = await db.execute(
                "DELETE FROM otp_verifications WHERE expires_at < ?",
                (to_db_time(older_than),),
            )
        if cur.rowcount:
            logger.info("Purged %d stale OTP records", cur.rowcount)
        return cur.rowcount

    # ── Reads ──────────────────────────────────────────────────────────

    async def find_verifiable(self, email: str) -> OTPRecord | None:
        """Most recent record for *email* that may still be verified."""
        now = to_db_time(self._clock())
        async with storage_call("otp.find_verifiable") as db:
            async with db.execute(
                f"""
                SELECT * FROM otp_verifications
                WHERE email = ? AND {_VERIFIABLE}
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (email, now, now),
            ) as cur:
                row = await cur.fetchone()
        return _row_to_record(row) if row else None

    async def find_by_code(self, email: str, code: str) -> OTPRecord | None:
        """Most recent verifiable record for *email* whose code matches."""
        now = to_db_time(self._clock())
        async with storage_call("otp.find_by_code") as db:
            async with db.execute(
                f"""
                SELECT * FROM otp_verifications
                WHERE email = ? AND {_VERIFIABLE}
                ORDER BY created_at DESC, rowid DESC
                """,
                (email, now, now),
            ) as cur:
                rows = await cur.fetchall()

        for row in rows:
            if hmac.compare_digest(row["otp_code"].encode(), code.encode()):
                return _row_to_record(row)
        return None

    async def find_latest(self, email: str) -> OTPRecord | None:
        """Most recent record for *email*, whatever its state."""
        async with storage_call("otp.find_latest") as db:
            async with db.execute(
                """
                SELECT * FROM otp_verifications WHERE email = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (email,),
            ) as cur:
                row = await cur.fetchone()
        return _row_to_record(row) if row else None

    async def has_recent_block(self, email: str) -> bool:
        """True if any record for *email* is blocked right now."""
        now = to_db_time(self._clock())
        async with storage_call("otp.has_recent_block") as db:
            async with db.execute(
                """
                SELECT 1 FROM otp_verifications
                WHERE email = ? AND blocked_until IS NOT NULL AND blocked_until > ?
                LIMIT 1
                """,
                (email, now),
            ) as cur:
                row = await cur.fetchone()
        return row is not None

    async def has_recent_request(self, email: str, within: timedelta) -> bool:
        """True if a code was issued to *email* during the last *within*."""
        since = to_db_time(self._clock() - within)
        async with storage_call("otp.has_recent_request") as db:
            async with db.execute(
                "SELECT 1 FROM otp_verifications WHERE email = ? AND created_at > ? LIMIT 1",
                (email, since),
            ) as cur:
                row = await cur.fetchone()
        return row is not None
