"""
Per-(identifier, action) rate limiter with temporary blocks.

Each identifier (an email address or an IP) gets at most one *active*
counting window per action.  A window stays active until its period has
elapsed, and for longer if a block set during it still lies in the
future.  Attempts are never taken back within a window.

Gated operations go through ``acquire``, which reserves one attempt with
a single conditional UPDATE: two concurrent requests can never both see
"4 of 5 used" and proceed.  ``check`` and ``increment`` are the separate
read and write halves, for callers that only need one of them.

Usage::

    limiter = RateLimiter(DEFAULT_POLICIES)
    result = await limiter.acquire(email, RateLimitAction.SIGNUP)
    if not result.allowed:
        ...                                  # reject, result.blocked_until
    ...                                      # the gated operation

Once a full window is seen, the lookup itself writes ``blocked_until`` so
the block holds even if the caller never comes back.

Storage errors fail open: a broken limiter table must not lock every
legitimate user out of signup.  They are logged and the caller proceeds.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from types import MappingProxyType

from signup_otp.db import from_db_time, storage_call, to_db_time, utcnow
from signup_otp.errors import StorageUnavailable
from signup_otp.models import (
    RateLimitAction,
    RateLimitPolicy,
    RateLimitRecord,
    RateLimitResult,
)

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_DURATION = timedelta(minutes=15)

DEFAULT_POLICIES: Mapping[RateLimitAction, RateLimitPolicy] = MappingProxyType({
    RateLimitAction.SIGNUP: RateLimitPolicy(
        max_attempts=5, window=timedelta(hours=1), block_duration=DEFAULT_BLOCK_DURATION,
    ),
    RateLimitAction.SIGNIN: RateLimitPolicy(
        max_attempts=10, window=timedelta(hours=1), block_duration=DEFAULT_BLOCK_DURATION,
    ),
    RateLimitAction.OTP_VERIFY: RateLimitPolicy(
        max_attempts=5, window=timedelta(minutes=10), block_duration=DEFAULT_BLOCK_DURATION,
    ),
    RateLimitAction.OTP_RESEND: RateLimitPolicy(
        max_attempts=3, window=timedelta(minutes=10), block_duration=DEFAULT_BLOCK_DURATION,
    ),
})

# Rows matching this predicate are the active window for (identifier, action).
# Parameters: window floor (now - window), now.
_ACTIVE = """
    identifier = ? AND action = ?
    AND (window_start > ? OR blocked_until > ?)
"""


def block_duration_for(policy: RateLimitPolicy, attempts: int) -> timedelta:
    """
    Pick the block duration of the highest escalation tier reached.

    Tiers are kept sorted by attempts, so the lookup is a bisect rather
    than a chain of comparisons.  Below the first tier the policy's base
    duration applies.
    """
    if not policy.escalation:
        return policy.block_duration
    thresholds = [tier.attempts for tier in policy.escalation]
    idx = bisect.bisect_right(thresholds, attempts) - 1
    if idx < 0:
        return policy.block_duration
    return max(policy.block_duration, policy.escalation[idx].block_duration)


class RateLimiter:
    """Sliding per-action windows stored in the ``rate_limits`` table."""

    def __init__(
        self,
        policies: Mapping[RateLimitAction, RateLimitPolicy] = DEFAULT_POLICIES,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._policies = MappingProxyType(dict(policies))
        self._clock = clock

    def policy(self, action: RateLimitAction) -> RateLimitPolicy:
        try:
            return self._policies[action]
        except KeyError:
            raise ValueError(f"No rate-limit policy configured for {action!r}") from None

    # ── Public API ─────────────────────────────────────────────────────

    async def acquire(self, identifier: str, action: RateLimitAction) -> RateLimitResult:
        """
        Reserve one attempt, or report why none is left.

        On success the attempt is already counted and ``attempts_remaining``
        is what is left after it.
        """
        policy = self.policy(action)
        try:
            return await self._acquire(identifier, action, policy)
        except StorageUnavailable:
            logger.warning(
                "Rate limiter unavailable for %s/%s — failing open",
                identifier, action.value,
            )
            return RateLimitResult(allowed=True, attempts_remaining=policy.max_attempts - 1)

    async def check(self, identifier: str, action: RateLimitAction) -> RateLimitResult:
        """Decide whether one more attempt is allowed right now."""
        policy = self.policy(action)
        try:
            return await self._check(identifier, action, policy)
        except StorageUnavailable:
            logger.warning(
                "Rate limiter unavailable for %s/%s — failing open",
                identifier, action.value,
            )
            return RateLimitResult(allowed=True, attempts_remaining=policy.max_attempts)

    async def increment(self, identifier: str, action: RateLimitAction) -> None:
        """Record one attempt against the active window (opening one if needed)."""
        policy = self.policy(action)
        try:
            await self._increment(identifier, action, policy)
        except StorageUnavailable:
            logger.warning(
                "Rate limiter unavailable for %s/%s — attempt not recorded",
                identifier, action.value,
            )

    async def purge_expired(self) -> int:
        """Delete windows whose period and block have both passed."""
        now = self._clock()
        removed = 0
        async with storage_call("rate_limits.purge") as db:
            for action, policy in self._policies.items():
                keep_for = policy.window
                if policy.escalation:
                    keep_for = max(keep_for, policy.escalation_lookback)
                cur = await db.execute(
                    """
                    DELETE FROM rate_limits
                    WHERE action = ? AND window_start <= ?
                      AND (blocked_until IS NULL OR blocked_until <= ?)
                    """,
                    (action.value, to_db_time(now - keep_for), to_db_time(now)),
                )
                removed += cur.rowcount
        if removed:
            logger.info("Purged %d expired rate-limit windows", removed)
        return removed

    # ── Internals ──────────────────────────────────────────────────────

    async def _acquire(
        self,
        identifier: str,
        action: RateLimitAction,
        policy: RateLimitPolicy,
    ) -> RateLimitResult:
        now = self._clock()
        active_params = (identifier, action.value, to_db_time(now - policy.window), to_db_time(now))

        async with storage_call("rate_limits.acquire") as db:
            await self._open_window(db, identifier, action, now, active_params, attempts=0)
            async with db.execute(
                f"""
                UPDATE rate_limits SET attempts = attempts + 1, updated_at = ?
                WHERE id = (
                    SELECT id FROM rate_limits WHERE {_ACTIVE}
                    ORDER BY window_start DESC LIMIT 1
                )
                AND attempts < ?
                AND (blocked_until IS NULL OR blocked_until <= ?)
                RETURNING attempts
                """,
                (to_db_time(now), *active_params, policy.max_attempts, to_db_time(now)),
            ) as cur:
                rows = await cur.fetchall()

        if rows:
            return RateLimitResult(
                allowed=True, attempts_remaining=policy.max_attempts - rows[0]["attempts"],
            )

        # Full or blocked: the lookup writes the block and reports it.
        result = await self._check(identifier, action, policy)
        if result.allowed:
            # The window rolled over between the two statements.
            return await self._acquire(identifier, action, policy)
        return result

    async def _open_window(
        self,
        db,
        identifier: str,
        action: RateLimitAction,
        now: datetime,
        active_params: tuple,
        *,
        attempts: int,
    ) -> bool:
        # One statement, so two concurrent first attempts cannot both
        # create a window.
        cur = await db.execute(
            f"""
            INSERT OR IGNORE INTO rate_limits
                (identifier, action, attempts, window_start, blocked_until, created_at, updated_at)
            SELECT ?, ?, ?, ?, NULL, ?, ?
            WHERE NOT EXISTS (SELECT 1 FROM rate_limits WHERE {_ACTIVE})
            """,
            (identifier, action.value, attempts, to_db_time(now), to_db_time(now), to_db_time(now),
             *active_params),
        )
        return cur.rowcount > 0

    async def _check(
        self,
        identifier: str,
        action: RateLimitAction,
        policy: RateLimitPolicy,
    ) -> RateLimitResult:
        now = self._clock()
        record = await self._active_record(identifier, action, policy, now)

        if record is None:
            return RateLimitResult(allowed=True, attempts_remaining=policy.max_attempts)

        if record.blocked_until is not None and record.blocked_until > now:
            return RateLimitResult(
                allowed=False, attempts_remaining=0, blocked_until=record.blocked_until,
            )

        if record.attempts >= policy.max_attempts:
            blocked_until = now + await self._block_duration(identifier, action, policy, now)
            async with storage_call("rate_limits.block") as db:
                await db.execute(
                    """
                    UPDATE rate_limits SET blocked_until = ?, updated_at = ?
                    WHERE id = ? AND (blocked_until IS NULL OR blocked_until <= ?)
                    """,
                    (to_db_time(blocked_until), to_db_time(now), record.id, to_db_time(now)),
                )
            logger.warning(
                "Rate limit reached for %s/%s (%d attempts) — blocked until %s",
                identifier, action.value, record.attempts, blocked_until.isoformat(),
            )
            return RateLimitResult(allowed=False, attempts_remaining=0, blocked_until=blocked_until)

        return RateLimitResult(
            allowed=True, attempts_remaining=policy.max_attempts - record.attempts,
        )

    async def _increment(
        self,
        identifier: str,
        action: RateLimitAction,
        policy: RateLimitPolicy,
    ) -> None:
        now = self._clock()
        active_params = (identifier, action.value, to_db_time(now - policy.window), to_db_time(now))

        async with storage_call("rate_limits.increment") as db:
            if await self._open_window(db, identifier, action, now, active_params, attempts=1):
                return

            await db.execute(
                f"""
                UPDATE rate_limits SET attempts = attempts + 1, updated_at = ?
                WHERE id = (
                    SELECT id FROM rate_limits WHERE {_ACTIVE}
                    ORDER BY window_start DESC LIMIT 1
                )
                """,
                (to_db_time(now), *active_params),
            )

    async def _active_record(
        self,
        identifier: str,
        action: RateLimitAction,
        policy: RateLimitPolicy,
        now: datetime,
    ) -> RateLimitRecord | None:
        async with storage_call("rate_limits.lookup") as db:
            async with db.execute(
                f"""
                SELECT * FROM rate_limits WHERE {_ACTIVE}
                ORDER BY window_start DESC LIMIT 1
                """,
                (identifier, action.value, to_db_time(now - policy.window), to_db_time(now)),
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return RateLimitRecord(
            id=row["id"],
            identifier=row["identifier"],
            action=RateLimitAction(row["action"]),
            attempts=row["attempts"],
            window_start=from_db_time(row["window_start"]),
            blocked_until=from_db_time(row["blocked_until"]),
        )

    async def _block_duration(
        self,
        identifier: str,
        action: RateLimitAction,
        policy: RateLimitPolicy,
        now: datetime,
    ) -> timedelta:
        if not policy.escalation:
            return policy.block_duration
        async with storage_call("rate_limits.escalation") as db:
            async with db.execute(
                """
                SELECT COALESCE(SUM(attempts), 0) AS total FROM rate_limits
                WHERE identifier = ? AND action = ? AND window_start > ?
                """,
                (identifier, action.value, to_db_time(now - policy.escalation_lookback)),
            ) as cur:
                row = await cur.fetchone()
        return block_duration_for(policy, row["total"])
