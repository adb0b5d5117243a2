"""
Signup OTP orchestration — generate, verify and resend.

Per email the flow moves through::

    NoActiveCode ──generate──▶ CodeIssued ──verify──▶ Verified
                                   │
                                   ├── (10 min pass) ──▶ Expired
                                   └── (5 bad guesses) ─▶ Blocked

Every entry point follows the same shape: reserve an attempt with the rate
limiter, then run the domain logic against the OTP store.  The reservation
is counted whatever the outcome.  The store and the limiter table are the
only coordination points between concurrent requests; nothing is held
across the email send.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

from signup_otp import config
from signup_otp.db import utcnow
from signup_otp.errors import (
    AccountCreationError,
    AccountCreationFailed,
    AccountTemporarilyBlocked,
    DeliveryError,
    DeliveryFailed,
    EmailTaken,
    InvalidOrExpiredCode,
    NoActiveSignup,
    RateLimited,
    TooSoon,
)
from signup_otp.models import Account, IssueResult, OTPRecord, RateLimitAction
from signup_otp.services.contracts import AccountCreator, NotificationSender, TemplateKind
from signup_otp.services.otp_store import OTPStore
from signup_otp.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

OTP_DIGITS = 6


def generate_code() -> str:
    """Uniform 6-digit code from the OS CSPRNG, zero-padded."""
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class OTPService:
    def __init__(
        self,
        store: OTPStore,
        limiter: RateLimiter,
        sender: NotificationSender,
        accounts: AccountCreator,
        *,
        otp_ttl: timedelta = timedelta(seconds=config.OTP_TTL_SECONDS),
        resend_cooldown: timedelta = timedelta(seconds=config.RESEND_COOLDOWN_SECONDS),
        send_timeout: float = config.EMAIL_SEND_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._sender = sender
        self._accounts = accounts
        self._otp_ttl = otp_ttl
        self._resend_cooldown = resend_cooldown
        self._send_timeout = send_timeout
        self._clock = clock

    # ── generate ───────────────────────────────────────────────────────

    async def generate(
        self,
        email: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssueResult:
        """Start a signup: issue a code for an address with no account yet."""
        email = normalize_email(email)
        action = RateLimitAction.SIGNUP
        gate = await self._limiter.acquire(email, action)
        if not gate.allowed:
            logger.info("Signup for %s rejected by rate limiter", email)
            raise RateLimited(gate.blocked_until)

        if await self._accounts.exists(email):
            # Probing an existing address still costs quota.
            raise EmailTaken()

        record = await self._issue(email, "signup", ip_address, user_agent)
        logger.info("Signup code issued for %s (expires %s)", email, record.expires_at.isoformat())
        return IssueResult(
            attempts_remaining=gate.attempts_remaining,
            expires_at=record.expires_at,
        )

    # ── verify ─────────────────────────────────────────────────────────

    async def verify(self, email: str, code: str, password: str) -> Account:
        """
        Check *code* for *email* and create the account on success.

        Wrong, expired and already-used codes are indistinguishable to the
        caller.  A failed guess is charged to the newest record for the
        address even though its code did not match, so guessing cannot
        dodge the per-record ceiling.
        """
        email = normalize_email(email)
        action = RateLimitAction.OTP_VERIFY
        gate = await self._limiter.acquire(email, action)
        if not gate.allowed:
            logger.info("Verification for %s rejected by rate limiter", email)
            raise RateLimited(gate.blocked_until)

        if await self._store.has_recent_block(email):
            raise AccountTemporarilyBlocked()

        record = await self._store.find_by_code(email, code)
        if record is None or not await self._store.mark_verified(record.id):
            await self._charge_failed_guess(email)
            raise InvalidOrExpiredCode()

        logger.info("Code verified for %s (record %s)", email, record.id)

        try:
            account = await self._accounts.create(email, password)
        except AccountCreationError as exc:
            # The code stays consumed; a fresh one is needed to retry.
            logger.error("Account creation failed for %s: %s", email, exc)
            raise AccountCreationFailed() from exc

        logger.info("Account %s created for %s", account.id, email)
        return account

    # ── resend ─────────────────────────────────────────────────────────

    async def resend(
        self,
        email: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssueResult:
        """
        Issue another code for a signup already in progress.

        Earlier codes stay valid; verify always picks the newest one that
        is still eligible.
        """
        email = normalize_email(email)
        action = RateLimitAction.OTP_RESEND
        gate = await self._limiter.acquire(email, action)
        if not gate.allowed:
            logger.info("Resend for %s rejected by rate limiter", email)
            raise RateLimited(gate.blocked_until)

        if await self._store.has_recent_request(email, self._resend_cooldown):
            raise TooSoon(int(self._resend_cooldown.total_seconds()))

        if await self._store.find_latest(email) is None:
            raise NoActiveSignup()

        record = await self._issue(email, "resend", ip_address, user_agent)
        logger.info("Code re-issued for %s (expires %s)", email, record.expires_at.isoformat())
        return IssueResult(
            attempts_remaining=gate.attempts_remaining,
            expires_at=record.expires_at,
        )

    # ── Internals ──────────────────────────────────────────────────────

    async def _issue(
        self,
        email: str,
        template_kind: TemplateKind,
        ip_address: str | None,
        user_agent: str | None,
    ) -> OTPRecord:
        """Insert a fresh record, send it, and roll it back if the send fails."""
        now = self._clock()
        record = OTPRecord(
            id=str(uuid4()),
            email=email,
            otp_code=generate_code(),
            created_at=now,
            expires_at=now + self._otp_ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._store.insert(record)

        try:
            await self._deliver(email, record.otp_code, template_kind)
        except DeliveryFailed:
            # Never leave behind a code the user did not receive.
            await self._store.delete(email, record.otp_code)
            raise
        return record

    async def _deliver(self, email: str, code: str, template_kind: TemplateKind) -> None:
        try:
            async with asyncio.timeout(self._send_timeout):
                result = await self._sender.send(email, code, template_kind)
        except TimeoutError as exc:
            logger.error("Email send to %s timed out after %.1fs", email, self._send_timeout)
            raise DeliveryFailed() from exc
        except DeliveryError as exc:
            logger.error("Email send to %s failed: %s", email, exc)
            raise DeliveryFailed() from exc
        except Exception as exc:
            # Any sender bug is a failed send as far as the caller is concerned.
            logger.exception("Email sender raised unexpectedly for %s", email)
            raise DeliveryFailed() from exc

        if not result.success:
            logger.error("Email provider reported failure for %s", email)
            raise DeliveryFailed()

    async def _charge_failed_guess(self, email: str) -> None:
        latest = await self._store.find_latest(email)
        if latest is None:
            return
        outcome = await self._store.increment_attempts(latest.id)
        if outcome.blocked:
            logger.warning(
                "OTP record %s for %s blocked after %d failed attempts",
                latest.id, email, outcome.attempts,
            )
