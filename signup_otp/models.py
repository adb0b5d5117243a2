"""Pydantic models for the signup OTP service."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class RateLimitAction(str, Enum):
    """Actions gated by the per-identifier rate limiter."""

    SIGNUP = "signup"
    SIGNIN = "signin"
    OTP_VERIFY = "otp_verify"
    OTP_RESEND = "otp_resend"


# ── Rate limiting ──────────────────────────────────────────────────────────


class EscalationTier(BaseModel):
    """Block duration applied once *attempts* is reached in the lookback."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(..., ge=1)
    block_duration: timedelta


class RateLimitPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(..., ge=1)
    window: timedelta
    block_duration: timedelta = timedelta(minutes=15)
    # Sorted ascending by attempts; empty means single-tier blocking.
    escalation: tuple[EscalationTier, ...] = ()
    escalation_lookback: timedelta = timedelta(hours=24)

    @field_validator("escalation")
    @classmethod
    def _sort_tiers(cls, tiers: tuple[EscalationTier, ...]) -> tuple[EscalationTier, ...]:
        return tuple(sorted(tiers, key=lambda t: t.attempts))


class RateLimitResult(BaseModel):
    allowed: bool
    attempts_remaining: int
    blocked_until: datetime | None = None


class RateLimitRecord(BaseModel):
    id: int
    identifier: str
    action: RateLimitAction
    attempts: int
    window_start: datetime
    blocked_until: datetime | None = None


# ── OTP records ────────────────────────────────────────────────────────────


class OTPRecord(BaseModel):
    id: str
    email: str
    otp_code: str
    created_at: datetime
    expires_at: datetime
    verified_at: datetime | None = None
    attempts: int = 0
    blocked_until: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def is_verifiable(self, now: datetime) -> bool:
        """Mirror of the SQL eligibility predicate used by the store."""
        return (
            self.verified_at is None
            and self.expires_at > now
            and (self.blocked_until is None or self.blocked_until <= now)
        )


class AttemptResult(BaseModel):
    attempts: int
    blocked: bool


class IssueResult(BaseModel):
    """Outcome of a successful generate / resend."""

    attempts_remaining: int
    expires_at: datetime


# ── Collaborators ──────────────────────────────────────────────────────────


class SendResult(BaseModel):
    success: bool
    message_id: str | None = None


class Account(BaseModel):
    id: str
    email: str
    created_at: datetime


# ── API ────────────────────────────────────────────────────────────────────


class OtpActionRequest(BaseModel):
    """Body of POST /api/auth/otp."""

    action: Literal["generate", "verify", "resend"]
    email: EmailStr
    otp: str | None = Field(None, pattern=r"^\d{6}$")
    password: str | None = Field(None, min_length=8, max_length=128)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class AccountInfo(BaseModel):
    id: str
    email: str
    created_at: datetime


class OtpActionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str | None = None
    attempts_left: int | None = Field(None, alias="attemptsLeft")
    expires_at: datetime | None = Field(None, alias="expiresAt")
    user: AccountInfo | None = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error: str
    message: str
    blocked_until: datetime | None = Field(None, alias="blockedUntil")
    retry_after: int | None = Field(None, alias="retryAfter")


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
