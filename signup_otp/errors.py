"""
Error taxonomy for the signup OTP flow.

Every error the service can surface to a client derives from
OTPServiceError and carries a stable ``error`` code plus the HTTP status
the router answers with.  Messages are deliberately generic: internal
details are logged, never returned.

DeliveryError and AccountCreationError are raised by the external
collaborators (email sender, account backend) and translated by the
service into DeliveryFailed / AccountCreationFailed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class OTPServiceError(Exception):
    """Base class for errors returned to API consumers."""

    error: str = "InternalError"
    status_code: int = 500
    message: str = "An internal error occurred. Please try again later."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message

    @property
    def retry_after(self) -> int | None:
        """Seconds the client should wait before retrying, if known."""
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message}


class RateLimited(OTPServiceError):
    error = "RateLimited"
    status_code = 429
    message = "Too many attempts. Please try again later."

    def __init__(self, blocked_until: datetime | None = None) -> None:
        super().__init__()
        self.blocked_until = blocked_until

    @property
    def retry_after(self) -> int | None:
        if self.blocked_until is None:
            return None
        delta = (self.blocked_until - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(delta + 0.999))

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.blocked_until is not None:
            data["blockedUntil"] = self.blocked_until.isoformat()
        return data


class EmailTaken(OTPServiceError):
    error = "EmailTaken"
    status_code = 400
    message = "This email is already registered. Please sign in instead."


class DeliveryFailed(OTPServiceError):
    error = "DeliveryFailed"
    status_code = 500
    message = "We could not send the verification code. Please request a new one."


class InvalidOrExpiredCode(OTPServiceError):
    error = "InvalidOrExpiredCode"
    status_code = 400
    message = "Invalid or expired verification code."


class AccountTemporarilyBlocked(OTPServiceError):
    error = "AccountTemporarilyBlocked"
    status_code = 429
    message = "Too many failed attempts. Please try again later."


class AccountCreationFailed(OTPServiceError):
    error = "AccountCreationFailed"
    status_code = 500
    message = "Failed to create the account. Please request a new code."


class StorageUnavailable(OTPServiceError):
    error = "StorageUnavailable"
    status_code = 500
    message = "The service is temporarily unavailable. Please try again later."

    def __init__(self, operation: str = "") -> None:
        super().__init__()
        self.operation = operation


class TooSoon(OTPServiceError):
    error = "TooSoon"
    status_code = 429
    message = "Please wait before requesting another code."

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__()
        self._retry_after = retry_after_seconds

    @property
    def retry_after(self) -> int | None:
        return self._retry_after

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retryAfter"] = self._retry_after
        return data


class NoActiveSignup(OTPServiceError):
    error = "NoActiveSignup"
    status_code = 400
    message = "No verification request found. Please sign up first."


class InvalidRequest(OTPServiceError):
    error = "ValidationError"
    status_code = 400
    message = "Invalid request."


# ── Collaborator errors ───────────────────────────────────────────────────


class DeliveryError(Exception):
    """Raised by a notification sender when an email could not be sent."""


class AccountCreationError(Exception):
    """Raised by an account backend when the account could not be created."""
