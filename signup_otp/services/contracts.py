"""
Interfaces of the collaborators the OTP service talks to.

The service only depends on these protocols, so the email provider and
the account backend can be swapped (or faked in tests) without touching
the signup flow itself.
"""

from __future__ import annotations

from typing import Literal, Protocol

from signup_otp.models import Account, SendResult

TemplateKind = Literal["signup", "resend"]


class NotificationSender(Protocol):
    """Delivers an OTP email."""

    async def send(self, email: str, code: str, template_kind: TemplateKind) -> SendResult:
        """
        Send *code* to *email*.

        Raises DeliveryError when the provider rejects the message or
        cannot be reached.
        """
        ...

    async def close(self) -> None:
        ...


class AccountCreator(Protocol):
    """Creates the backing user record once an email has been verified."""

    async def exists(self, email: str) -> bool:
        """Return True if an account is already registered for *email*."""
        ...

    async def create(self, email: str, password: str) -> Account:
        """Create the account; raises AccountCreationError on failure."""
        ...
