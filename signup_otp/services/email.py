"""
Email service — delivers verification codes.

Three transports share one message layout:

  • ResendEmailSender — Resend REST API over httpx
  • SmtpEmailSender   — plain SMTP via aiosmtplib
  • ConsoleEmailSender — development fallback; the code is written to the
    log so you can sign up locally without configuring a mail server.

Every transport raises DeliveryError on failure.  The caller decides what
to do about it (the OTP service rolls back the record it just created).
"""

from __future__ import annotations

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from uuid import uuid4

import aiosmtplib
import httpx

from signup_otp import config
from signup_otp.errors import DeliveryError
from signup_otp.models import SendResult
from signup_otp.services.contracts import NotificationSender, TemplateKind

logger = logging.getLogger(__name__)

_SUBJECTS: dict[str, str] = {
    "signup": "Your verification code",
    "resend": "Your new verification code",
}


def _ttl_minutes() -> int:
    return max(1, config.OTP_TTL_SECONDS // 60)


def build_subject(template_kind: TemplateKind) -> str:
    return _SUBJECTS.get(template_kind, _SUBJECTS["signup"])


def build_plain_body(code: str, template_kind: TemplateKind) -> str:
    intro = (
        "Here is your new verification code"
        if template_kind == "resend"
        else "Use this code to complete your signup"
    )
    return (
        f"{intro}:\n\n"
        f"    {code}\n\n"
        f"This code will expire in {_ttl_minutes()} minutes.\n"
        "If you did not request it, you can ignore this email.\n"
    )


def build_html_body(code: str, template_kind: TemplateKind) -> str:
    """Build a simple HTML email body showing the code."""
    heading = "Your new verification code" if template_kind == "resend" else "Your verification code"
    return f"""
    <html>
    <body style="font-family:Arial,sans-serif;color:#333">
      <div style="max-width:600px;margin:0 auto">
        <h2 style="text-align:center">{heading}</h2>
        <p style="font-size:16px;color:#666;text-align:center">
          Use this code to complete your verification:
        </p>
        <div style="background:#f8f9fa;padding:20px;text-align:center;
                    margin:20px 0;border-radius:8px">
          <span style="font-size:32px;font-weight:bold;letter-spacing:4px">{code}</span>
        </div>
        <p style="font-size:14px;color:#999;text-align:center">
          This code will expire in {_ttl_minutes()} minutes.
        </p>
      </div>
    </body>
    </html>
    """


# ── Transports ────────────────────────────────────────────────────────────


class ConsoleEmailSender:
    """Logs the email instead of sending it (dev mode)."""

    async def send(self, email: str, code: str, template_kind: TemplateKind) -> SendResult:
        logger.info(
            "📧 [DEV] Would send email to %s:\n  Subject: %s\n  Code: %s",
            email,
            build_subject(template_kind),
            code,
        )
        return SendResult(success=True, message_id=f"console-{uuid4()}")

    async def close(self) -> None:
        pass


class SmtpEmailSender:
    """Sends through an SMTP relay."""

    def __init__(
        self,
        *,
        hostname: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: str = config.SMTP_USERNAME,
        password: str = config.SMTP_PASSWORD,
        use_tls: bool = config.SMTP_USE_TLS,
        sender: str = config.EMAIL_FROM,
        timeout: float = config.EMAIL_SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._hostname = hostname
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender = sender
        self._timeout = timeout

    def build_message(self, email: str, code: str, template_kind: TemplateKind) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = build_subject(template_kind)
        msg["From"] = self._sender
        msg["To"] = email
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(build_plain_body(code, template_kind), "plain"))
        msg.attach(MIMEText(build_html_body(code, template_kind), "html"))
        return msg

    async def send(self, email: str, code: str, template_kind: TemplateKind) -> SendResult:
        msg = self.build_message(email, code, template_kind)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self._hostname,
                port=self._port,
                username=self._username or None,
                password=self._password or None,
                start_tls=self._use_tls,
                timeout=self._timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.exception("Failed to send email to %s", email)
            raise DeliveryError(f"SMTP delivery failed: {exc}") from exc

        logger.info("Email sent to %s via SMTP", email)
        return SendResult(success=True, message_id=msg["Message-ID"])

    async def close(self) -> None:
        pass


class ResendEmailSender:
    """Async client for the Resend transactional email API."""

    def __init__(
        self,
        api_key: str = config.RESEND_API_KEY,
        *,
        api_url: str = config.RESEND_API_URL,
        sender: str = config.EMAIL_FROM,
        timeout: float = config.EMAIL_SEND_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url
        self._sender = sender
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, email: str, code: str, template_kind: TemplateKind) -> SendResult:
        payload = {
            "from": self._sender,
            "to": [email],
            "subject": build_subject(template_kind),
            "html": build_html_body(code, template_kind),
            "text": build_plain_body(code, template_kind),
        }
        try:
            resp = await self._client.post(self._api_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except ValueError as exc:
            logger.error("Resend returned an unreadable body for %s: %s", email, exc)
            raise DeliveryError("Resend returned a non-JSON response") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Resend rejected email to %s: %s %s",
                email, exc.response.status_code, exc.response.text[:200],
            )
            raise DeliveryError(f"Resend returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("Resend request for %s failed: %r", email, exc)
            raise DeliveryError("Resend unreachable") from exc

        message_id = body.get("id") if isinstance(body, dict) else None
        logger.info("Email sent to %s via Resend (id=%s)", email, message_id)
        return SendResult(success=True, message_id=message_id)


def build_email_sender() -> NotificationSender:
    """Pick the transport configured by EMAIL_PROVIDER."""
    provider = config.EMAIL_PROVIDER
    if provider == "auto":
        if config.RESEND_API_KEY:
            provider = "resend"
        elif config.smtp_enabled():
            provider = "smtp"
        else:
            provider = "console"

    if provider == "resend":
        logger.info("Email delivery via Resend API")
        return ResendEmailSender(
            config.RESEND_API_KEY,
            api_url=config.RESEND_API_URL,
            sender=config.EMAIL_FROM,
            timeout=config.EMAIL_SEND_TIMEOUT_SECONDS,
        )
    if provider == "smtp":
        logger.info("Email delivery via SMTP (%s:%d)", config.SMTP_HOST, config.SMTP_PORT)
        return SmtpEmailSender(
            hostname=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            use_tls=config.SMTP_USE_TLS,
            sender=config.EMAIL_FROM,
            timeout=config.EMAIL_SEND_TIMEOUT_SECONDS,
        )
    if provider != "console":
        logger.warning("Unknown EMAIL_PROVIDER %r — falling back to console", provider)
    if config.ENVIRONMENT == "production":
        logger.warning("Console email delivery in production: codes are only logged")
    return ConsoleEmailSender()
