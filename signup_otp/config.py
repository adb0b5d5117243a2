"""
Application configuration from environment variables.

All settings have sensible defaults for local development.
A .env file in the project root is loaded automatically (if present).
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file before reading any env vars
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

# ── Environment ───────────────────────────────────────────────────────────

ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
APP_VERSION: str = "0.1.0"

# ── Paths ─────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# SQLite database file
DB_PATH: str = os.getenv("DB_PATH", str(DATA_DIR / "signup_otp.db"))

# Upper bound for a single storage round-trip (seconds).
STORAGE_TIMEOUT_SECONDS: float = float(os.getenv("STORAGE_TIMEOUT_SECONDS", "5"))

# ── JWT ───────────────────────────────────────────────────────────────────

JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me-in-production")
JWT_ALGORITHM: str = "HS256"
JWT_EXPIRY_DAYS: int = int(os.getenv("JWT_EXPIRY_DAYS", "7"))

# ── OTP policy ────────────────────────────────────────────────────────────

OTP_TTL_SECONDS: int = int(os.getenv("OTP_TTL_SECONDS", "600"))
OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
OTP_BLOCK_SECONDS: int = int(os.getenv("OTP_BLOCK_SECONDS", "900"))

# Fixed gap between two codes for the same address, independent of the
# per-action rate-limit table.
RESEND_COOLDOWN_SECONDS: int = int(os.getenv("RESEND_COOLDOWN_SECONDS", "60"))

# ── HTTP ──────────────────────────────────────────────────────────────────

CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", '["http://localhost:5173"]')

# Coarse per-IP throttle on the OTP endpoint (slowapi rate string).
IP_RATE_LIMIT: str = os.getenv("IP_RATE_LIMIT", "30/minute")


def cors_origins_list() -> list[str]:
    try:
        return json.loads(CORS_ORIGINS)
    except json.JSONDecodeError:
        return ["http://localhost:5173"]


# ── Email ─────────────────────────────────────────────────────────────────

# "auto" picks Resend when an API key is present, then SMTP, then console.
EMAIL_PROVIDER: str = os.getenv("EMAIL_PROVIDER", "auto").lower()
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "Signup <noreply@signup.local>")
EMAIL_SEND_TIMEOUT_SECONDS: float = float(os.getenv("EMAIL_SEND_TIMEOUT_SECONDS", "10"))

RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL: str = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")

SMTP_HOST: str = os.getenv("SMTP_HOST", "")
SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS: bool = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

# Set to "false" to force console-only mode even when SMTP credentials are present.
_SMTP_ENABLED_OVERRIDE: str = os.getenv("SMTP_ENABLED", "auto")


def smtp_enabled() -> bool:
    """True when SMTP should actually send emails.

    Controlled by SMTP_ENABLED env var:
      • "auto" (default) — send if credentials are configured
      • "true"  — always send (will fail if credentials are missing)
      • "false" — never send
    """
    if _SMTP_ENABLED_OVERRIDE.lower() == "false":
        return False
    if _SMTP_ENABLED_OVERRIDE.lower() == "true":
        return True
    return bool(SMTP_HOST and SMTP_USERNAME and SMTP_PASSWORD)


# ── Retention sweep ───────────────────────────────────────────────────────

# How often stale rate-limit and OTP rows are purged (seconds).
SWEEP_INTERVAL: float = float(os.getenv("SWEEP_INTERVAL", "900"))

# OTP rows are kept this long after they expire, for auditing.
OTP_RETENTION_HOURS: int = int(os.getenv("OTP_RETENTION_HOURS", "24"))
