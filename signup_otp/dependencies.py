from datetime import UTC, datetime, timedelta
from typing import Annotated

import jwt
from fastapi import Depends, Request, Response

from signup_otp.config import ENVIRONMENT, JWT_ALGORITHM, JWT_EXPIRY_DAYS, JWT_SECRET
from signup_otp.services.otp_service import OTPService


# ── Service graph ──────────────────────────────────────────────────────────


def get_otp_service(request: Request) -> OTPService:
    """The OTPService built by the application lifespan."""
    return request.app.state.otp_service


OTPServiceDep = Annotated[OTPService, Depends(get_otp_service)]


# ── Request metadata ───────────────────────────────────────────────────────


def get_user_agent(request: Request) -> str | None:
    agent = request.headers.get("User-Agent")
    return agent[:512] if agent else None


# ── JWT / Session ──────────────────────────────────────────────────────────


def create_jwt(account_id: str, email: str) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": account_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(days=JWT_EXPIRY_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_session_cookie(response: Response, account_id: str, email: str) -> None:
    token = create_jwt(account_id, email)
    response.set_cookie(
        key="session",
        value=token,
        httponly=True,
        samesite="lax",
        secure=ENVIRONMENT == "production",
        max_age=JWT_EXPIRY_DAYS * 86400,
    )
