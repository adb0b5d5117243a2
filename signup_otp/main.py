"""Main FastAPI application for the signup OTP service."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from signup_otp import config, db
from signup_otp.config import APP_VERSION, cors_origins_list
from signup_otp.errors import OTPServiceError
from signup_otp.rate_limit import limiter
from signup_otp.routers import auth, health
from signup_otp.services.accounts import LocalAccountCreator
from signup_otp.services.email import build_email_sender
from signup_otp.services.otp_service import OTPService
from signup_otp.services.otp_store import OTPStore
from signup_otp.services.rate_limiter import DEFAULT_POLICIES, RateLimiter
from signup_otp.services.sweeper import RetentionSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open storage, wire the service graph and start the retention sweep."""
    await db.init_db()

    store = OTPStore(
        max_attempts=config.OTP_MAX_ATTEMPTS,
        block_duration=timedelta(seconds=config.OTP_BLOCK_SECONDS),
    )
    rate_limiter = RateLimiter(DEFAULT_POLICIES)
    sender = build_email_sender()
    app.state.otp_service = OTPService(
        store,
        rate_limiter,
        sender,
        LocalAccountCreator(),
        otp_ttl=timedelta(seconds=config.OTP_TTL_SECONDS),
        resend_cooldown=timedelta(seconds=config.RESEND_COOLDOWN_SECONDS),
        send_timeout=config.EMAIL_SEND_TIMEOUT_SECONDS,
    )

    sweeper = RetentionSweeper(
        store,
        rate_limiter,
        interval=config.SWEEP_INTERVAL,
        retention=timedelta(hours=config.OTP_RETENTION_HOURS),
    )
    await sweeper.start()
    logger.info("Signup OTP service v%s ready", APP_VERSION)

    yield

    await sweeper.stop()
    await sender.close()
    await db.close_db()


app = FastAPI(
    title="Signup OTP API",
    description="Email one-time-passcode signup with abuse controls",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list(),
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.exception_handler(OTPServiceError)
async def otp_error_handler(request: Request, exc: OTPServiceError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


app.include_router(health.router)
app.include_router(auth.router)
