"""
Health check endpoint.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from signup_otp.config import APP_VERSION
from signup_otp.models import HealthResponse

router = APIRouter(prefix="/api", tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    operation_id="getHealth",
    summary="Health check",
)
async def get_health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=APP_VERSION,
        timestamp=datetime.now(timezone.utc),
    )
