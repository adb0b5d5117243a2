"""
Coarse per-IP throttling using slowapi.

This sits in front of the per-email RateLimiter in
signup_otp.services.rate_limiter: it caps raw request volume from one
client address before any storage work happens, whatever email the
requests carry.

The limiter keys on client IP (first X-Forwarded-For hop when present).
"""

from slowapi import Limiter
from starlette.requests import Request

from signup_otp.config import IP_RATE_LIMIT


def client_ip(request: Request) -> str:
    """Client IP address, honouring a reverse proxy's X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=client_ip)

# Named rate string for the OTP endpoint decorator
OTP_ENDPOINT = IP_RATE_LIMIT
