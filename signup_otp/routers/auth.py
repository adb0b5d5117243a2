"""
Signup endpoint – one JSON route, three actions (generate / verify / resend).
"""

from fastapi import APIRouter, Request, Response

from signup_otp.dependencies import OTPServiceDep, create_session_cookie, get_user_agent
from signup_otp.errors import InvalidRequest
from signup_otp.models import AccountInfo, ErrorResponse, OtpActionRequest, OtpActionResponse
from signup_otp.rate_limit import OTP_ENDPOINT, client_ip, limiter

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post(
    "/otp",
    response_model=OtpActionResponse,
    response_model_exclude_none=True,
    operation_id="otpAction",
    summary="Generate, verify or resend a signup verification code",
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
@limiter.limit(OTP_ENDPOINT)
async def otp_action(
    request: Request,
    response: Response,
    body: OtpActionRequest,
    service: OTPServiceDep,
) -> OtpActionResponse:
    """
    * **generate** – email a code to a new address.
    * **verify** – check the code and create the account (requires `otp`
      and `password`); sets an HTTP-only session cookie on success.
    * **resend** – email another code for a signup already in progress.
    """
    ip_address = client_ip(request)
    user_agent = get_user_agent(request)

    if body.action == "generate":
        issued = await service.generate(body.email, ip_address=ip_address, user_agent=user_agent)
        return OtpActionResponse(
            message="Verification code sent",
            attempts_left=issued.attempts_remaining,
            expires_at=issued.expires_at,
        )

    if body.action == "resend":
        issued = await service.resend(body.email, ip_address=ip_address, user_agent=user_agent)
        return OtpActionResponse(
            message="New verification code sent",
            attempts_left=issued.attempts_remaining,
            expires_at=issued.expires_at,
        )

    if not body.otp or not body.password:
        raise InvalidRequest("Both otp and password are required for verification")

    account = await service.verify(body.email, body.otp, body.password)
    create_session_cookie(response, account.id, account.email)
    return OtpActionResponse(
        message="Email verified",
        user=AccountInfo(id=account.id, email=account.email, created_at=account.created_at),
    )
