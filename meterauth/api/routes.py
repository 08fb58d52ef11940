from __future__ import annotations

from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from meterauth.api.schemas import (
    ChangePasswordRequest,
    DisableTwoFactorRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PendingLoginEnvelope,
    RegenerateBackupCodesRequest,
    ResetPasswordRequest,
    SendCodeRequest,
    TwoFactorSetupRequest,
    Verify2FARequest,
    VerifySetupRequest,
    user_payload,
)
from meterauth.logging import get_logger
from meterauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    RateLimitedError,
)
from meterauth.service.login import LoginResult
from meterauth.service.password_reset import (
    ADMIN_RESET_MESSAGE,
    FORGOT_PASSWORD_MESSAGE,
    RESET_SUCCESS_MESSAGE,
)
from meterauth.service.runtime import check_rate_limit, get_runtime
from meterauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_context(request: Request) -> Dict[str, Optional[str]]:
    return {
        "ip_address": _client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Throttle ``key`` and raise 429 once its bucket is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("endpoint_rate_limited", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many requests, please try again later",
            retry_after=info.reset_seconds,
        )
    return info


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Authentication required")
    return get_runtime().account.authenticate(token)


async def get_admin_user(user: User = Depends(get_user)) -> User:
    if user.role != "admin":
        raise ForbiddenError("Admin access required")
    return user


def _session_data(result: LoginResult) -> Dict[str, Any]:
    tokens = result.tokens
    return {
        "user": user_payload(result.user),
        "token": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "expiresIn": tokens.expires_in,
    }


def _parse_user_id(raw: str) -> int:
    try:
        user_id = int(raw)
    except (TypeError, ValueError):
        raise BadRequestError("Invalid user id")
    if user_id <= 0:
        raise BadRequestError("Invalid user id")
    return user_id


# -- sign-in ---------------------------------------------------------------


@router.post(
    "/auth/login", response_model=Union[PendingLoginEnvelope, Envelope], tags=["auth"]
)
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials; finish the sign-in or hand back a pending-2FA token.

    Raises:
        401: Credentials rejected (one message for every cause)
        429: Too many attempts from this address
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.login.login(
        body.email, body.password, body.remember_me, **_request_context(request)
    )
    if result.requires_2fa:
        return PendingLoginEnvelope(
            success=True,
            message="2FA verification required",
            session_token=result.session_token,
            available_methods=result.available_methods,
        )
    return Envelope(success=True, message="Login successful", data=_session_data(result))


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: Verify2FARequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{_client_ip(request)}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.login.verify_two_factor(
        body.session_token, body.code, body.method, **_request_context(request)
    )
    return Envelope(success=True, message="Login successful", data=_session_data(result))


@router.post("/auth/2fa/send-code", response_model=Envelope, tags=["auth"])
async def send_two_factor_code(body: SendCodeRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:send:{_client_ip(request)}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    delivery = await runtime.login.send_two_factor_code(
        body.session_token, body.method, **_request_context(request)
    )
    return Envelope(
        success=True,
        message="Verification code sent",
        data={"method": delivery.method.value, "expires_in": delivery.expires_in},
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(user: User = Depends(get_user)):
    return Envelope(success=True, data={"user": user_payload(user)})


# -- password reset --------------------------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Always answers with the same message, whatever happened behind it."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:request:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.password_reset.forgot_password(body.email, **_request_context(request))
    return Envelope(success=True, message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.password_reset.reset_password(
        body.token,
        body.new_password,
        body.confirm_password,
        **_request_context(request),
    )
    return Envelope(success=True, message=RESET_SUCCESS_MESSAGE)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, request: Request, user: User = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.account.change_password(
        user,
        body.current_password,
        body.new_password,
        body.confirm_password,
        **_request_context(request),
    )
    return Envelope(
        success=True, message="Password changed successfully. Please log in again."
    )


# -- 2FA management --------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(body: TwoFactorSetupRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.account.setup_two_factor(
        user, body.method, phone_number=body.phone_number
    )
    return Envelope(
        success=True,
        message=result.message,
        data={"method": result.method.value, **result.data},
    )


@router.post("/auth/2fa/verify-setup", response_model=Envelope, tags=["2fa"])
async def verify_two_factor_setup(
    body: VerifySetupRequest, request: Request, user: User = Depends(get_user)
):
    runtime = get_runtime()
    backup_codes = await runtime.account.verify_setup(
        user,
        body.method,
        body.code,
        secret=body.secret,
        phone_number=body.phone_number,
        **_request_context(request),
    )
    data: Dict[str, Any] = {"method": body.method, "enabled": True}
    if backup_codes:
        data["backup_codes"] = backup_codes
    return Envelope(success=True, message="2FA has been enabled", data=data)


@router.get("/auth/2fa/methods", response_model=Envelope, tags=["2fa"])
async def list_two_factor_methods(user: User = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(success=True, data=runtime.account.list_methods(user))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: DisableTwoFactorRequest, request: Request, user: User = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.account.disable_two_factor(
        user, body.method, body.password, **_request_context(request)
    )
    return Envelope(success=True, message="2FA method has been disabled")


@router.post("/auth/2fa/regenerate-backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: RegenerateBackupCodesRequest, request: Request, user: User = Depends(get_user)
):
    runtime = get_runtime()
    codes = await runtime.account.regenerate_backup_codes(
        user, body.password, **_request_context(request)
    )
    return Envelope(
        success=True,
        message="Backup codes regenerated. Store them somewhere safe.",
        data={"backup_codes": codes},
    )


# -- admin -----------------------------------------------------------------


@router.post("/users/{user_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    user_id: str, request: Request, admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.password_reset.admin_reset_password(
        _parse_user_id(user_id), actor_id=admin.id, **_request_context(request)
    )
    return Envelope(success=True, message=ADMIN_RESET_MESSAGE)


@router.get("/users/{user_id}/auth-events", response_model=Envelope, tags=["admin"])
async def list_auth_events(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    admin: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    events = runtime.audit.recent_events(_parse_user_id(user_id), limit=limit)
    return Envelope(success=True, data={"events": [event.to_dict() for event in events]})
