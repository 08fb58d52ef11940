from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meterauth.logging import get_correlation_id
from meterauth.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class PendingLoginEnvelope(Envelope):
    """Password accepted; a second factor is still owed."""

    requires_2fa: bool = True
    session_token: str
    available_methods: List[str]


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        raise ValueError("email is required")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


EnrollableMethodName = Literal["totp", "email_otp", "sms_otp"]


class _CamelRequest(BaseModel):
    # clients send camelCase; snake_case names are accepted too
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelRequest):
    email: str
    password: str = Field(..., min_length=1, max_length=256)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class Verify2FARequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=4096)
    code: str = Field(..., min_length=1, max_length=32)
    method: str = Field(..., max_length=32)


class SendCodeRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=4096)
    method: str = Field(..., max_length=32)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_CamelRequest):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256, alias="newPassword")
    confirm_password: str = Field(..., max_length=256, alias="confirmPassword")


class ChangePasswordRequest(_CamelRequest):
    current_password: str = Field(..., min_length=1, max_length=256, alias="currentPassword")
    new_password: str = Field(..., max_length=256, alias="newPassword")
    confirm_password: str = Field(..., max_length=256, alias="confirmPassword")


class TwoFactorSetupRequest(_CamelRequest):
    method: EnrollableMethodName
    phone_number: Optional[str] = Field(default=None, max_length=32, alias="phoneNumber")


class VerifySetupRequest(_CamelRequest):
    method: EnrollableMethodName
    code: str = Field(..., min_length=1, max_length=16)
    secret: Optional[str] = Field(default=None, max_length=128)
    phone_number: Optional[str] = Field(default=None, max_length=32, alias="phoneNumber")


class DisableTwoFactorRequest(BaseModel):
    method: EnrollableMethodName
    password: str = Field(..., min_length=1, max_length=256)


class RegenerateBackupCodesRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=256)


def user_payload(user: User) -> Dict[str, Any]:
    """Client-facing user shape shared by login, verify-2fa and token introspection."""
    return {
        "users_id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "permissions": user.permissions,
        "status": "active" if user.is_active else "inactive",
        "client": user.tenant_id,
    }
