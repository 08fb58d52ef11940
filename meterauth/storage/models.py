from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorMethod(str, Enum):
    """Second factors a login can be completed with."""

    TOTP = "totp"
    EMAIL_OTP = "email_otp"
    SMS_OTP = "sms_otp"
    BACKUP_CODE = "backup_code"

    @property
    def is_challenge(self) -> bool:
        """Methods that deliver a stored one-time code."""
        return self in (TwoFactorMethod.EMAIL_OTP, TwoFactorMethod.SMS_OTP)


# Methods a user can enroll; backup codes only come with TOTP enrollment
ENROLLABLE_METHODS = (
    TwoFactorMethod.TOTP,
    TwoFactorMethod.EMAIL_OTP,
    TwoFactorMethod.SMS_OTP,
)


@dataclass
class User:
    id: int
    email: str
    tenant_id: int = 1
    name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    permissions: Dict[str, Any] = field(default_factory=dict)
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class UserAuthCredential:
    user_id: int
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    last_updated_at: Optional[datetime] = None


@dataclass
class UserTwoFactorMethod:
    user_id: int
    method_type: TwoFactorMethod
    is_enabled: bool = True
    # Fernet token for TOTP; never the raw base32 secret
    secret_key: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class BackupCode:
    id: int
    user_id: int
    code_hash: str
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OtpChallenge:
    id: int
    user_id: int
    method_type: TwoFactorMethod
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ResetToken:
    id: int
    user_id: int
    token_hash: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AuditEvent:
    """One authentication-relevant occurrence; the only audit record shape."""

    event_type: str
    status: str
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "status": self.status,
            "details": dict(self.details),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
        }
