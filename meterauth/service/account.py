from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from meterauth.logging import get_logger
from meterauth.service.audit import AuditEventType, AuditStatus, AuthLoggingService
from meterauth.service.clock import Clock, utcnow
from meterauth.service.delivery import CodeDeliveryService
from meterauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
)
from meterauth.service.password_reset import WeakPasswordError
from meterauth.service.passwords import PasswordService, PasswordValidator
from meterauth.service.session_tokens import SessionTokenCodec
from meterauth.service.tokens import TokenService
from meterauth.service.two_factor import TwoFactorService
from meterauth.storage.models import (
    ENROLLABLE_METHODS,
    TwoFactorMethod,
    User,
    UserTwoFactorMethod,
)

logger = get_logger(__name__)

METHOD_LABELS = {
    TwoFactorMethod.TOTP: "Authenticator app",
    TwoFactorMethod.EMAIL_OTP: "Email verification code",
    TwoFactorMethod.SMS_OTP: "SMS verification code",
}


class AccountStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def list_two_factor_methods(
        self, user_id: int, *, enabled_only: bool = True
    ) -> List[UserTwoFactorMethod]: ...

    def get_two_factor_method(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[UserTwoFactorMethod]: ...

    def upsert_two_factor_method(
        self,
        user_id: int,
        method: TwoFactorMethod,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserTwoFactorMethod: ...

    def disable_two_factor_method(
        self, user_id: int, method: TwoFactorMethod, *, now: Optional[datetime] = None
    ) -> bool: ...

    def delete_backup_codes(self, user_id: int) -> int: ...

    def count_unused_backup_codes(self, user_id: int) -> int: ...


@dataclass
class SetupResult:
    method: TwoFactorMethod
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


class AccountService:
    """Signed-in account operations: password change and 2FA enrollment."""

    def __init__(
        self,
        store: AccountStore,
        *,
        passwords: PasswordService,
        validator: PasswordValidator,
        two_factor: TwoFactorService,
        tokens: TokenService,
        audit: AuthLoggingService,
        codec: SessionTokenCodec,
        delivery: CodeDeliveryService,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.validator = validator
        self.two_factor = two_factor
        self.tokens = tokens
        self.audit = audit
        self.codec = codec
        self.delivery = delivery
        self.clock = clock

    def authenticate(self, access_token: str) -> User:
        """Resolve a bearer access token to an active user."""
        claims = self.codec.verify_access(access_token)
        if not claims:
            raise AuthenticationError("Invalid or expired token")
        try:
            user_id = int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("Invalid or expired token")
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid or expired token")
        changed_at = user.password_changed_at
        issued_at = claims.get("iat")
        # tokens minted before a password change stop working
        if changed_at is not None and issued_at is not None:
            if int(issued_at) < int(changed_at.timestamp()):
                raise AuthenticationError("Invalid or expired token")
        return user

    def _log(
        self,
        event_type: str,
        success: bool,
        user: User,
        details: Dict[str, Any],
        ctx: Dict[str, Any],
    ) -> None:
        self.audit.log_event(
            event_type,
            AuditStatus.SUCCESS if success else AuditStatus.FAILED,
            user_id=user.id,
            details=details,
            **ctx,
        )

    def _require_password(
        self, user: User, password: str, event_type: str, ctx: Dict[str, Any], **extra: Any
    ) -> None:
        if not password or not self.passwords.verify_password(user.id, password):
            self._log(event_type, False, user, {"reason": "invalid_password", **extra}, ctx)
            raise AuthenticationError("Password is incorrect")

    # -- password change ---------------------------------------------------

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        event = AuditEventType.PASSWORD_CHANGE
        if new_password != confirm_password:
            self._log(event, False, user, {"reason": "passwords_do_not_match"}, ctx)
            raise BadRequestError("Passwords do not match")

        if not self.passwords.verify_password(user.id, current_password):
            self._log(event, False, user, {"reason": "invalid_current_password"}, ctx)
            raise AuthenticationError("Current password is incorrect")

        validation = self.validator.validate(new_password, user.email)
        if not validation.is_valid:
            self._log(
                event,
                False,
                user,
                {"reason": "weak_password", "errors": validation.errors},
                ctx,
            )
            raise WeakPasswordError(validation.errors)

        if self.passwords.verify_password(user.id, new_password):
            self._log(event, False, user, {"reason": "same_as_current"}, ctx)
            raise BadRequestError(
                "New password must be different from current password"
            )

        now = self.clock()
        self.passwords.save_password(user.id, new_password, changed_at=now)
        # outstanding reset links would otherwise undo this change
        self.tokens.invalidate_user_tokens(user.id)
        self._log(event, True, user, {}, ctx)
        logger.info("password_changed", user_id=user.id)

    # -- 2FA enrollment ----------------------------------------------------

    @staticmethod
    def _enrollable(method: str | TwoFactorMethod) -> TwoFactorMethod:
        try:
            parsed = TwoFactorMethod(method)
        except ValueError:
            parsed = None
        if parsed not in ENROLLABLE_METHODS:
            raise BadRequestError("Invalid 2FA method", detail={"method": str(method)})
        return parsed

    async def setup_two_factor(
        self, user: User, method: str | TwoFactorMethod, *, phone_number: Optional[str] = None
    ) -> SetupResult:
        method = self._enrollable(method)
        if method is TwoFactorMethod.TOTP:
            enrollment = self.two_factor.generate_totp_secret(user.email)
            return SetupResult(
                method=method,
                message="Scan the QR code with your authenticator app",
                data={
                    "secret": enrollment.secret,
                    "qr_code": enrollment.qr_code,
                    "manual_entry_key": enrollment.manual_entry_key,
                    "otpauth_url": enrollment.otpauth_url,
                },
            )

        if method is TwoFactorMethod.SMS_OTP and not (phone_number or "").strip():
            raise BadRequestError("Phone number is required for SMS OTP")

        issued = self.two_factor.issue_otp(user.id, method)
        delivered = await self.delivery.send(
            user, method, issued.code, phone_number=(phone_number or "").strip() or None
        )
        if method is TwoFactorMethod.EMAIL_OTP:
            message = "A verification code has been sent to your email"
        else:
            message = "A verification code has been sent to your phone"
        return SetupResult(method=method, message=message, data={"code_sent": delivered})

    async def verify_setup(
        self,
        user: User,
        method: str | TwoFactorMethod,
        code: str,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        """Enable ``method`` once ``code`` proves possession; returns new backup codes."""
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        method = self._enrollable(method)
        event = AuditEventType.TWO_FACTOR_ENABLE
        if method is TwoFactorMethod.TOTP:
            if not secret:
                raise BadRequestError("TOTP secret is required")
            is_valid = self.two_factor.verify_totp_code(secret, code)
        else:
            if method is TwoFactorMethod.SMS_OTP and not (phone_number or "").strip():
                raise BadRequestError("Phone number is required for SMS OTP")
            is_valid = self.two_factor.verify(user.id, method, code).valid

        if not is_valid:
            self._log(event, False, user, {"method": method.value, "reason": "invalid_code"}, ctx)
            raise BadRequestError("Invalid verification code")

        stored_phone = None
        if method is TwoFactorMethod.SMS_OTP:
            stored_phone = phone_number.strip()
        self.store.upsert_two_factor_method(
            user.id,
            method,
            secret=secret if method is TwoFactorMethod.TOTP else None,
            phone_number=stored_phone,
            now=self.clock(),
        )

        backup_codes: List[str] = []
        if method is TwoFactorMethod.TOTP:
            backup_codes = self.two_factor.generate_backup_codes()
            self.two_factor.store_backup_codes(user.id, backup_codes)

        await asyncio.to_thread(self.send_enabled_notice, user, method)
        self._log(event, True, user, {"method": method.value}, ctx)
        logger.info("2fa_method_enabled", user_id=user.id, method=method.value)
        return backup_codes

    def list_methods(self, user: User) -> Dict[str, Any]:
        methods = self.store.list_two_factor_methods(user.id)
        return {
            "methods": [
                {
                    "type": m.method_type.value,
                    "enabled": m.is_enabled,
                    "created_at": m.created_at.isoformat(),
                }
                for m in methods
            ],
            "backup_codes_remaining": self.store.count_unused_backup_codes(user.id),
        }

    async def disable_two_factor(
        self,
        user: User,
        method: str | TwoFactorMethod,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        method = self._enrollable(method)
        event = AuditEventType.TWO_FACTOR_DISABLE
        self._require_password(user, password, event, ctx, method=method.value)

        if not self.store.disable_two_factor_method(user.id, method, now=self.clock()):
            raise NotFoundError("2FA method not found")
        if method is TwoFactorMethod.TOTP:
            self.store.delete_backup_codes(user.id)

        self._log(event, True, user, {"method": method.value}, ctx)
        logger.info("2fa_method_disabled", user_id=user.id, method=method.value)

    async def regenerate_backup_codes(
        self,
        user: User,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        event = AuditEventType.BACKUP_CODES_REGENERATED
        self._require_password(user, password, event, ctx)

        totp = self.store.get_two_factor_method(user.id, TwoFactorMethod.TOTP)
        if totp is None or not totp.is_enabled:
            raise BadRequestError("TOTP 2FA is not enabled for this account")

        codes = self.two_factor.generate_backup_codes()
        self.two_factor.store_backup_codes(user.id, codes)
        self._log(event, True, user, {"count": len(codes)}, ctx)
        return codes

    def send_enabled_notice(self, user: User, method: TwoFactorMethod) -> bool:
        email = self.delivery.email
        if email is None:
            return False
        return email.send_two_factor_enabled(user.email, METHOD_LABELS.get(method, method.value))
