from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from meterauth.config import Settings
from meterauth.logging import get_logger
from meterauth.service.audit import AuditStatus, AuditEventType, AuthLoggingService
from meterauth.service.clock import Clock, ensure_aware, utcnow
from meterauth.service.delivery import CodeDeliveryService
from meterauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    SessionExpiredError,
)
from meterauth.service.passwords import PasswordService
from meterauth.service.session_tokens import IssuedTokens, PendingSession, SessionTokenCodec
from meterauth.service.two_factor import TwoFactorService, VerifyOutcome
from meterauth.storage.models import TwoFactorMethod, User, UserTwoFactorMethod

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
SESSION_INVALID = "Session token expired or invalid"
INVALID_2FA_CODE = "Invalid 2FA code"


class LoginStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def record_failed_login(
        self, user_id: int, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    def reset_failed_logins(self, user_id: int, *, login_at: Optional[datetime] = None) -> None: ...

    def get_two_factor_method(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[UserTwoFactorMethod]: ...


class PendingSessionCache(Protocol):
    async def claim_pending_session(self, jti: str, ttl_seconds: int) -> bool: ...

    async def is_pending_session_consumed(self, jti: str) -> bool: ...


class ConsumedSessionLedger:
    """Remembers redeemed pending-2FA tokens so each one succeeds once.

    Entries only need to outlive the token itself. Redis holds them when it
    is configured; otherwise a process-local map does.
    """

    def __init__(self, cache: Optional[PendingSessionCache] = None, *, clock: Clock = utcnow) -> None:
        self.cache = cache
        self.clock = clock
        self._consumed: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    async def claim(self, jti: str, expires_at: datetime) -> bool:
        now = self.clock()
        ttl_seconds = max(1, int((expires_at - now).total_seconds()) + 1)
        if self.cache is not None:
            return await self.cache.claim_pending_session(jti, ttl_seconds)
        with self._lock:
            for stale in [k for k, exp in self._consumed.items() if exp <= now]:
                del self._consumed[stale]
            if jti in self._consumed:
                return False
            self._consumed[jti] = expires_at
            return True

    async def is_consumed(self, jti: str) -> bool:
        if self.cache is not None:
            return await self.cache.is_pending_session_consumed(jti)
        with self._lock:
            expires_at = self._consumed.get(jti)
            return expires_at is not None and expires_at > self.clock()


@dataclass
class LoginResult:
    user: User
    requires_2fa: bool = False
    tokens: Optional[IssuedTokens] = None
    session_token: Optional[str] = None
    available_methods: List[str] = field(default_factory=list)


@dataclass
class CodeDelivery:
    method: TwoFactorMethod
    expires_in: int
    delivered: bool


class LoginOrchestrator:
    """Password check, optional second factor, then session issuance.

    ``login`` either finishes the sign-in or returns a pending-2FA token;
    ``verify_two_factor`` redeems that token with a code from any one of
    the user's enabled methods.
    """

    def __init__(
        self,
        store: LoginStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        two_factor: TwoFactorService,
        audit: AuthLoggingService,
        codec: SessionTokenCodec,
        ledger: ConsumedSessionLedger,
        delivery: Optional[CodeDeliveryService] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.two_factor = two_factor
        self.audit = audit
        self.codec = codec
        self.ledger = ledger
        self.delivery = delivery or CodeDeliveryService()
        self.clock = clock

    def _fail_login(
        self,
        reason: str,
        *,
        user_id: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthenticationError:
        details: Dict[str, Any] = {"reason": reason}
        details.update(extra or {})
        self.audit.log_login(
            AuditStatus.FAILED,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.warning("login_failed", user_id=user_id, reason=reason)
        return AuthenticationError(INVALID_CREDENTIALS)

    async def login(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        normalized = (email or "").strip().lower()
        if not normalized or not password:
            raise BadRequestError("Email and password are required")

        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.passwords.burn_verification(password)
            raise self._fail_login("user_not_found", extra={"email": normalized}, **ctx)

        now = self.clock()
        if user.locked_until is not None:
            if ensure_aware(user.locked_until) > now:
                raise self._fail_login(
                    "account_locked",
                    user_id=user.id,
                    extra={"locked_until": ensure_aware(user.locked_until).isoformat()},
                    **ctx,
                )
            # lock served out; start counting afresh
            self.store.reset_failed_logins(user.id)
            user.failed_login_attempts = 0
            user.locked_until = None

        if not self.passwords.verify_password(user.id, password):
            lock_until = now + timedelta(minutes=self.settings.login_lockout_minutes)
            updated = self.store.record_failed_login(
                user.id,
                max_attempts=self.settings.max_failed_logins,
                lock_until=lock_until,
            )
            attempts = (
                updated.failed_login_attempts if updated else user.failed_login_attempts + 1
            )
            is_locked = bool(updated and updated.locked_until and ensure_aware(updated.locked_until) > now)
            raise self._fail_login(
                "invalid_password",
                user_id=user.id,
                extra={"attempts": attempts, "is_locked": is_locked},
                **ctx,
            )

        if not user.is_active:
            raise self._fail_login("user_inactive", user_id=user.id, **ctx)

        methods = self.two_factor.enabled_methods(user.id)
        if not methods:
            self.store.reset_failed_logins(user.id, login_at=now)
            tokens = self.codec.issue_final(user, remember_me=remember_me)
            self.audit.log_login(
                AuditStatus.SUCCESS,
                user_id=user.id,
                details={"method": "password"},
                **ctx,
            )
            logger.info("login_success", user_id=user.id, tenant_id=user.tenant_id)
            return LoginResult(user=user, tokens=tokens)

        method_names = [m.value for m in methods]
        session_token = self.codec.issue_pending(user, remember_me=remember_me)
        self.audit.log_login(
            AuditStatus.PENDING_2FA,
            user_id=user.id,
            details={"reason": "2fa_required", "methods": method_names},
            **ctx,
        )
        logger.info("login_pending_2fa", user_id=user.id, methods=method_names)
        return LoginResult(
            user=user,
            requires_2fa=True,
            session_token=session_token,
            available_methods=method_names,
        )

    def _resolve_pending(self, session_token: str) -> tuple[PendingSession, User]:
        pending = self.codec.verify_pending(session_token)
        if pending is None:
            raise SessionExpiredError(SESSION_INVALID)
        user = self.store.get_user(pending.user_id)
        if user is None or not user.is_active or user.tenant_id != pending.tenant_id:
            logger.warning("pending_session_user_invalid", user_id=pending.user_id)
            raise SessionExpiredError(SESSION_INVALID)
        return pending, user

    @staticmethod
    def _parse_method(method: str | TwoFactorMethod) -> TwoFactorMethod:
        try:
            return TwoFactorMethod(method)
        except ValueError:
            raise BadRequestError("Invalid 2FA method", detail={"method": str(method)})

    def _method_available(self, user_id: int, method: TwoFactorMethod) -> bool:
        if method is TwoFactorMethod.BACKUP_CODE:
            # backup codes stand in for an enrolled authenticator
            return bool(self.two_factor.enabled_methods(user_id))
        row = self.store.get_two_factor_method(user_id, method)
        return bool(row and row.is_enabled)

    async def verify_two_factor(
        self,
        session_token: str,
        code: str,
        method: str | TwoFactorMethod,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        pending, user = self._resolve_pending(session_token)
        method = self._parse_method(method)
        if not code or not str(code).strip():
            raise BadRequestError("Verification code is required")

        # Checked before the verifier so a replay cannot spend a backup code or OTP
        if await self.ledger.is_consumed(pending.jti):
            self._reject_replay(user, method, ctx)

        if self._method_available(user.id, method):
            outcome = self.two_factor.verify(user.id, method, code)
        else:
            logger.info("2fa_method_not_enabled", user_id=user.id, method=method.value)
            outcome = VerifyOutcome(valid=False)

        if not outcome.valid:
            self._reject_code(user, method, outcome, ctx)

        if not await self.ledger.claim(pending.jti, pending.expires_at):
            self._reject_replay(user, method, ctx)

        self.store.reset_failed_logins(user.id, login_at=self.clock())
        tokens = self.codec.issue_final(user, remember_me=pending.remember_me)
        self.audit.log_login(
            AuditStatus.SUCCESS,
            user_id=user.id,
            details={"verification_method": method.value},
            **ctx,
        )
        logger.info("login_success", user_id=user.id, verification_method=method.value)
        return LoginResult(user=user, tokens=tokens)

    def _reject_replay(
        self, user: User, method: TwoFactorMethod, ctx: Dict[str, Any]
    ) -> None:
        self.audit.log_login(
            AuditStatus.FAILED,
            user_id=user.id,
            details={"reason": "session_already_used", "method": method.value},
            **ctx,
        )
        raise SessionExpiredError(SESSION_INVALID)

    def _reject_code(
        self,
        user: User,
        method: TwoFactorMethod,
        outcome: VerifyOutcome,
        ctx: Dict[str, Any],
    ) -> None:
        details: Dict[str, Any] = {
            "reason": "is_locked" if outcome.locked else "invalid_2fa_code",
            "method": method.value,
            "is_locked": outcome.locked,
        }
        if outcome.attempts_remaining is not None:
            details["attempts_remaining"] = outcome.attempts_remaining
        self.audit.log_login(AuditStatus.FAILED, user_id=user.id, details=details, **ctx)
        logger.warning(
            "2fa_verification_failed",
            user_id=user.id,
            method=method.value,
            is_locked=outcome.locked,
        )
        client_detail: Dict[str, Any] = {
            "method": method.value,
            "is_locked": outcome.locked,
        }
        if outcome.attempts_remaining is not None:
            client_detail["attempts_remaining"] = outcome.attempts_remaining
        raise AuthenticationError(INVALID_2FA_CODE, detail=client_detail)

    async def send_two_factor_code(
        self,
        session_token: str,
        method: str | TwoFactorMethod,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CodeDelivery:
        """Issue and deliver an email or SMS code for a pending sign-in."""
        pending, user = self._resolve_pending(session_token)
        if await self.ledger.is_consumed(pending.jti):
            raise SessionExpiredError(SESSION_INVALID)
        method = self._parse_method(method)
        if not method.is_challenge:
            raise BadRequestError(
                "Codes can only be sent for email_otp or sms_otp",
                detail={"method": method.value},
            )
        row = self.store.get_two_factor_method(user.id, method)
        if row is None or not row.is_enabled:
            raise BadRequestError(
                "2FA method is not enabled for this account",
                detail={"method": method.value},
            )

        issued = self.two_factor.issue_otp(user.id, method)
        delivered = await self.delivery.send(
            user, method, issued.code, phone_number=row.phone_number
        )
        self.audit.log_event(
            AuditEventType.TWO_FACTOR_CODE_SENT,
            AuditStatus.SUCCESS if delivered else AuditStatus.FAILED,
            user_id=user.id,
            details={"method": method.value},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        expires_in = max(0, int((issued.expires_at - self.clock()).total_seconds()))
        return CodeDelivery(method=method, expires_in=expires_in, delivered=delivered)

