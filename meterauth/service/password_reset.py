from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

from meterauth.config import Settings
from meterauth.logging import get_logger
from meterauth.service.audit import AuditEventType, AuthLoggingService
from meterauth.service.clock import Clock, utcnow
from meterauth.service.email import EmailService
from meterauth.service.errors import BadRequestError, NotFoundError
from meterauth.service.passwords import PasswordService, PasswordValidator
from meterauth.service.tokens import TokenService
from meterauth.storage.models import User

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with this email, you will receive a password reset link"
)
RESET_SUCCESS_MESSAGE = (
    "Password reset successfully. Please log in with your new password."
)
ADMIN_RESET_MESSAGE = "Password reset link has been sent to the user's email"
INVALID_RESET_TOKEN = "Reset link has expired or is invalid"


class WeakPasswordError(BadRequestError):
    """New password failed the complexity rules; ``errors`` lists each rule."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            "Password does not meet security requirements", detail={"errors": errors}
        )
        self.errors = list(errors)


class UserLookup(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass
class ResetRequestOutcome:
    """What happened behind the generic forgot-password reply. Never sent to clients."""

    rate_limited: bool = False
    user_found: bool = False
    token_issued: bool = False
    email_sent: bool = False


class PasswordResetOrchestrator:
    """Self-service and admin-initiated password resets."""

    def __init__(
        self,
        users: UserLookup,
        settings: Settings,
        *,
        tokens: TokenService,
        passwords: PasswordService,
        validator: PasswordValidator,
        audit: AuthLoggingService,
        email: EmailService,
        clock: Clock = utcnow,
    ) -> None:
        self.users = users
        self.settings = settings
        self.tokens = tokens
        self.passwords = passwords
        self.validator = validator
        self.audit = audit
        self.email = email
        self.clock = clock

    @property
    def rate_limit_window(self) -> timedelta:
        return timedelta(minutes=self.settings.reset_rate_limit_window_minutes)

    def build_reset_url(self, token: str) -> str:
        base = (self.settings.frontend_url or "http://localhost:3000").rstrip("/")
        return f"{base}/reset-password?{urlencode({'token': token})}"

    def _is_rate_limited(self, email: str) -> bool:
        recent = self.audit.count_recent(
            AuditEventType.PASSWORD_RESET_REQUESTED,
            self.rate_limit_window,
            details_match={"email": email, "initiated_by": "self"},
        )
        return recent >= self.settings.reset_rate_limit_count

    async def forgot_password(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequestOutcome:
        """Handle a self-service reset request.

        Callers reply with the same generic message whatever this returns.
        """
        normalized = (email or "").strip().lower()
        if not normalized:
            raise BadRequestError("Email is required")
        ctx = {"ip_address": ip_address, "user_agent": user_agent}

        if self._is_rate_limited(normalized):
            logger.warning("password_reset_rate_limited", email=normalized)
            return ResetRequestOutcome(rate_limited=True)

        details: Dict[str, Any] = {"email": normalized, "initiated_by": "self"}
        user = self.users.get_user_by_email(normalized)
        if user is None:
            # still counted so the cap also covers addresses with no account
            self.audit.log_password_reset(
                False,
                requested=True,
                details={**details, "reason": "user_not_found"},
                **ctx,
            )
            logger.info("password_reset_unknown_email", email=normalized)
            return ResetRequestOutcome()

        email_sent = await self._issue_and_send(user)
        self.audit.log_password_reset(
            True,
            user_id=user.id,
            requested=True,
            details={**details, "email_sent": email_sent},
            **ctx,
        )
        return ResetRequestOutcome(user_found=True, token_issued=True, email_sent=email_sent)

    async def admin_reset_password(
        self,
        user_id: int,
        *,
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequestOutcome:
        """Send a reset link on an administrator's behalf; not rate limited."""
        if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
            raise BadRequestError("Invalid user id")
        user = self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        email_sent = await self._issue_and_send(user)
        self.audit.log_password_reset(
            True,
            user_id=user.id,
            requested=True,
            details={
                "email": user.email,
                "initiated_by": "admin",
                "actor_id": actor_id,
                "email_sent": email_sent,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("admin_password_reset_requested", user_id=user.id, actor_id=actor_id)
        return ResetRequestOutcome(user_found=True, token_issued=True, email_sent=email_sent)

    async def _issue_and_send(self, user: User) -> bool:
        grant = self.tokens.generate_reset_token()
        # storage failures here are critical and propagate as 500s
        self.tokens.store_reset_token(user.id, grant)
        try:
            return await asyncio.to_thread(
                self.email.send_password_reset,
                user.email,
                self.build_reset_url(grant.token),
                expires_hours=self.settings.reset_token_ttl_hours,
            )
        except Exception as exc:
            logger.error("password_reset_email_failed", user_id=user.id, error=str(exc))
            return False

    def _require_strong(
        self,
        password: str,
        email: Optional[str],
        user_id: int,
        ctx: Dict[str, Optional[str]],
    ) -> None:
        validation = self.validator.validate(password, email)
        if validation.is_valid:
            return
        self.audit.log_password_reset(
            False,
            user_id=user_id,
            details={"reason": "weak_password", "errors": validation.errors},
            **ctx,
        )
        raise WeakPasswordError(validation.errors)

    async def reset_password(
        self,
        token: str,
        new_password: str,
        confirm_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        ctx = {"ip_address": ip_address, "user_agent": user_agent}
        if new_password != confirm_password:
            raise BadRequestError("Passwords do not match")
        if not token:
            raise BadRequestError(INVALID_RESET_TOKEN)

        record = self.tokens.validate_reset_token(token)
        if record is None:
            self.audit.log_password_reset(
                False, details={"reason": "invalid_token"}, **ctx
            )
            raise BadRequestError(INVALID_RESET_TOKEN)

        self._require_strong(new_password, None, record.user_id, ctx)

        user = self.users.get_user(record.user_id)
        if user is None:
            self.audit.log_password_reset(
                False,
                details={"reason": "user_not_found", "token_user_id": record.user_id},
                **ctx,
            )
            raise NotFoundError("User not found")
        # the email rule needs the owning account
        self._require_strong(new_password, user.email, user.id, ctx)

        password_hash, algo = self.passwords.hash_password(new_password)
        redeemed_for = self.tokens.redeem_reset_token(token, password_hash, algo)
        if redeemed_for is None:
            # lost a race with a concurrent redemption or expired in between
            self.audit.log_password_reset(
                False,
                user_id=user.id,
                details={"reason": "invalid_token", "stage": "redeem"},
                **ctx,
            )
            raise BadRequestError(INVALID_RESET_TOKEN)

        self.audit.log_password_reset(
            True, user_id=user.id, details={"initiated_by": "token"}, **ctx
        )
        logger.info("password_reset_completed", user_id=user.id)
        return user
