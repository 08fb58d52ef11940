from __future__ import annotations

import asyncio
from typing import Optional

from meterauth.logging import get_logger
from meterauth.service.email import EmailService
from meterauth.service.sms import SmsService
from meterauth.storage.models import TwoFactorMethod, User

logger = get_logger(__name__)


class CodeDeliveryService:
    """Routes one-time codes to the user's mailbox or phone."""

    def __init__(
        self,
        *,
        email: Optional[EmailService] = None,
        sms: Optional[SmsService] = None,
        expires_minutes: int = 5,
    ) -> None:
        self.email = email
        self.sms = sms
        self.expires_minutes = expires_minutes

    async def send(
        self,
        user: User,
        method: TwoFactorMethod,
        code: str,
        *,
        phone_number: Optional[str] = None,
    ) -> bool:
        """Deliver ``code``; failures are logged and reported as False."""
        try:
            if method is TwoFactorMethod.EMAIL_OTP and self.email is not None:
                return await asyncio.to_thread(
                    self.email.send_otp_code,
                    user.email,
                    code,
                    expires_minutes=self.expires_minutes,
                )
            if method is TwoFactorMethod.SMS_OTP and self.sms is not None and phone_number:
                return await self.sms.send_otp_code(
                    phone_number, code, expires_minutes=self.expires_minutes
                )
        except Exception as exc:
            logger.error(
                "2fa_code_delivery_failed",
                user_id=user.id,
                method=method.value,
                error=str(exc),
            )
            return False
        logger.warning("2fa_code_delivery_unavailable", user_id=user.id, method=method.value)
        return False
