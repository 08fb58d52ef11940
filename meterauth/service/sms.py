from __future__ import annotations

from typing import Optional

import httpx

from meterauth.logging import get_logger

logger = get_logger(__name__)


def _mask_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"


class SmsService:
    """Delivers text messages by POSTing to an SMS gateway webhook.

    The gateway receives ``{"to": ..., "message": ...}`` with a bearer token.
    Without a webhook URL the message is logged instead (dev mode).
    """

    def __init__(
        self,
        *,
        webhook_url: Optional[str] = None,
        webhook_token: Optional[str] = None,
        sender_name: str = "MeterIt Pro",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.webhook_token = webhook_token
        self.sender_name = sender_name
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send_message(self, to_number: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=_mask_phone(to_number), length=len(message))
            return True

        headers = {"Accept": "application/json"}
        if self.webhook_token:
            headers["Authorization"] = f"Bearer {self.webhook_token}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"to": to_number, "message": message, "from": self.sender_name},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_gateway_http_error",
                to=_mask_phone(to_number),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_gateway_error",
                to=_mask_phone(to_number),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=_mask_phone(to_number))
        return True

    async def send_otp_code(
        self, to_number: str, code: str, *, expires_minutes: int = 5
    ) -> bool:
        message = (
            f"{self.sender_name} verification code: {code}. "
            f"Expires in {expires_minutes} minutes."
        )
        return await self.send_message(to_number, message)
