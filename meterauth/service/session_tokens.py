from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from meterauth.config import Settings
from meterauth.logging import get_logger
from meterauth.service.clock import Clock, utcnow
from meterauth.storage.models import User

logger = get_logger(__name__)


class TokenType(str, Enum):
    PENDING_2FA = "pending_2fa"
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class PendingSession:
    """Claims of a verified pending-2FA token."""

    user_id: int
    tenant_id: int
    remember_me: bool
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int


class SessionTokenCodec:
    """HS256 tokens for the pending-2FA step and for final sessions.

    Each token carries a ``token_type`` claim and every verifier accepts only
    its own type, so a pending token never authenticates a request and an
    access token never stands in for a pending one.
    """

    def __init__(self, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.settings = settings
        self.clock = clock
        self._secret = settings.jwt_secret.encode()

    @property
    def pending_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.pending_session_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        # Compared as bytes; str compare_digest rejects non-ASCII input
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.clock().timestamp():
            return None
        return payload

    def _claims(
        self, token_type: TokenType, user_id: int, tenant_id: int, ttl: timedelta
    ) -> dict[str, Any]:
        now = self.clock()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(user_id),
            "tenant_id": tenant_id,
            "token_type": token_type.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    # -- pending-2FA tokens ------------------------------------------------

    def issue_pending(self, user: User, *, remember_me: bool = False) -> str:
        payload = self._claims(
            TokenType.PENDING_2FA, user.id, user.tenant_id, self.pending_ttl
        )
        payload.update(
            {"userId": user.id, "is2FASession": True, "remember_me": bool(remember_me)}
        )
        return self._encode_jwt(payload)

    def verify_pending(self, token: str) -> Optional[PendingSession]:
        payload = self._decode_jwt(token)
        if not payload:
            return None
        if payload.get("token_type") != TokenType.PENDING_2FA.value:
            return None
        if payload.get("is2FASession") is not True:
            return None
        try:
            user_id = int(payload["sub"])
            tenant_id = int(payload.get("tenant_id"))
        except (KeyError, TypeError, ValueError):
            return None
        jti = payload.get("jti")
        if not jti:
            return None
        return PendingSession(
            user_id=user_id,
            tenant_id=tenant_id,
            remember_me=bool(payload.get("remember_me", False)),
            jti=str(jti),
            issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    # -- final session tokens ----------------------------------------------

    def issue_final(self, user: User, *, remember_me: bool = False) -> IssuedTokens:
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_minutes = (
            self.settings.remember_me_refresh_ttl_minutes
            if remember_me
            else self.settings.refresh_token_ttl_minutes
        )
        refresh_ttl = timedelta(minutes=refresh_minutes)

        access = self._claims(TokenType.ACCESS, user.id, user.tenant_id, access_ttl)
        access["role"] = user.role
        refresh = self._claims(TokenType.REFRESH, user.id, user.tenant_id, refresh_ttl)
        return IssuedTokens(
            access_token=self._encode_jwt(access),
            refresh_token=self._encode_jwt(refresh),
            expires_in=int(access_ttl.total_seconds()),
            refresh_expires_in=int(refresh_ttl.total_seconds()),
        )

    def verify_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify_final(token, TokenType.ACCESS)

    def verify_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify_final(token, TokenType.REFRESH)

    def _verify_final(
        self, token: str, expected: TokenType
    ) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload:
            return None
        if payload.get("token_type") != expected.value or payload.get("is2FASession"):
            return None
        return payload
