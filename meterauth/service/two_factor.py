from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from io import BytesIO
from typing import Iterable, List, Optional, Protocol

import pyotp
import qrcode

from meterauth.config import Settings
from meterauth.logging import get_logger
from meterauth.service.clock import Clock, ensure_aware, utcnow
from meterauth.storage.models import (
    BackupCode,
    OtpChallenge,
    TwoFactorMethod,
    UserTwoFactorMethod,
)

logger = get_logger(__name__)

OTP_DIGITS = 6
BACKUP_CODE_BYTES = 4
TOTP_VALID_WINDOW = 1


@dataclass(frozen=True)
class VerifyOutcome:
    """Result of checking one code against one method.

    ``attempts_remaining`` is only meaningful for email and SMS challenges.
    """

    valid: bool
    attempts_remaining: Optional[int] = None
    locked: bool = False


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    qr_code: str
    manual_entry_key: str
    otpauth_url: str


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime


class TwoFactorStore(Protocol):
    def list_two_factor_methods(
        self, user_id: int, *, enabled_only: bool = True
    ) -> List[UserTwoFactorMethod]: ...

    def get_two_factor_secret(self, user_id: int, method: TwoFactorMethod) -> Optional[str]: ...

    def replace_backup_codes(
        self, user_id: int, code_hashes: Iterable[str], *, now: Optional[datetime] = None
    ) -> int: ...

    def consume_backup_code(
        self, user_id: int, code_hash: str, *, now: Optional[datetime] = None
    ) -> bool: ...

    def backup_code_status(self, user_id: int, code_hash: str) -> Optional[BackupCode]: ...

    def store_otp_challenge(
        self,
        user_id: int,
        method: TwoFactorMethod,
        code_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> OtpChallenge: ...

    def get_otp_challenge(self, user_id: int, method: TwoFactorMethod) -> Optional[OtpChallenge]: ...

    def claim_otp_attempt(self, challenge_id: int, max_attempts: int) -> Optional[OtpChallenge]: ...

    def delete_otp_challenge(self, challenge_id: int) -> bool: ...


class TwoFactorService:
    """TOTP, emailed or texted one-time codes, and single-use backup codes.

    Only hashes of OTP and backup codes are stored. They are keyed with the
    configured pepper so a leaked table cannot be brute-forced offline.
    """

    def __init__(self, store: TwoFactorStore, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self._pepper = settings.effective_otp_pepper.encode()

    @property
    def max_attempts(self) -> int:
        return self.settings.otp_max_attempts

    def _hash_code(self, code: str) -> str:
        return hmac.new(self._pepper, code.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _normalize_code(code: str) -> str:
        return "".join((code or "").split())

    @staticmethod
    def _normalize_backup_code(code: str) -> str:
        return "".join((code or "").split()).replace("-", "").upper()

    def enabled_methods(self, user_id: int) -> List[TwoFactorMethod]:
        return [m.method_type for m in self.store.list_two_factor_methods(user_id)]

    # -- TOTP --------------------------------------------------------------

    def generate_totp_secret(self, account_name: str) -> TotpEnrollment:
        secret = pyotp.random_base32(length=32)
        issuer = self.settings.totp_issuer
        otpauth_url = pyotp.TOTP(secret).provisioning_uri(
            name=account_name, issuer_name=issuer
        )
        return TotpEnrollment(
            secret=secret,
            qr_code=self._render_qr(otpauth_url),
            manual_entry_key=secret,
            otpauth_url=otpauth_url,
        )

    @staticmethod
    def _render_qr(data: str) -> str:
        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode()
        return f"data:image/png;base64,{encoded}"

    def verify_totp_code(self, secret: str, code: str) -> bool:
        code = self._normalize_code(code)
        if not secret or not code.isdigit() or len(code) != OTP_DIGITS:
            return False
        try:
            return pyotp.TOTP(secret).verify(
                code, for_time=self.clock(), valid_window=TOTP_VALID_WINDOW
            )
        except (ValueError, TypeError):
            # malformed base32 secret
            logger.warning("totp_secret_invalid")
            return False

    def _verify_totp(self, user_id: int, code: str) -> VerifyOutcome:
        secret = self.store.get_two_factor_secret(user_id, TwoFactorMethod.TOTP)
        if not secret:
            logger.info("totp_not_enabled", user_id=user_id)
            return VerifyOutcome(valid=False)
        return VerifyOutcome(valid=self.verify_totp_code(secret, code))

    # -- email / SMS one-time codes ---------------------------------------

    def generate_otp(self) -> str:
        return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"

    def store_otp(
        self,
        user_id: int,
        method: TwoFactorMethod,
        code: str,
        *,
        expiry_minutes: Optional[int] = None,
    ) -> IssuedCode:
        method = TwoFactorMethod(method)
        if not method.is_challenge:
            raise ValueError(f"{method.value} does not use stored challenges")
        now = self.clock()
        minutes = expiry_minutes if expiry_minutes is not None else self.settings.otp_ttl_minutes
        expires_at = now + timedelta(minutes=minutes)
        self.store.store_otp_challenge(
            user_id, method, self._hash_code(code), expires_at, now=now
        )
        return IssuedCode(code=code, expires_at=expires_at)

    def issue_otp(self, user_id: int, method: TwoFactorMethod) -> IssuedCode:
        """Generate and store a fresh challenge, replacing any earlier one."""
        return self.store_otp(user_id, method, self.generate_otp())

    def _verify_otp(self, user_id: int, method: TwoFactorMethod, code: str) -> VerifyOutcome:
        challenge = self.store.get_otp_challenge(user_id, method)
        if challenge is None:
            return VerifyOutcome(valid=False, attempts_remaining=0, locked=False)
        if challenge.attempts >= self.max_attempts:
            return VerifyOutcome(valid=False, attempts_remaining=0, locked=True)
        if ensure_aware(challenge.expires_at) <= self.clock():
            return VerifyOutcome(valid=False, attempts_remaining=0, locked=False)

        # Count the attempt before comparing so concurrent guesses cannot share one
        claimed = self.store.claim_otp_attempt(challenge.id, self.max_attempts)
        if claimed is None:
            return VerifyOutcome(valid=False, attempts_remaining=0, locked=True)

        candidate = self._hash_code(self._normalize_code(code))
        if hmac.compare_digest(candidate, claimed.code_hash):
            if self.store.delete_otp_challenge(claimed.id):
                return VerifyOutcome(
                    valid=True, attempts_remaining=self.max_attempts, locked=False
                )
            # another request already redeemed this code
            return VerifyOutcome(valid=False, attempts_remaining=0, locked=False)

        remaining = max(0, self.max_attempts - claimed.attempts)
        locked = claimed.attempts >= self.max_attempts
        if locked:
            logger.warning("otp_challenge_locked", user_id=user_id, method=method.value)
        return VerifyOutcome(valid=False, attempts_remaining=remaining, locked=locked)

    # -- backup codes ------------------------------------------------------

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        total = count if count is not None else self.settings.backup_code_count
        return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(total)]

    def store_backup_codes(self, user_id: int, codes: Iterable[str]) -> int:
        """Replace the user's backup codes with hashes of ``codes``."""
        hashes = [self._hash_code(self._normalize_backup_code(c)) for c in codes]
        return self.store.replace_backup_codes(user_id, hashes, now=self.clock())

    def _verify_backup_code(self, user_id: int, code: str) -> VerifyOutcome:
        code_hash = self._hash_code(self._normalize_backup_code(code))
        if self.store.consume_backup_code(user_id, code_hash, now=self.clock()):
            logger.info("backup_code_consumed", user_id=user_id)
            return VerifyOutcome(valid=True)
        existing = self.store.backup_code_status(user_id, code_hash)
        if existing is not None and existing.is_used:
            logger.warning("backup_code_already_used", user_id=user_id)
        else:
            logger.info("backup_code_invalid", user_id=user_id)
        return VerifyOutcome(valid=False)

    # -- dispatch ----------------------------------------------------------

    def verify(self, user_id: int, method: TwoFactorMethod, code: str) -> VerifyOutcome:
        method = TwoFactorMethod(method)
        if method is TwoFactorMethod.TOTP:
            return self._verify_totp(user_id, code)
        if method is TwoFactorMethod.EMAIL_OTP or method is TwoFactorMethod.SMS_OTP:
            return self._verify_otp(user_id, method, code)
        if method is TwoFactorMethod.BACKUP_CODE:
            return self._verify_backup_code(user_id, code)
        raise ValueError(f"unsupported 2FA method: {method}")
