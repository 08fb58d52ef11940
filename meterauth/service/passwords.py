from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from meterauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = "!@#$%^&*"


@dataclass
class PasswordValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordValidator:
    """Complexity rules applied to every new or reset password."""

    def __init__(self, min_length: int = 12) -> None:
        self.min_length = min_length
        self._special = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

    def validate(self, password: str, email: Optional[str] = None) -> PasswordValidation:
        errors: List[str] = []
        password = password or ""
        if len(password) < self.min_length:
            errors.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            errors.append(
                f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
            )
        if not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", password):
            errors.append("Password must contain at least one number")
        if not self._special.search(password):
            errors.append("Password must contain at least one special character")
        if email and self._contains_email(password, email):
            errors.append("Password cannot contain your email address")
        return PasswordValidation(is_valid=not errors, errors=errors)

    @staticmethod
    def _contains_email(password: str, email: str) -> bool:
        lowered = password.lower()
        email = email.strip().lower()
        local = email.split("@", 1)[0]
        if email and email in lowered:
            return True
        # very short local parts would reject ordinary words
        return len(local) >= 3 and local in lowered


class CredentialStore(Protocol):
    def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]: ...

    def save_password(
        self,
        user_id: int,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None: ...


class PasswordService:
    """argon2id hashing and verification against the credential table."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when no account matches so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("meterauth-timing-equalizer")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def burn_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except VerificationError:
            pass

    def save_password(
        self, user_id: int, password: str, *, changed_at: Optional[datetime] = None
    ) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo, changed_at=changed_at)
