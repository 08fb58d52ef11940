from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from meterauth.logging import get_logger
from meterauth.storage.crypto import SecretCipher
from meterauth.storage.errors import ConstraintViolation
from meterauth.storage.models import (
    AuditEvent,
    BackupCode,
    OtpChallenge,
    ResetToken,
    TwoFactorMethod,
    User,
    UserAuthCredential,
    UserTwoFactorMethod,
    _utcnow,
)


class MemoryStore:
    """In-process backing store used for tests and local development.

    Every compound read-modify-write runs under one re-entrant lock, which
    gives the same atomicity the Postgres store gets from single statements.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, UserAuthCredential] = {}
        self.two_factor_methods: Dict[tuple[int, TwoFactorMethod], UserTwoFactorMethod] = {}
        self.backup_codes: Dict[int, List[BackupCode]] = {}
        self.otp_challenges: Dict[tuple[int, TwoFactorMethod], OtpChallenge] = {}
        self.reset_tokens: Dict[int, ResetToken] = {}
        self.audit_events: List[AuditEvent] = []
        self._seq: Dict[str, int] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    def _next_id(self, name: str) -> int:
        with self._data_lock:
            value = self._seq.get(name, 0) + 1
            self._seq[name] = value
            return value

    def verify_connection(self) -> None:
        return None

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        tenant_id: int = 1,
        role: str = "user",
        is_active: bool = True,
        permissions: Optional[Dict[str, Any]] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_id("user"),
                email=normalized,
                tenant_id=tenant_id,
                name=name,
                role=role,
                is_active=is_active,
                permissions=dict(permissions or {}),
            )
            self.users[user.id] = user
            return copy.copy(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.copy(user) if user else None

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return copy.copy(user)

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return copy.copy(user)

    def save_password(
        self,
        user_id: int,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                last_updated_at=changed_at or _utcnow(),
            )
            if changed_at is not None:
                user.password_changed_at = changed_at

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred or not cred.password_hash:
                return None
            return cred.password_hash, cred.password_algo or "argon2id"

    def record_failed_login(
        self, user_id: int, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = lock_until
            return copy.copy(user)

    def reset_failed_logins(
        self, user_id: int, *, login_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = 0
            user.locked_until = None
            if login_at is not None:
                user.last_login_at = login_at

    # -- second factors ----------------------------------------------------

    def list_two_factor_methods(
        self, user_id: int, *, enabled_only: bool = True
    ) -> List[UserTwoFactorMethod]:
        with self._data_lock:
            rows = [
                copy.copy(m)
                for (uid, _), m in self.two_factor_methods.items()
                if uid == user_id and (m.is_enabled or not enabled_only)
            ]
        return sorted(rows, key=lambda m: m.created_at)

    def get_two_factor_method(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[UserTwoFactorMethod]:
        with self._data_lock:
            row = self.two_factor_methods.get((user_id, TwoFactorMethod(method)))
            return copy.copy(row) if row else None

    def get_two_factor_secret(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[str]:
        with self._data_lock:
            row = self.two_factor_methods.get((user_id, TwoFactorMethod(method)))
            if not row or not row.is_enabled:
                return None
            return self._cipher.decrypt(row.secret_key)

    def upsert_two_factor_method(
        self,
        user_id: int,
        method: TwoFactorMethod,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserTwoFactorMethod:
        method = TwoFactorMethod(method)
        stamp = now or _utcnow()
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            key = (user_id, method)
            existing = self.two_factor_methods.get(key)
            row = UserTwoFactorMethod(
                user_id=user_id,
                method_type=method,
                is_enabled=True,
                secret_key=self._cipher.encrypt(secret),
                phone_number=phone_number,
                created_at=existing.created_at if existing else stamp,
                updated_at=stamp,
            )
            self.two_factor_methods[key] = row
            return copy.copy(row)

    def disable_two_factor_method(
        self, user_id: int, method: TwoFactorMethod, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            row = self.two_factor_methods.get((user_id, TwoFactorMethod(method)))
            if not row or not row.is_enabled:
                return False
            row.is_enabled = False
            row.secret_key = None
            row.updated_at = now or _utcnow()
            return True

    def replace_backup_codes(
        self, user_id: int, code_hashes: Iterable[str], *, now: Optional[datetime] = None
    ) -> int:
        stamp = now or _utcnow()
        with self._data_lock:
            codes = [
                BackupCode(
                    id=self._next_id("backup_code"),
                    user_id=user_id,
                    code_hash=code_hash,
                    created_at=stamp,
                )
                for code_hash in code_hashes
            ]
            self.backup_codes[user_id] = codes
            return len(codes)

    def consume_backup_code(
        self, user_id: int, code_hash: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            for code in self.backup_codes.get(user_id, []):
                if code.code_hash == code_hash and not code.is_used:
                    code.is_used = True
                    code.used_at = now or _utcnow()
                    return True
            return False

    def backup_code_status(self, user_id: int, code_hash: str) -> Optional[BackupCode]:
        with self._data_lock:
            for code in self.backup_codes.get(user_id, []):
                if code.code_hash == code_hash:
                    return copy.copy(code)
            return None

    def count_unused_backup_codes(self, user_id: int) -> int:
        with self._data_lock:
            return sum(1 for c in self.backup_codes.get(user_id, []) if not c.is_used)

    def delete_backup_codes(self, user_id: int) -> int:
        with self._data_lock:
            return len(self.backup_codes.pop(user_id, []))

    def store_otp_challenge(
        self,
        user_id: int,
        method: TwoFactorMethod,
        code_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> OtpChallenge:
        method = TwoFactorMethod(method)
        with self._data_lock:
            challenge = OtpChallenge(
                id=self._next_id("otp"),
                user_id=user_id,
                method_type=method,
                code_hash=code_hash,
                expires_at=expires_at,
                attempts=0,
                created_at=now or _utcnow(),
            )
            # one live challenge per (user, method)
            self.otp_challenges[(user_id, method)] = challenge
            return copy.copy(challenge)

    def get_otp_challenge(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[OtpChallenge]:
        with self._data_lock:
            challenge = self.otp_challenges.get((user_id, TwoFactorMethod(method)))
            return copy.copy(challenge) if challenge else None

    def claim_otp_attempt(
        self, challenge_id: int, max_attempts: int
    ) -> Optional[OtpChallenge]:
        with self._data_lock:
            for challenge in self.otp_challenges.values():
                if challenge.id == challenge_id:
                    if challenge.attempts >= max_attempts:
                        return None
                    challenge.attempts += 1
                    return copy.copy(challenge)
            return None

    def delete_otp_challenge(self, challenge_id: int) -> bool:
        with self._data_lock:
            for key, challenge in list(self.otp_challenges.items()):
                if challenge.id == challenge_id:
                    del self.otp_challenges[key]
                    return True
            return False

    # -- password reset tokens ---------------------------------------------

    def store_reset_token(
        self,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> ResetToken:
        stamp = now or _utcnow()
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if any(t.token_hash == token_hash for t in self.reset_tokens.values()):
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self._invalidate_tokens_locked(user_id, stamp)
            token = ResetToken(
                id=self._next_id("reset_token"),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=stamp,
            )
            self.reset_tokens[token.id] = token
            return copy.copy(token)

    def get_reset_token(self, token_hash: str) -> Optional[ResetToken]:
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return copy.copy(token) if token else None

    def _invalidate_tokens_locked(self, user_id: int, now: datetime) -> int:
        count = 0
        for token in self.reset_tokens.values():
            if token.user_id == user_id and not token.is_used:
                token.is_used = True
                token.used_at = now
                count += 1
        return count

    def invalidate_reset_tokens(
        self, user_id: int, *, now: Optional[datetime] = None
    ) -> int:
        with self._data_lock:
            return self._invalidate_tokens_locked(user_id, now or _utcnow())

    def redeem_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        *,
        now: datetime,
    ) -> Optional[int]:
        """Mark the token used and store the new password as one step.

        Returns the owning user id, or None when the token is unknown, used
        or expired. Nothing is written in the None case.
        """
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash),
                None,
            )
            if token is None or token.is_used or token.expires_at <= now:
                return None
            if token.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": token.user_id})
            token.is_used = True
            token.used_at = now
            self.save_password(
                token.user_id, password_hash, password_algo, changed_at=now
            )
            self._invalidate_tokens_locked(token.user_id, now)
            return token.user_id

    def purge_expired_reset_tokens(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.reset_tokens.items() if t.expires_at < older_than]
            for tid in stale:
                del self.reset_tokens[tid]
            return len(stale)

    # -- audit trail -------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            stored = copy.deepcopy(event)
            stored.id = self._next_id("audit")
            self.audit_events.append(stored)
            return copy.deepcopy(stored)

    def count_audit_events(
        self,
        event_type: str,
        *,
        since: datetime,
        user_id: Optional[int] = None,
        details_match: Optional[Dict[str, Any]] = None,
    ) -> int:
        match = details_match or {}
        with self._data_lock:
            return sum(
                1
                for e in self.audit_events
                if e.event_type == event_type
                and e.created_at >= since
                and (user_id is None or e.user_id == user_id)
                and all(e.details.get(k) == v for k, v in match.items())
            )

    def list_audit_events(
        self,
        *,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditEvent]:
        with self._data_lock:
            rows = [
                copy.deepcopy(e)
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (event_type is None or e.event_type == event_type)
            ]
        rows.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
        return rows[:limit]
