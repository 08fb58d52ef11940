from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from meterauth.logging import get_logger
from meterauth.storage.crypto import SecretCipher
from meterauth.storage.errors import ConstraintViolation, SchemaMissingError
from meterauth.storage.models import (
    AuditEvent,
    BackupCode,
    OtpChallenge,
    ResetToken,
    TwoFactorMethod,
    User,
    UserTwoFactorMethod,
    _utcnow,
)

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "user_2fa_methods",
    "user_2fa_backup_codes",
    "otp_challenges",
    "password_reset_tokens",
    "auth_logs",
)


class PostgresStore:
    """Postgres-backed store for users, second factors, reset tokens and audit logs."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissingError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        permissions = row.get("permissions") or {}
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        return User(
            id=int(row["id"]),
            email=row["email"],
            tenant_id=int(row.get("tenant_id") or 1),
            name=row.get("name"),
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            permissions=permissions,
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _method_from_row(row: Dict[str, Any]) -> UserTwoFactorMethod:
        return UserTwoFactorMethod(
            user_id=int(row["user_id"]),
            method_type=TwoFactorMethod(row["method_type"]),
            is_enabled=bool(row.get("is_enabled", True)),
            secret_key=row.get("secret_key"),
            phone_number=row.get("phone_number"),
            created_at=row.get("created_at") or _utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> OtpChallenge:
        return OtpChallenge(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            method_type=TwoFactorMethod(row["method_type"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts") or 0),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _reset_token_from_row(row: Dict[str, Any]) -> ResetToken:
        return ResetToken(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            is_used=bool(row.get("is_used", False)),
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEvent(
            id=int(row["id"]),
            user_id=row.get("user_id"),
            event_type=row["event_type"],
            status=row["status"],
            details=details,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, name, tenant_id, role, is_active, permissions)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email.strip().lower(),
                        name,
                        tenant_id,
                        role,
                        is_active,
                        json.dumps(permissions or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _write_password(
        self,
        conn,
        user_id: int,
        password_hash: str,
        password_algo: str,
        changed_at: Optional[datetime],
    ) -> None:
        stamp = changed_at or _utcnow()
        conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = EXCLUDED.last_updated_at
            """,
            (user_id, password_hash, password_algo, stamp),
        )
        if changed_at is not None:
            conn.execute(
                "UPDATE app_user SET password_changed_at = %s WHERE id = %s",
                (changed_at, user_id),
            )

    def save_password(
        self,
        user_id: int,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                self._write_password(
                    conn, user_id, password_hash, password_algo, changed_at
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def record_failed_login(
        self, user_id: int, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lock_until, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def reset_failed_logins(
        self, user_id: int, *, login_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0,
                    locked_until = NULL,
                    last_login_at = COALESCE(%s, last_login_at)
                WHERE id = %s
                """,
                (login_at, user_id),
            )

    # -- second factors ----------------------------------------------------

    def list_two_factor_methods(
        self, user_id: int, *, enabled_only: bool = True
    ) -> List[UserTwoFactorMethod]:
        query = "SELECT * FROM user_2fa_methods WHERE user_id = %s"
        if enabled_only:
            query += " AND is_enabled = TRUE"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._method_from_row(row) for row in rows]

    def get_two_factor_method(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[UserTwoFactorMethod]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_2fa_methods WHERE user_id = %s AND method_type = %s",
                (user_id, TwoFactorMethod(method).value),
            ).fetchone()
        return self._method_from_row(row) if row else None

    def get_two_factor_secret(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT secret_key FROM user_2fa_methods
                WHERE user_id = %s AND method_type = %s AND is_enabled = TRUE
                """,
                (user_id, TwoFactorMethod(method).value),
            ).fetchone()
        if not row:
            return None
        return self._cipher.decrypt(row.get("secret_key"))

    def upsert_two_factor_method(
        self,
        user_id: int,
        method: TwoFactorMethod,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserTwoFactorMethod:
        stamp = now or _utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_2fa_methods
                        (user_id, method_type, secret_key, phone_number, is_enabled, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                    ON CONFLICT (user_id, method_type) DO UPDATE
                    SET secret_key = EXCLUDED.secret_key,
                        phone_number = EXCLUDED.phone_number,
                        is_enabled = TRUE,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (
                        user_id,
                        TwoFactorMethod(method).value,
                        self._cipher.encrypt(secret),
                        phone_number,
                        stamp,
                        stamp,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._method_from_row(row)

    def disable_two_factor_method(
        self, user_id: int, method: TwoFactorMethod, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_2fa_methods
                SET is_enabled = FALSE, secret_key = NULL, updated_at = %s
                WHERE user_id = %s AND method_type = %s AND is_enabled = TRUE
                RETURNING id
                """,
                (now or _utcnow(), user_id, TwoFactorMethod(method).value),
            ).fetchone()
        return row is not None

    def replace_backup_codes(
        self, user_id: int, code_hashes: Iterable[str], *, now: Optional[datetime] = None
    ) -> int:
        stamp = now or _utcnow()
        hashes = list(code_hashes)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_2fa_backup_codes WHERE user_id = %s", (user_id,)
            )
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO user_2fa_backup_codes (user_id, code_hash, created_at)
                    VALUES (%s, %s, %s)
                    """,
                    [(user_id, code_hash, stamp) for code_hash in hashes],
                )
        return len(hashes)

    def consume_backup_code(
        self, user_id: int, code_hash: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_2fa_backup_codes
                SET is_used = TRUE, used_at = %s
                WHERE id = (
                    SELECT id FROM user_2fa_backup_codes
                    WHERE user_id = %s AND code_hash = %s AND is_used = FALSE
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (now or _utcnow(), user_id, code_hash),
            ).fetchone()
        return row is not None

    def backup_code_status(self, user_id: int, code_hash: str) -> Optional[BackupCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_2fa_backup_codes
                WHERE user_id = %s AND code_hash = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, code_hash),
            ).fetchone()
        if not row:
            return None
        return BackupCode(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            code_hash=row["code_hash"],
            is_used=bool(row["is_used"]),
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or _utcnow(),
        )

    def count_unused_backup_codes(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS remaining FROM user_2fa_backup_codes
                WHERE user_id = %s AND is_used = FALSE
                """,
                (user_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0

    def delete_backup_codes(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_2fa_backup_codes WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount or 0

    def store_otp_challenge(
        self,
        user_id: int,
        method: TwoFactorMethod,
        code_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> OtpChallenge:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_challenges (user_id, method_type, code_hash, expires_at, attempts, created_at)
                VALUES (%s, %s, %s, %s, 0, %s)
                ON CONFLICT (user_id, method_type) DO UPDATE
                SET code_hash = EXCLUDED.code_hash,
                    expires_at = EXCLUDED.expires_at,
                    attempts = 0,
                    created_at = EXCLUDED.created_at
                RETURNING *
                """,
                (
                    user_id,
                    TwoFactorMethod(method).value,
                    code_hash,
                    expires_at,
                    now or _utcnow(),
                ),
            ).fetchone()
        return self._challenge_from_row(row)

    def get_otp_challenge(
        self, user_id: int, method: TwoFactorMethod
    ) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenges WHERE user_id = %s AND method_type = %s",
                (user_id, TwoFactorMethod(method).value),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def claim_otp_attempt(
        self, challenge_id: int, max_attempts: int
    ) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenges
                SET attempts = attempts + 1
                WHERE id = %s AND attempts < %s
                RETURNING *
                """,
                (challenge_id, max_attempts),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def delete_otp_challenge(self, challenge_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM otp_challenges WHERE id = %s RETURNING id", (challenge_id,)
            ).fetchone()
        return row is not None

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE password_reset_tokens
                    SET is_used = TRUE, used_at = %s
                    WHERE user_id = %s AND is_used = FALSE
                    """,
                    (stamp, user_id),
                )
                row = conn.execute(
                    """
                    INSERT INTO password_reset_tokens (user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token_hash, expires_at, stamp),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._reset_token_from_row(row)

    def get_reset_token(self, token_hash: str) -> Optional[ResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._reset_token_from_row(row) if row else None

    def invalidate_reset_tokens(
        self, user_id: int, *, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE password_reset_tokens
                SET is_used = TRUE, used_at = %s
                WHERE user_id = %s AND is_used = FALSE
                """,
                (now or _utcnow(), user_id),
            )
            return cur.rowcount or 0

    def redeem_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        *,
        now: datetime,
    ) -> Optional[int]:
        """Mark the token used and store the new password in one transaction.

        Returns the owning user id, or None when the token is unknown, used
        or expired. Nothing is written in the None case.
        """
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE password_reset_tokens
                    SET is_used = TRUE, used_at = %s
                    WHERE token_hash = %s AND is_used = FALSE AND expires_at > %s
                    RETURNING user_id
                    """,
                    (now, token_hash, now),
                ).fetchone()
                if not row:
                    return None
                user_id = int(row["user_id"])
                self._write_password(conn, user_id, password_hash, password_algo, now)
                conn.execute(
                    """
                    UPDATE password_reset_tokens
                    SET is_used = TRUE, used_at = %s
                    WHERE user_id = %s AND is_used = FALSE
                    """,
                    (now, user_id),
                )
        return user_id

    def purge_expired_reset_tokens(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_tokens WHERE expires_at < %s",
                (older_than,),
            )
            return cur.rowcount or 0

    # -- audit trail -------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_logs (user_id, event_type, status, details, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    event.user_id,
                    event.event_type,
                    event.status,
                    json.dumps(event.details, default=str),
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            ).fetchone()
        return self._audit_from_row(row)

    def count_audit_events(
        self,
        event_type: str,
        *,
        since: datetime,
        user_id: Optional[int] = None,
        details_match: Optional[Dict[str, Any]] = None,
    ) -> int:
        clauses = ["event_type = %s", "created_at >= %s"]
        params: List[Any] = [event_type, since]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if details_match:
            clauses.append("details @> %s::jsonb")
            params.append(json.dumps(details_match))
        query = "SELECT COUNT(*) AS total FROM auth_logs WHERE " + " AND ".join(clauses)
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return int(row["total"]) if row else 0

    def list_audit_events(
        self,
        *,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        query = "SELECT * FROM auth_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._audit_from_row(row) for row in rows]
