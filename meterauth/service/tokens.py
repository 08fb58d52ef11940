from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from meterauth.config import Settings
from meterauth.logging import get_logger
from meterauth.service.clock import Clock, ensure_aware, utcnow
from meterauth.storage.models import ResetToken

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32


@dataclass(frozen=True)
class ResetTokenGrant:
    """A freshly minted reset token; ``token`` is only ever sent to the user."""

    token: str
    token_hash: str
    expires_at: datetime


class ResetTokenStore(Protocol):
    def store_reset_token(
        self, user_id: int, token_hash: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> ResetToken: ...

    def get_reset_token(self, token_hash: str) -> Optional[ResetToken]: ...

    def invalidate_reset_tokens(self, user_id: int, *, now: Optional[datetime] = None) -> int: ...

    def redeem_reset_token(
        self, token_hash: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> Optional[int]: ...

    def purge_expired_reset_tokens(self, older_than: datetime) -> int: ...


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class TokenService:
    """Lifecycle of password reset tokens: mint, store, check, redeem, purge."""

    def __init__(self, store: ResetTokenStore, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def generate_reset_token(self) -> ResetTokenGrant:
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        return ResetTokenGrant(
            token=token,
            token_hash=hash_reset_token(token),
            expires_at=self.clock() + timedelta(hours=self.settings.reset_token_ttl_hours),
        )

    def store_reset_token(self, user_id: int, grant: ResetTokenGrant) -> ResetToken:
        """Persist the hash; earlier unused tokens for the user stop working."""
        record = self.store.store_reset_token(
            user_id, grant.token_hash, grant.expires_at, now=self.clock()
        )
        logger.info(
            "reset_token_stored",
            user_id=user_id,
            token_prefix=grant.token[:8],
            expires_at=grant.expires_at.isoformat(),
        )
        return record

    def validate_reset_token(
        self, token: str, user_id: Optional[int] = None
    ) -> Optional[ResetToken]:
        """Return the live record for ``token`` or None.

        Unknown, used and expired tokens are indistinguishable to the caller.
        """
        if not token:
            return None
        record = self.store.get_reset_token(hash_reset_token(token))
        if record is None:
            return None
        if not hmac.compare_digest(record.token_hash, hash_reset_token(token)):
            return None
        if user_id is not None and record.user_id != user_id:
            return None
        if record.is_used:
            logger.info("reset_token_reused", user_id=record.user_id)
            return None
        if ensure_aware(record.expires_at) <= self.clock():
            logger.info("reset_token_expired", user_id=record.user_id)
            return None
        return record

    def redeem_reset_token(
        self, token: str, password_hash: str, password_algo: str
    ) -> Optional[int]:
        """Consume ``token`` and set the password atomically; returns the user id."""
        return self.store.redeem_reset_token(
            hash_reset_token(token), password_hash, password_algo, now=self.clock()
        )

    def invalidate_user_tokens(self, user_id: int) -> int:
        count = self.store.invalidate_reset_tokens(user_id, now=self.clock())
        if count:
            logger.info("reset_tokens_invalidated", user_id=user_id, count=count)
        return count

    def cleanup_expired_tokens(self) -> int:
        cutoff = self.clock() - timedelta(days=self.settings.reset_token_retention_days)
        removed = self.store.purge_expired_reset_tokens(cutoff)
        logger.info("reset_tokens_purged", count=removed, cutoff=cutoff.isoformat())
        return removed
