from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from meterauth.config import Settings, get_settings, reset_settings_cache
from meterauth.logging import get_logger
from meterauth.service.account import AccountService
from meterauth.service.audit import AuthLoggingService
from meterauth.service.clock import Clock, utcnow
from meterauth.service.delivery import CodeDeliveryService
from meterauth.service.email import EmailService
from meterauth.service.login import ConsumedSessionLedger, LoginOrchestrator
from meterauth.service.password_reset import PasswordResetOrchestrator
from meterauth.service.passwords import PasswordService, PasswordValidator
from meterauth.service.session_tokens import SessionTokenCodec
from meterauth.service.sms import SmsService
from meterauth.service.tokens import TokenService
from meterauth.service.two_factor import TwoFactorService
from meterauth.storage.memory import MemoryStore
from meterauth.storage.postgres import PostgresStore
from meterauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Clock = utcnow):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            mfa_key = self.settings.effective_mfa_secret_key
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under test so no client is bound to a finished loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and pending-2FA redemption; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "consumed 2FA sessions are tracked per process only."
                ),
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = SmsService(
            webhook_url=self.settings.sms_webhook_url,
            webhook_token=self.settings.sms_webhook_token,
            sender_name=self.settings.email_from_name,
        )
        self.delivery = CodeDeliveryService(
            email=self.email,
            sms=self.sms,
            expires_minutes=self.settings.otp_ttl_minutes,
        )

        self.passwords = PasswordService(self.store)
        self.validator = PasswordValidator(min_length=self.settings.password_min_length)
        self.codec = SessionTokenCodec(self.settings, clock=clock)
        self.tokens = TokenService(self.store, self.settings, clock=clock)
        self.two_factor = TwoFactorService(self.store, self.settings, clock=clock)
        self.audit = AuthLoggingService(self.store, clock=clock)
        self.ledger = ConsumedSessionLedger(self.cache, clock=clock)

        self.login = LoginOrchestrator(
            self.store,
            self.settings,
            passwords=self.passwords,
            two_factor=self.two_factor,
            audit=self.audit,
            codec=self.codec,
            ledger=self.ledger,
            delivery=self.delivery,
            clock=clock,
        )
        self.password_reset = PasswordResetOrchestrator(
            self.store,
            self.settings,
            tokens=self.tokens,
            passwords=self.passwords,
            validator=self.validator,
            audit=self.audit,
            email=self.email,
            clock=clock,
        )
        self.account = AccountService(
            self.store,
            passwords=self.passwords,
            validator=self.validator,
            two_factor=self.two_factor,
            tokens=self.tokens,
            audit=self.audit,
            codec=self.codec,
            delivery=self.delivery,
            clock=clock,
        )

        # key -> (tokens, last refill, window seconds)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        asyncio.run(cache.close())
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                # connection may already be gone
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


def _prune_idle_buckets(
    buckets: Dict[str, Tuple[float, datetime, int]], now: datetime
) -> None:
    # A bucket untouched for a full window has refilled and matches a fresh one
    for stale in [
        key
        for key, (_, last_ts, window) in buckets.items()
        if (now - last_ts).total_seconds() >= window
    ]:
        del buckets[stale]


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket throttle backed by Redis, or by process memory as a fallback.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )

    now = runtime.clock()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        _prune_idle_buckets(runtime._local_rate_limits, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(
            key, (float(limit), now, window_seconds)
        )
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        reset_seconds = (
            int((cost - tokens) / refill_rate) + 1 if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
