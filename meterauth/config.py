from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from meterauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/meterauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors and runtime resets",
    )
    environment: str = env_field(
        "production",
        "APP_ENV",
        description="'development' exposes internal error detail in 500 responses",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("meterauth", "JWT_ISSUER")
    jwt_audience: str = env_field("meterauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    remember_me_refresh_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REMEMBER_ME_REFRESH_TTL_MINUTES",
        description="Refresh token TTL when the user asked to be remembered",
    )
    pending_session_ttl_minutes: int = env_field(10, "PENDING_SESSION_TTL_MINUTES")

    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")

    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_pepper: str | None = env_field(
        None, "OTP_PEPPER", description="HMAC key for OTP and backup code hashes"
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    totp_issuer: str = env_field("MeterIt Pro", "TOTP_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )

    reset_token_ttl_hours: int = env_field(24, "RESET_TOKEN_TTL_HOURS")
    reset_rate_limit_count: int = env_field(3, "RESET_RATE_LIMIT_COUNT")
    reset_rate_limit_window_minutes: int = env_field(
        60, "RESET_RATE_LIMIT_WINDOW_MINUTES"
    )
    reset_token_retention_days: int = env_field(7, "RESET_TOKEN_RETENTION_DAYS")
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")

    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("MeterIt Pro", "EMAIL_FROM_NAME")
    sms_webhook_url: str | None = env_field(None, "SMS_WEBHOOK_URL")
    sms_webhook_token: str | None = env_field(None, "SMS_WEBHOOK_TOKEN")

    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(20, "MFA_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(10, "RESET_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://127.0.0.1:3000", "CORS_ALLOW_ORIGINS"
    )
    default_tenant_id: int = env_field(1, "DEFAULT_TENANT_ID")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "production").strip().lower()

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Every instance must sign with the same key outside tests
        if not info.data.get("test_mode"):
            raise ValueError("JWT_SECRET is required unless TEST_MODE is enabled")
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; using an ephemeral secret",
        )
        return secrets.token_urlsafe(64)

    @property
    def is_development(self) -> bool:
        return self.environment in {"development", "dev", "local"}

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def effective_otp_pepper(self) -> str:
        return self.otp_pepper or self.jwt_secret

    @property
    def effective_mfa_secret_key(self) -> str:
        return self.mfa_secret_key or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
