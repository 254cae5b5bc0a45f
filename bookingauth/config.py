from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookingauth.logging import get_logger

logger = get_logger(__name__)

# HMAC-SHA256 keys shorter than this are trivially brute-forced offline
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bookingauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process stores and other deterministic testing behaviors.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("bookingauth", "JWT_ISSUER")
    jwt_audience: str = env_field("booking-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30,
        "JWT_LEEWAY_SECONDS",
        description="Allowance for clock skew across nodes when checking exp",
        ge=0,
    )
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL; used for both login and refresh",
        gt=0,
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL, also the session record TTL",
        gt=0,
    )
    otp_ttl_minutes: int = env_field(15, "OTP_TTL_MINUTES", gt=0)
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    cache_operation_timeout_seconds: float = env_field(
        5.0,
        "CACHE_OPERATION_TIMEOUT_SECONDS",
        description="Upper bound for a single session/OTP store round trip",
        gt=0,
    )
    revoke_sessions_on_password_reset: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_RESET"
    )
    # OTP delivery; when smtp_host is unset the notifier only logs
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Event Booking", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        if not env_file_values:
            logger.info("env_file_missing", message="using process environment only")
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value or not isinstance(value, str):
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @property
    def session_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


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
