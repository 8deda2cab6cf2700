from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shopauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Environment-sourced settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/shopauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/shopauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; echoes one-time email tokens in responses.",
    )

    # Signing. Access and refresh tokens use distinct secrets.
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("ecommerce-api", "JWT_ISSUER")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated past a token's exp claim",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Deactivate a refresh token on use and return a new pair",
    )

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")

    # Revocation cache
    cache_operation_timeout_seconds: float = env_field(
        2.0, "CACHE_OPERATION_TIMEOUT_SECONDS"
    )
    cache_socket_timeout_seconds: float = env_field(5.0, "CACHE_SOCKET_TIMEOUT_SECONDS")
    revocation_fail_open: bool = env_field(
        True,
        "REVOCATION_FAIL_OPEN",
        description="Treat tokens as not revoked when the revocation cache is unreachable",
    )

    # Cookie session overlay
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Account lifecycle
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

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

    @field_validator("jwt_secret", "jwt_refresh_secret", "session_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                raise ValueError(f"{info.field_name} must be at least 32 characters")
            return value
        # Per-process secret: tokens and sessions do not survive a restart
        logger.warning(
            "secret_generated",
            field=info.field_name,
            message="No secret configured; generated an ephemeral one",
        )
        return secrets.token_urlsafe(64)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "lockout_threshold",
        "lockout_duration_minutes",
        "session_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("cache_operation_timeout_seconds", "cache_socket_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float, info) -> float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


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
