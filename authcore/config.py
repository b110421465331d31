from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access-control service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, optional Redis).",
    )
    # Signing material; absence is reported when a token is first issued
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str | None = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str | None = env_field("authcore-clients", "JWT_AUDIENCE")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting authenticator secrets at rest (defaults to JWT_SECRET)",
    )
    # Step-up verification
    authenticator_issuer: str = env_field("AuthManagement", "AUTHENTICATOR_ISSUER")
    step_up_ttl_minutes: int = env_field(
        10, "STEP_UP_TTL_MINUTES", description="Lifetime of a pending two-factor login"
    )
    two_factor_code_ttl_minutes: int = env_field(5, "TWO_FACTOR_CODE_TTL_MINUTES")
    resend_cooldown_seconds: int = env_field(60, "RESEND_COOLDOWN_SECONDS")
    resend_daily_limit: int = env_field(5, "RESEND_DAILY_LIMIT")
    freshness_tolerance_seconds: float = env_field(1.0, "FRESHNESS_TOLERANCE_SECONDS")
    # Identity store lockout policy
    lockout_max_failed_attempts: int = env_field(5, "LOCKOUT_MAX_FAILED_ATTEMPTS")
    lockout_minutes: int = env_field(5, "LOCKOUT_MINUTES")
    confirmation_token_ttl_hours: int = env_field(24, "CONFIRMATION_TOKEN_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    rbac_union_departments: bool = env_field(
        False,
        "RBAC_UNION_DEPARTMENTS",
        description="Scope non-SuperAdmin grants to every assigned department instead of the first one",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthManagement", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("jwt_secret")
    @classmethod
    def _warn_short_secret(cls, value: str | None) -> str | None:
        if value and len(value) < 32:
            logger.warning("jwt_secret_short", length=len(value))
        return value

    @field_validator(
        "resend_cooldown_seconds",
        "resend_daily_limit",
        "lockout_max_failed_attempts",
        "step_up_ttl_minutes",
        "two_factor_code_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


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
