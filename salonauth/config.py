from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from salonauth.logging import get_logger

logger = get_logger(__name__)


DEFAULT_CSRF_EXCLUDE_PATHS = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/refresh",
    "/api/v1/auth/forgot-password",
    "/api/v1/auth/reset-password",
    "/api/v1/auth/email-verification/confirm",
    "/api/v1/auth/email-verification/send",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/salon", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON snapshot file for the in-memory store; unset keeps state in process only",
    )
    two_factor_encryption_key: str | None = env_field(
        None,
        "TWO_FACTOR_ENCRYPTION_KEY",
        description="Key material used to encrypt persisted TOTP secrets (defaults to JWT_SECRET)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable deterministic testing behaviors such as in-process rate limiting",
    )
    app_name: str = env_field("Salon Reservations", "APP_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Access tokens and sessions
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("salonauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1, description="Access token TTL in minutes"
    )
    session_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_TTL_MINUTES",
        ge=1,
        description="Lifetime of a session (and its refresh token) in minutes",
    )
    remember_me_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_TTL_DAYS",
        ge=1,
        description="Session lifetime in days when the user asked to be remembered",
    )
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        ge=60,
        description="How often expired sessions are purged from storage",
    )

    # Lockout
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS", ge=1)
    lock_duration_minutes: int = env_field(30, "LOCK_DURATION_MINUTES", ge=1)

    # One-time tokens
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    token_request_throttle_minutes: int = env_field(
        5,
        "TOKEN_REQUEST_THROTTLE_MINUTES",
        ge=0,
        description="Minimum interval between reset or verification emails for one user",
    )

    # Trusted IPs
    max_trusted_ips: int = env_field(10, "MAX_TRUSTED_IPS", ge=1)
    ip_restriction_enabled: bool = env_field(False, "IP_RESTRICTION_ENABLED")

    # Credentials
    password_hash_time_cost: int = env_field(
        3, "PASSWORD_HASH_TIME_COST", ge=1, description="argon2id iterations"
    )
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="argon2id memory in KiB"
    )
    totp_window: int = env_field(2, "TOTP_WINDOW", ge=0)
    totp_step_seconds: int = env_field(30, "TOTP_STEP_SECONDS", ge=1)
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT", ge=1)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Salon Reservations", "EMAIL_FROM_NAME")

    # CSRF
    csrf_enabled: bool = env_field(True, "CSRF_ENABLED")
    csrf_session_required: bool = env_field(True, "CSRF_SESSION_REQUIRED")
    csrf_exempt_bearer_requests: bool = env_field(
        True,
        "CSRF_EXEMPT_BEARER_REQUESTS",
        description="Skip CSRF checks for requests authenticated with an Authorization header",
    )
    csrf_exclude_paths: list[str] = env_field(
        list(DEFAULT_CSRF_EXCLUDE_PATHS),
        "CSRF_EXCLUDE_PATHS",
        description="Comma separated paths; a trailing * matches a prefix",
    )

    # Rate limits (requests per window, per client IP)
    login_rate_limit_per_window: int = env_field(5, "LOGIN_RATE_LIMIT_PER_WINDOW", ge=1)
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    reset_rate_limit_per_window: int = env_field(3, "RESET_RATE_LIMIT_PER_WINDOW", ge=1)
    reset_rate_limit_window_seconds: int = env_field(
        60 * 60, "RESET_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    general_rate_limit_per_window: int = env_field(
        100, "GENERAL_RATE_LIMIT_PER_WINDOW", ge=1
    )
    general_rate_limit_window_seconds: int = env_field(
        15 * 60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    admin_rate_limit_per_window: int = env_field(200, "ADMIN_RATE_LIMIT_PER_WINDOW", ge=1)
    admin_rate_limit_window_seconds: int = env_field(
        15 * 60, "ADMIN_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use X-Forwarded-For for the client IP (only behind a trusted proxy)",
    )

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

    @field_validator("csrf_exclude_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; access tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _check_token_throttle(self) -> "Settings":
        if self.token_request_throttle_minutes > self.password_reset_ttl_minutes:
            # token age is derived from expiry - ttl
            raise ValueError(
                "TOKEN_REQUEST_THROTTLE_MINUTES must not exceed PASSWORD_RESET_TTL_MINUTES"
            )
        return self


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
