from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from salonauth.config import get_settings, reset_settings_cache
from salonauth.logging import get_logger
from salonauth.service.credentials import PasswordHasher
from salonauth.service.deps import (
    AuthPolicy,
    BaseDeps,
    EmailVerificationDeps,
    LoginDeps,
    PasswordDeps,
    SessionDeps,
    TrustedIpDeps,
    TwoFactorDeps,
)
from salonauth.service.email import EmailNotifier, EmailService
from salonauth.service.tokens import TokenService
from salonauth.storage.memory import MemoryStore
from salonauth.storage.postgres import PostgresStore
from salonauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
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

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        secret_key = self.settings.two_factor_encryption_key or self.settings.jwt_secret

        try:
            self.store = (
                MemoryStore(self.settings.memory_store_path, secret_key=secret_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, secret_key=secret_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.users = self.store.users
        self.sessions = self.store.sessions

        self.cache: RedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and token revocation; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.policy = AuthPolicy.from_settings(self.settings)
        self.passwords = PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.tokens = TokenService(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            ttl_minutes=self.settings.access_token_ttl_minutes,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.notifier = EmailNotifier(
            self.email,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            verification_ttl_hours=self.settings.email_verification_ttl_hours,
        )

        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._local_denylist: Dict[str, float] = {}

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            ip_restriction_enabled=self.settings.ip_restriction_enabled,
        )

    # dependency bundles for the use cases

    def base_deps(self) -> BaseDeps:
        return BaseDeps(users=self.users, policy=self.policy)

    def trusted_ip_deps(self) -> TrustedIpDeps:
        return TrustedIpDeps(users=self.users, policy=self.policy)

    def two_factor_deps(self) -> TwoFactorDeps:
        return TwoFactorDeps(
            users=self.users, policy=self.policy, passwords=self.passwords, notifier=self.notifier
        )

    def login_deps(self) -> LoginDeps:
        return LoginDeps(
            users=self.users,
            sessions=self.sessions,
            policy=self.policy,
            passwords=self.passwords,
        )

    def password_deps(self) -> PasswordDeps:
        return PasswordDeps(
            users=self.users, policy=self.policy, passwords=self.passwords, notifier=self.notifier
        )

    def email_verification_deps(self) -> EmailVerificationDeps:
        return EmailVerificationDeps(users=self.users, policy=self.policy, notifier=self.notifier)

    def session_deps(self) -> SessionDeps:
        return SessionDeps(
            users=self.users, sessions=self.sessions, policy=self.policy, tokens=self.tokens
        )


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in process when Redis is unavailable."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


async def denylist_access_token(runtime: Runtime, jti: str, expires_at: float) -> None:
    """Refuse an access token for the rest of its lifetime (used on logout)."""
    ttl = int(expires_at - time.time())
    if ttl <= 0:
        return
    if runtime.cache:
        await runtime.cache.denylist_access_token(jti, ttl)
        return
    runtime._local_denylist[jti] = expires_at


async def is_access_token_denylisted(runtime: Runtime, jti: str) -> bool:
    if runtime.cache:
        return await runtime.cache.is_access_token_denylisted(jti)
    expires_at = runtime._local_denylist.get(jti)
    if expires_at is None:
        return False
    if expires_at <= time.time():
        runtime._local_denylist.pop(jti, None)
        return False
    return True


__all__ = [
    "Runtime",
    "check_rate_limit",
    "denylist_access_token",
    "get_runtime",
    "is_access_token_denylisted",
    "reset_runtime_for_tests",
]
