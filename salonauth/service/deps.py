"""Dependency bundles handed to the auth use cases.

Use cases receive everything they touch through one of these dataclasses:
repositories, policy constants, the clock and the token generator. HTTP
handlers build them from the runtime; tests build them by hand.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from salonauth.config import Settings
from salonauth.service.credentials import PasswordHasher, generate_token
from salonauth.service.email import Notifier
from salonauth.service.tokens import TokenService
from salonauth.storage.models import utcnow
from salonauth.storage.repository import SessionRepository, UserRepository

Clock = Callable[[], datetime]
TokenFactory = Callable[[], str]


@dataclass(frozen=True)
class AuthPolicy:
    max_failed_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=30)
    password_reset_ttl: timedelta = timedelta(minutes=15)
    email_verification_ttl: timedelta = timedelta(hours=24)
    token_request_throttle: timedelta = timedelta(minutes=5)
    max_trusted_ips: int = 10
    ip_restriction_enabled: bool = False
    session_ttl: timedelta = timedelta(days=7)
    remember_me_ttl: timedelta = timedelta(days=30)
    totp_window: int = 2
    totp_step_seconds: int = 30
    backup_code_count: int = 8
    app_name: str = "Salon Reservations"

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthPolicy":
        return cls(
            max_failed_attempts=settings.max_failed_attempts,
            lock_duration=timedelta(minutes=settings.lock_duration_minutes),
            password_reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            email_verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
            token_request_throttle=timedelta(minutes=settings.token_request_throttle_minutes),
            max_trusted_ips=settings.max_trusted_ips,
            ip_restriction_enabled=settings.ip_restriction_enabled,
            session_ttl=timedelta(minutes=settings.session_ttl_minutes),
            remember_me_ttl=timedelta(days=settings.remember_me_ttl_days),
            totp_window=settings.totp_window,
            totp_step_seconds=settings.totp_step_seconds,
            backup_code_count=settings.backup_code_count,
            app_name=settings.app_name,
        )


@dataclass(frozen=True, kw_only=True)
class BaseDeps:
    users: UserRepository
    policy: AuthPolicy = field(default_factory=AuthPolicy)
    now: Clock = utcnow


@dataclass(frozen=True, kw_only=True)
class TrustedIpDeps(BaseDeps):
    pass


@dataclass(frozen=True, kw_only=True)
class TwoFactorDeps(BaseDeps):
    passwords: PasswordHasher
    notifier: Optional[Notifier] = None


@dataclass(frozen=True, kw_only=True)
class LoginDeps(TwoFactorDeps):
    sessions: SessionRepository
    generate_token: TokenFactory = generate_token


@dataclass(frozen=True, kw_only=True)
class PasswordDeps(BaseDeps):
    passwords: PasswordHasher
    notifier: Notifier
    generate_token: TokenFactory = generate_token


@dataclass(frozen=True, kw_only=True)
class EmailVerificationDeps(BaseDeps):
    notifier: Notifier
    generate_token: TokenFactory = generate_token


@dataclass(frozen=True, kw_only=True)
class SessionDeps(BaseDeps):
    sessions: SessionRepository
    tokens: TokenService
    generate_token: TokenFactory = generate_token
