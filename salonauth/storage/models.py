from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Literal, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


UserRole = Literal["customer", "staff", "admin"]
USER_ROLES: Tuple[str, ...] = ("customer", "staff", "admin")

PASSWORD_HISTORY_LIMIT = 5


# Account status: exactly one variant is held by a user at any time.


@dataclass(frozen=True, slots=True)
class Active:
    pass


@dataclass(frozen=True, slots=True)
class Unverified:
    email_verification_token: str
    token_expiry: datetime


@dataclass(frozen=True, slots=True)
class Locked:
    reason: str
    locked_at: datetime
    failed_attempts: int


@dataclass(frozen=True, slots=True)
class Suspended:
    reason: str
    suspended_at: datetime


@dataclass(frozen=True, slots=True)
class Deleted:
    deleted_at: datetime


AccountStatus = Union[Active, Unverified, Locked, Suspended, Deleted]


# Two-factor enrollment


@dataclass(frozen=True, slots=True)
class TwoFactorDisabled:
    pass


@dataclass(frozen=True, slots=True)
class TwoFactorPending:
    secret: str
    qr_code_url: str
    backup_codes: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TwoFactorEnabled:
    secret: str
    backup_codes: Tuple[str, ...]


TwoFactorStatus = Union[TwoFactorDisabled, TwoFactorPending, TwoFactorEnabled]


# Password reset


@dataclass(frozen=True, slots=True)
class NoPasswordReset:
    pass


@dataclass(frozen=True, slots=True)
class PasswordResetRequested:
    token: str
    token_expiry: datetime


PasswordResetStatus = Union[NoPasswordReset, PasswordResetRequested]


def status_name(status: AccountStatus) -> str:
    """Lower-case name of a status variant, as exposed over HTTP and stored in SQL."""
    return {
        Active: "active",
        Unverified: "unverified",
        Locked: "locked",
        Suspended: "suspended",
        Deleted: "deleted",
    }[type(status)]


def two_factor_name(status: TwoFactorStatus) -> str:
    return {
        TwoFactorDisabled: "disabled",
        TwoFactorPending: "pending",
        TwoFactorEnabled: "enabled",
    }[type(status)]


@dataclass(frozen=True)
class User:
    """Salon account. Mutations produce a new instance via ``dataclasses.replace``."""

    id: str
    email: str
    name: str
    password_hash: str
    role: str = "customer"
    email_verified: bool = False
    status: AccountStatus = field(default_factory=Active)
    two_factor: TwoFactorStatus = field(default_factory=TwoFactorDisabled)
    password_reset: PasswordResetStatus = field(default_factory=NoPasswordReset)
    password_history: Tuple[str, ...] = ()
    trusted_ip_addresses: Tuple[str, ...] = ()
    failed_login_attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_password_change_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "customer",
        status: AccountStatus | None = None,
        email_verified: bool = False,
        now: datetime | None = None,
    ) -> "User":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            role=role,
            email_verified=email_verified,
            status=status if status is not None else Active(),
            password_history=(password_hash,),
            created_at=created,
            updated_at=created,
            last_password_change_at=created,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Session:
    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl: timedelta,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=created + ttl,
            created_at=created,
            last_activity_at=created,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def csrf_token(self) -> Optional[str]:
        return (self.meta or {}).get("csrf_token")
