"""Failure variants returned (never raised) by the auth use cases.

Every use case declares the closed set of failures it can produce as a
``Union`` alias below. HTTP handlers ``match`` on that set exhaustively.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

# --- login / account state --------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvalidCredentials:
    pass


@dataclass(frozen=True, slots=True)
class AccountLocked:
    until: datetime


@dataclass(frozen=True, slots=True)
class AccountSuspended:
    reason: str


@dataclass(frozen=True, slots=True)
class AccountDeleted:
    pass


@dataclass(frozen=True, slots=True)
class EmailNotVerified:
    pass


@dataclass(frozen=True, slots=True)
class TwoFactorRequired:
    pass


@dataclass(frozen=True, slots=True)
class InvalidTwoFactorCode:
    pass


@dataclass(frozen=True, slots=True)
class IpNotTrusted:
    ip_address: str


@dataclass(frozen=True, slots=True)
class AccountNotActive:
    pass


@dataclass(frozen=True, slots=True)
class AccountNotLocked:
    pass


# --- lookups / authorization ------------------------------------------------


@dataclass(frozen=True, slots=True)
class UserNotFound:
    user_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AdminNotFound:
    admin_user_id: str


@dataclass(frozen=True, slots=True)
class NotAdmin:
    pass


@dataclass(frozen=True, slots=True)
class DatabaseError:
    message: str


# --- credentials ------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvalidPassword:
    pass


@dataclass(frozen=True, slots=True)
class WeakPassword:
    reason: str


@dataclass(frozen=True, slots=True)
class PasswordReused:
    pass


@dataclass(frozen=True, slots=True)
class HashError:
    message: str = "password hashing failed"


@dataclass(frozen=True, slots=True)
class InvalidEmail:
    pass


@dataclass(frozen=True, slots=True)
class DuplicateEmail:
    pass


# --- two-factor -------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TwoFactorAlreadyEnabled:
    pass


@dataclass(frozen=True, slots=True)
class TwoFactorNotPending:
    pass


@dataclass(frozen=True, slots=True)
class TwoFactorNotEnabled:
    pass


@dataclass(frozen=True, slots=True)
class InvalidCode:
    pass


# --- one-time tokens / email ------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvalidToken:
    pass


@dataclass(frozen=True, slots=True)
class TokenExpired:
    pass


@dataclass(frozen=True, slots=True)
class TooManyRequests:
    retry_after_seconds: int = 0


@dataclass(frozen=True, slots=True)
class EmailServiceError:
    message: str = "email delivery failed"


@dataclass(frozen=True, slots=True)
class EmailAlreadyVerified:
    pass


# --- sessions ---------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvalidRefreshToken:
    pass


@dataclass(frozen=True, slots=True)
class SessionExpired:
    pass


@dataclass(frozen=True, slots=True)
class SessionNotFound:
    pass


@dataclass(frozen=True, slots=True)
class NotOwner:
    pass


# --- trusted IPs ------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvalidIpAddress:
    ip_address: str


@dataclass(frozen=True, slots=True)
class IpAlreadyTrusted:
    ip_address: str


@dataclass(frozen=True, slots=True)
class MaxTrustedIpsReached:
    limit: int


@dataclass(frozen=True, slots=True)
class IpNotFound:
    ip_address: str


# --- per use case -----------------------------------------------------------

RegisterError = Union[InvalidEmail, WeakPassword, DuplicateEmail, HashError, DatabaseError]

LoginError = Union[
    InvalidCredentials,
    AccountLocked,
    AccountSuspended,
    AccountDeleted,
    EmailNotVerified,
    TwoFactorRequired,
    InvalidTwoFactorCode,
    IpNotTrusted,
    DatabaseError,
]

FailedLoginError = Union[UserNotFound, DatabaseError]

AdminUserError = Union[AdminNotFound, NotAdmin, UserNotFound, DatabaseError]

UnlockAccountError = Union[AdminNotFound, NotAdmin, UserNotFound, AccountNotLocked, DatabaseError]

SetupTwoFactorError = Union[
    UserNotFound,
    AccountNotActive,
    EmailNotVerified,
    TwoFactorAlreadyEnabled,
    InvalidPassword,
    DatabaseError,
]

VerifyTwoFactorError = Union[
    UserNotFound, AccountNotActive, TwoFactorNotPending, InvalidCode, DatabaseError
]

TwoFactorLoginError = Union[
    UserNotFound, AccountNotActive, TwoFactorNotEnabled, InvalidCode, DatabaseError
]

DisableTwoFactorError = Union[
    UserNotFound,
    AccountNotActive,
    TwoFactorNotEnabled,
    InvalidPassword,
    InvalidCode,
    DatabaseError,
]

RegenerateBackupCodesError = Union[
    UserNotFound, AccountNotActive, TwoFactorNotEnabled, InvalidCode, DatabaseError
]

TwoFactorStatusError = Union[UserNotFound, DatabaseError]

RequestPasswordResetError = Union[UserNotFound, TooManyRequests, EmailServiceError, DatabaseError]

VerifyResetTokenError = Union[InvalidToken, TokenExpired]

ResetPasswordError = Union[
    WeakPassword, InvalidToken, TokenExpired, PasswordReused, HashError, DatabaseError
]

ChangePasswordError = Union[
    WeakPassword, UserNotFound, InvalidPassword, PasswordReused, HashError, DatabaseError
]

SendVerificationError = Union[
    UserNotFound,
    EmailAlreadyVerified,
    AccountNotActive,
    TooManyRequests,
    EmailServiceError,
    DatabaseError,
]

ConfirmVerificationError = Union[InvalidToken, EmailAlreadyVerified, TokenExpired, DatabaseError]

RefreshTokenError = Union[
    InvalidRefreshToken, SessionExpired, UserNotFound, AccountNotActive, DatabaseError
]

LogoutError = Union[SessionNotFound, DatabaseError]

RevokeSessionError = Union[SessionNotFound, NotOwner, DatabaseError]

AddTrustedIpError = Union[
    InvalidIpAddress,
    AdminNotFound,
    NotAdmin,
    UserNotFound,
    IpAlreadyTrusted,
    MaxTrustedIpsReached,
    DatabaseError,
]

RemoveTrustedIpError = Union[AdminNotFound, NotAdmin, UserNotFound, IpNotFound, DatabaseError]

IpRestrictionError = Union[UserNotFound, IpNotTrusted, DatabaseError]


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def error_type(failure: object) -> str:
    """UPPER_SNAKE name of a failure variant, e.g. ``IpAlreadyTrusted`` -> ``IP_ALREADY_TRUSTED``."""
    return _CAMEL_BOUNDARY.sub("_", type(failure).__name__).upper()


def database_error(error: object) -> DatabaseError:
    """Collapse a repository failure into the use-case level ``DatabaseError``."""
    message = getattr(error, "message", None) or type(error).__name__
    return DatabaseError(message=message)
