"""Registration, login, failed-attempt lockout and admin unlock."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.credentials import is_valid_email, validate_password_strength
from salonauth.service.deps import BaseDeps, LoginDeps, PasswordDeps
from salonauth.service.failures import (
    AccountDeleted,
    AccountLocked,
    AccountNotActive,
    AccountNotLocked,
    AccountSuspended,
    AdminUserError,
    DatabaseError,
    DuplicateEmail,
    EmailNotVerified,
    FailedLoginError,
    HashError,
    InvalidCode,
    InvalidCredentials,
    InvalidEmail,
    InvalidTwoFactorCode,
    IpNotTrusted,
    LoginError,
    RegisterError,
    TwoFactorNotEnabled,
    TwoFactorRequired,
    UnlockAccountError,
    UserNotFound,
    WeakPassword,
    database_error,
)
from salonauth.service.lookups import load_admin_and_user, load_user, save_user
from salonauth.service.trusted_ip import check_ip_restriction
from salonauth.service.two_factor import TwoFactorCodeRequest, verify_two_factor_login
from salonauth.storage.errors import DuplicateRecord
from salonauth.storage.models import (
    Active,
    Deleted,
    Locked,
    Session,
    Suspended,
    TwoFactorEnabled,
    Unverified,
    User,
    status_name,
)

logger = get_logger(__name__)

LOCK_REASON = "Too many failed login attempts"


@dataclass(frozen=True)
class RegisterRequest:
    email: str
    password: str
    name: str
    role: str = "customer"


@dataclass(frozen=True)
class LoginRequest:
    email: str
    password: str
    ip_address: str
    user_agent: Optional[str] = None
    remember_me: bool = False
    two_factor_code: Optional[str] = None


@dataclass(frozen=True)
class LoginOutcome:
    user: User
    session: Session
    used_backup_code: bool = False
    remaining_backup_codes: Optional[int] = None


@dataclass(frozen=True)
class FailedLoginOutcome:
    is_locked: bool
    remaining_attempts: Optional[int] = None
    lock_duration: Optional[int] = None


@dataclass(frozen=True)
class UnlockRequest:
    user_id: str
    admin_user_id: str


@dataclass(frozen=True)
class LockStatus:
    is_locked: bool
    status: str
    locked_at: Optional[datetime] = None
    reason: Optional[str] = None
    failed_attempts: Optional[int] = None
    expires_at: Optional[datetime] = None


def _lock_expired(status: Locked, now: datetime, deps: BaseDeps) -> bool:
    return now > status.locked_at + deps.policy.lock_duration


async def register(
    request: RegisterRequest, deps: PasswordDeps
) -> Result[User, RegisterError]:
    """Create an unverified account and send the verification email."""
    email = request.email.strip().lower()
    if not is_valid_email(email):
        return Err(InvalidEmail())
    reason = validate_password_strength(request.password)
    if reason:
        return Err(WeakPassword(reason))

    match deps.users.find_by_email(email):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            pass
        case Ok(_):
            return Err(DuplicateEmail())

    match deps.passwords.hash(request.password):
        case Err(message):
            return Err(HashError(message))
        case Ok(password_hash):
            pass

    now = deps.now()
    token = deps.generate_token()
    user = User.new(
        email,
        request.name.strip(),
        password_hash,
        role=request.role,
        status=Unverified(
            email_verification_token=token,
            token_expiry=now + deps.policy.email_verification_ttl,
        ),
        now=now,
    )
    match deps.users.save(user):
        case Err(DuplicateRecord()):
            return Err(DuplicateEmail())
        case Err(error):
            return Err(database_error(error))
        case Ok(saved):
            pass

    logger.info("user_registered", user_id=saved.id, role=saved.role)
    match await deps.notifier.send_email_verification(saved.email, saved.name, token):
        case Err(_):
            # the account exists; the user can ask for another verification email
            logger.warning("registration_verification_email_failed", user_id=saved.id)
        case Ok(_):
            pass
    return Ok(saved)


async def handle_failed_login(
    email: str, deps: BaseDeps
) -> Result[FailedLoginOutcome, FailedLoginError]:
    """Record one failed attempt for ``email`` and lock the account at the threshold."""
    match deps.users.find_by_email(email):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            return Err(UserNotFound())
        case Ok(user):
            pass

    now = deps.now()
    max_attempts = deps.policy.max_failed_attempts
    lock_seconds = int(deps.policy.lock_duration.total_seconds())

    match user.status:
        case Locked() as locked if _lock_expired(locked, now, deps):
            attempts = 1
        case Locked() as locked:
            remaining = (locked.locked_at + deps.policy.lock_duration) - now
            return Ok(
                FailedLoginOutcome(
                    is_locked=True,
                    lock_duration=max(0, math.ceil(remaining.total_seconds())),
                )
            )
        case Active():
            attempts = user.failed_login_attempts + 1
        case Unverified() | Suspended() | Deleted():
            return Ok(FailedLoginOutcome(is_locked=False))

    if attempts >= max_attempts:
        updated = replace(
            user,
            status=Locked(reason=LOCK_REASON, locked_at=now, failed_attempts=attempts),
            failed_login_attempts=attempts,
            updated_at=now,
        )
        outcome = FailedLoginOutcome(is_locked=True, lock_duration=lock_seconds)
    else:
        updated = replace(
            user, status=Active(), failed_login_attempts=attempts, updated_at=now
        )
        outcome = FailedLoginOutcome(
            is_locked=False, remaining_attempts=max_attempts - attempts
        )

    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(_):
            pass
    if outcome.is_locked:
        logger.warning("account_locked", user_id=user.id, failed_attempts=attempts)
    else:
        logger.info(
            "login_attempt_failed",
            user_id=user.id,
            failed_attempts=attempts,
            remaining_attempts=outcome.remaining_attempts,
        )
    return Ok(outcome)


async def login(request: LoginRequest, deps: LoginDeps) -> Result[LoginOutcome, LoginError]:
    email = request.email.strip().lower()
    match deps.users.find_by_email(email):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            logger.info("login_unknown_email")
            return Err(InvalidCredentials())
        case Ok(user):
            pass

    now = deps.now()
    match user.status:
        case Locked() as locked if _lock_expired(locked, now, deps):
            match save_user(
                deps.users,
                replace(user, status=Active(), failed_login_attempts=0, updated_at=now),
            ):
                case Err(error):
                    return Err(error)
                case Ok(unlocked):
                    logger.info("account_lock_expired", user_id=user.id)
                    user = unlocked
        case Locked() as locked:
            return Err(AccountLocked(until=locked.locked_at + deps.policy.lock_duration))
        case Suspended(reason=reason):
            return Err(AccountSuspended(reason))
        case Deleted():
            return Err(AccountDeleted())
        case Unverified():
            return Err(EmailNotVerified())
        case Active():
            pass

    if not deps.passwords.verify(user.password_hash, request.password):
        match await handle_failed_login(email, deps):
            case Err(DatabaseError() as error):
                return Err(error)
            case Err(UserNotFound()) | Ok(_):
                pass
        return Err(InvalidCredentials())

    match await check_ip_restriction(user.id, request.ip_address, deps):
        case Err(IpNotTrusted() as error):
            return Err(error)
        case Err(DatabaseError() as error):
            return Err(error)
        case Err(UserNotFound()):
            return Err(InvalidCredentials())
        case Ok(_):
            pass

    used_backup_code = False
    remaining_backup_codes: Optional[int] = None
    if isinstance(user.two_factor, TwoFactorEnabled):
        if not request.two_factor_code:
            return Err(TwoFactorRequired())
        match await verify_two_factor_login(
            TwoFactorCodeRequest(user.id, request.two_factor_code), deps
        ):
            case Ok(verified):
                used_backup_code = verified.used_backup_code
                remaining_backup_codes = verified.remaining_backup_codes
            case Err(InvalidCode()):
                return Err(InvalidTwoFactorCode())
            case Err(DatabaseError() as error):
                return Err(error)
            case Err(UserNotFound() | AccountNotActive() | TwoFactorNotEnabled()):
                # account changed underneath us
                return Err(InvalidCredentials())
        # reload so a consumed backup code is not written back
        match load_user(deps.users, user.id):
            case Err(DatabaseError() as error):
                return Err(error)
            case Err(UserNotFound()):
                return Err(InvalidCredentials())
            case Ok(refreshed):
                user = refreshed

    now = deps.now()
    match save_user(
        deps.users,
        replace(
            user,
            failed_login_attempts=0,
            last_login_at=now,
            last_login_ip=request.ip_address,
            updated_at=now,
        ),
    ):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass

    ttl = deps.policy.remember_me_ttl if request.remember_me else deps.policy.session_ttl
    session = Session.new(
        user.id,
        deps.generate_token(),
        ttl,
        ip_address=request.ip_address,
        user_agent=request.user_agent,
        remember_me=request.remember_me,
        now=now,
    )
    match deps.sessions.save(session):
        case Err(error):
            return Err(database_error(error))
        case Ok(session):
            pass

    logger.info(
        "login_succeeded",
        user_id=user.id,
        session_id=session.id,
        remember_me=request.remember_me,
        used_backup_code=used_backup_code,
    )
    return Ok(LoginOutcome(user, session, used_backup_code, remaining_backup_codes))


async def unlock_account(
    request: UnlockRequest, deps: BaseDeps
) -> Result[User, UnlockAccountError]:
    match load_admin_and_user(deps.users, request.admin_user_id, request.user_id):
        case Err(error):
            return Err(error)
        case Ok((_admin, user)):
            pass
    if not isinstance(user.status, Locked):
        return Err(AccountNotLocked())

    updated = replace(user, status=Active(), failed_login_attempts=0, updated_at=deps.now())
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            logger.info(
                "account_unlocked", user_id=saved.id, admin_user_id=request.admin_user_id
            )
            return Ok(saved)


async def get_lock_status(
    user_id: str, admin_user_id: str, deps: BaseDeps
) -> Result[LockStatus, AdminUserError]:
    match load_admin_and_user(deps.users, admin_user_id, user_id):
        case Err(error):
            return Err(error)
        case Ok((_admin, user)):
            pass
    match user.status:
        case Locked(reason=reason, locked_at=locked_at, failed_attempts=attempts):
            return Ok(
                LockStatus(
                    is_locked=True,
                    status="locked",
                    locked_at=locked_at,
                    reason=reason,
                    failed_attempts=attempts,
                    expires_at=locked_at + deps.policy.lock_duration,
                )
            )
        case _:
            return Ok(
                LockStatus(
                    is_locked=False,
                    status=status_name(user.status),
                    failed_attempts=user.failed_login_attempts,
                )
            )
