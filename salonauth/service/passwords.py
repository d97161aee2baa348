"""Password reset by emailed token, password change and reuse history."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.credentials import (
    PASSWORD_REUSE_DEPTH,
    tokens_match,
    validate_password_strength,
)
from salonauth.service.deps import BaseDeps, PasswordDeps
from salonauth.service.failures import (
    ChangePasswordError,
    HashError,
    InvalidPassword,
    InvalidToken,
    PasswordReused,
    RequestPasswordResetError,
    ResetPasswordError,
    TokenExpired,
    TooManyRequests,
    VerifyResetTokenError,
    WeakPassword,
    database_error,
)
from salonauth.service.lookups import load_user, save_user
from salonauth.storage.models import (
    PASSWORD_HISTORY_LIMIT,
    Active,
    Deleted,
    Locked,
    NoPasswordReset,
    PasswordResetRequested,
    Suspended,
    User,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResetPasswordRequest:
    token: str
    new_password: str


@dataclass(frozen=True)
class ChangePasswordRequest:
    user_id: str
    current_password: str
    new_password: str


def _with_new_password(user: User, password_hash: str, deps: BaseDeps) -> User:
    now = deps.now()
    history = ((password_hash,) + tuple(user.password_history))[:PASSWORD_HISTORY_LIMIT]
    return replace(
        user,
        password_hash=password_hash,
        password_history=history,
        last_password_change_at=now,
        updated_at=now,
    )


def _recently_used(user: User, password: str, deps: PasswordDeps) -> bool:
    recent = tuple(user.password_history)[:PASSWORD_REUSE_DEPTH]
    return deps.passwords.matches_any(recent, password)


async def request_password_reset(
    email: str, deps: PasswordDeps
) -> Result[None, RequestPasswordResetError]:
    """Issue a reset token and email it.

    Unknown addresses succeed silently so the endpoint cannot be used to
    discover accounts.
    """
    match deps.users.find_by_email(email.strip().lower()):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            logger.info("password_reset_unknown_email")
            return Ok(None)
        case Ok(user):
            pass

    if isinstance(user.status, (Suspended, Deleted)):
        logger.info("password_reset_inactive_account", user_id=user.id)
        return Ok(None)

    now = deps.now()
    if isinstance(user.password_reset, PasswordResetRequested):
        issued_at = user.password_reset.token_expiry - deps.policy.password_reset_ttl
        next_allowed = issued_at + deps.policy.token_request_throttle
        if now < next_allowed:
            logger.warning("password_reset_throttled", user_id=user.id)
            return Err(TooManyRequests(math.ceil((next_allowed - now).total_seconds())))

    token = deps.generate_token()
    updated = replace(
        user,
        password_reset=PasswordResetRequested(
            token=token, token_expiry=now + deps.policy.password_reset_ttl
        ),
        updated_at=now,
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(_):
            pass

    match await deps.notifier.send_password_reset(user.email, user.name, token):
        case Err(error):
            logger.error("password_reset_email_failed", user_id=user.id)
            return Err(error)
        case Ok(_):
            logger.info("password_reset_requested", user_id=user.id)
            return Ok(None)


def _resolve_reset_token(token: str, deps: BaseDeps) -> Result[User, VerifyResetTokenError]:
    if not token:
        return Err(InvalidToken())
    match deps.users.find_by_password_reset_token(token):
        case Err(_) | Ok(None):
            return Err(InvalidToken())
        case Ok(user):
            pass
    requested = user.password_reset
    if not isinstance(requested, PasswordResetRequested):
        return Err(InvalidToken())
    if not tokens_match(requested.token, token):
        return Err(InvalidToken())
    if deps.now() > requested.token_expiry:
        logger.info("password_reset_token_expired", user_id=user.id)
        return Err(TokenExpired())
    return Ok(user)


async def verify_reset_token(token: str, deps: BaseDeps) -> Result[User, VerifyResetTokenError]:
    """Check a reset token without consuming it."""
    return _resolve_reset_token(token, deps)


async def reset_password(
    request: ResetPasswordRequest, deps: PasswordDeps
) -> Result[User, ResetPasswordError]:
    reason = validate_password_strength(request.new_password)
    if reason:
        return Err(WeakPassword(reason))

    match _resolve_reset_token(request.token, deps):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass

    if _recently_used(user, request.new_password, deps):
        return Err(PasswordReused())

    match deps.passwords.hash(request.new_password):
        case Err(message):
            return Err(HashError(message))
        case Ok(password_hash):
            pass

    updated = _with_new_password(user, password_hash, deps)
    # a successful reset also lifts a lockout
    status = Active() if isinstance(user.status, Locked) else user.status
    updated = replace(
        updated,
        status=status,
        failed_login_attempts=0,
        password_reset=NoPasswordReset(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            pass

    logger.info("password_reset_completed", user_id=saved.id)
    match await deps.notifier.send_password_changed(saved.email, saved.name):
        case Err(_):
            logger.warning("password_changed_email_failed", user_id=saved.id)
        case Ok(_):
            pass
    return Ok(saved)


async def change_password(
    request: ChangePasswordRequest, deps: PasswordDeps
) -> Result[User, ChangePasswordError]:
    reason = validate_password_strength(request.new_password)
    if reason:
        return Err(WeakPassword(reason))

    match load_user(deps.users, request.user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass

    if not deps.passwords.verify(user.password_hash, request.current_password):
        logger.warning("password_change_bad_current_password", user_id=user.id)
        return Err(InvalidPassword())
    if request.new_password == request.current_password:
        return Err(PasswordReused())
    if _recently_used(user, request.new_password, deps):
        return Err(PasswordReused())

    match deps.passwords.hash(request.new_password):
        case Err(message):
            return Err(HashError(message))
        case Ok(password_hash):
            pass

    match save_user(deps.users, _with_new_password(user, password_hash, deps)):
        case Err(error):
            return Err(error)
        case Ok(saved):
            pass

    logger.info("password_changed", user_id=saved.id)
    match await deps.notifier.send_password_changed(saved.email, saved.name):
        case Err(_):
            logger.warning("password_changed_email_failed", user_id=saved.id)
        case Ok(_):
            pass
    return Ok(saved)
