"""TOTP enrollment, verification and backup codes."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.credentials import (
    build_otpauth_uri,
    build_qr_code_url,
    consume_backup_code,
    generate_backup_codes,
    generate_totp_secret,
    verify_totp,
)
from salonauth.service.deps import TwoFactorDeps
from salonauth.service.failures import (
    AccountNotActive,
    DisableTwoFactorError,
    EmailNotVerified,
    InvalidCode,
    InvalidPassword,
    RegenerateBackupCodesError,
    SetupTwoFactorError,
    TwoFactorAlreadyEnabled,
    TwoFactorLoginError,
    TwoFactorNotEnabled,
    TwoFactorNotPending,
    TwoFactorStatusError,
    VerifyTwoFactorError,
)
from salonauth.service.lookups import load_user, save_user
from salonauth.storage.models import (
    Active,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
    User,
    two_factor_name,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SetupTwoFactorRequest:
    user_id: str
    password: str


@dataclass(frozen=True)
class TwoFactorCodeRequest:
    user_id: str
    code: str


@dataclass(frozen=True)
class DisableTwoFactorRequest:
    user_id: str
    password: str
    code: str


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    qr_code_url: str
    otpauth_uri: str
    backup_codes: Tuple[str, ...]


@dataclass(frozen=True)
class TwoFactorLoginVerified:
    used_backup_code: bool
    remaining_backup_codes: int


@dataclass(frozen=True)
class TwoFactorState:
    status: str
    remaining_backup_codes: Optional[int] = None


def _totp_ok(secret: str, code: str, deps: TwoFactorDeps) -> bool:
    return verify_totp(
        secret,
        code,
        window=deps.policy.totp_window,
        interval=deps.policy.totp_step_seconds,
        now=deps.now().timestamp(),
    )


def _load_active(deps: TwoFactorDeps, user_id: str):
    match load_user(deps.users, user_id):
        case Err(error):
            return Err(error)
        case Ok(user) if not isinstance(user.status, Active):
            return Err(AccountNotActive())
        case Ok(user):
            return Ok(user)


async def setup_two_factor(
    request: SetupTwoFactorRequest, deps: TwoFactorDeps
) -> Result[TwoFactorSetup, SetupTwoFactorError]:
    match _load_active(deps, request.user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    if not user.email_verified:
        return Err(EmailNotVerified())
    if isinstance(user.two_factor, TwoFactorEnabled):
        return Err(TwoFactorAlreadyEnabled())
    if not deps.passwords.verify(user.password_hash, request.password):
        logger.warning("two_factor_setup_bad_password", user_id=user.id)
        return Err(InvalidPassword())

    secret = generate_totp_secret()
    otpauth_uri = build_otpauth_uri(secret, user.email, deps.policy.app_name)
    qr_code_url = build_qr_code_url(otpauth_uri)
    backup_codes = tuple(generate_backup_codes(deps.policy.backup_code_count))

    # a repeated setup replaces any earlier pending secret
    updated = replace(
        user,
        two_factor=TwoFactorPending(
            secret=secret, qr_code_url=qr_code_url, backup_codes=backup_codes
        ),
        updated_at=deps.now(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(_):
            logger.info("two_factor_setup_started", user_id=user.id)
            return Ok(TwoFactorSetup(secret, qr_code_url, otpauth_uri, backup_codes))


async def verify_two_factor(
    request: TwoFactorCodeRequest, deps: TwoFactorDeps
) -> Result[Tuple[str, ...], VerifyTwoFactorError]:
    """Confirm enrollment with a first TOTP code; returns the active backup codes."""
    match _load_active(deps, request.user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    pending = user.two_factor
    if not isinstance(pending, TwoFactorPending):
        return Err(TwoFactorNotPending())
    if not _totp_ok(pending.secret, request.code, deps):
        logger.warning("two_factor_verify_invalid_code", user_id=user.id)
        return Err(InvalidCode())

    backup_codes = pending.backup_codes or tuple(
        generate_backup_codes(deps.policy.backup_code_count)
    )
    updated = replace(
        user,
        two_factor=TwoFactorEnabled(secret=pending.secret, backup_codes=backup_codes),
        updated_at=deps.now(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            pass
    logger.info("two_factor_enabled", user_id=saved.id)
    if deps.notifier is not None:
        match await deps.notifier.send_two_factor_enabled(saved.email, saved.name):
            case Err(_):
                logger.warning("two_factor_enabled_email_failed", user_id=saved.id)
            case Ok(_):
                pass
    return Ok(backup_codes)


async def verify_two_factor_login(
    request: TwoFactorCodeRequest, deps: TwoFactorDeps
) -> Result[TwoFactorLoginVerified, TwoFactorLoginError]:
    """Second login factor: a TOTP code, or else a single-use backup code."""
    match _load_active(deps, request.user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    enabled = user.two_factor
    if not isinstance(enabled, TwoFactorEnabled):
        return Err(TwoFactorNotEnabled())

    if _totp_ok(enabled.secret, request.code, deps):
        return Ok(TwoFactorLoginVerified(False, len(enabled.backup_codes)))

    remaining = consume_backup_code(enabled.backup_codes, request.code)
    if remaining is None:
        logger.warning("two_factor_login_invalid_code", user_id=user.id)
        return Err(InvalidCode())

    updated = replace(
        user,
        two_factor=TwoFactorEnabled(secret=enabled.secret, backup_codes=remaining),
        updated_at=deps.now(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(_):
            logger.info(
                "backup_code_used", user_id=user.id, remaining_backup_codes=len(remaining)
            )
            return Ok(TwoFactorLoginVerified(True, len(remaining)))


async def disable_two_factor(
    request: DisableTwoFactorRequest, deps: TwoFactorDeps
) -> Result[User, DisableTwoFactorError]:
    """Requires both the password and a TOTP code; backup codes are not accepted."""
    match _load_active(deps, request.user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    enabled = user.two_factor
    if not isinstance(enabled, TwoFactorEnabled):
        return Err(TwoFactorNotEnabled())
    if not deps.passwords.verify(user.password_hash, request.password):
        return Err(InvalidPassword())
    if not _totp_ok(enabled.secret, request.code, deps):
        return Err(InvalidCode())

    updated = replace(user, two_factor=TwoFactorDisabled(), updated_at=deps.now())
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            logger.info("two_factor_disabled", user_id=saved.id)
            return Ok(saved)


async def regenerate_backup_codes(
    request: TwoFactorCodeRequest, deps: TwoFactorDeps
) -> Result[Tuple[str, ...], RegenerateBackupCodesError]:
    match _load_active(deps, request.user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    enabled = user.two_factor
    if not isinstance(enabled, TwoFactorEnabled):
        return Err(TwoFactorNotEnabled())
    if not _totp_ok(enabled.secret, request.code, deps):
        return Err(InvalidCode())

    backup_codes = tuple(generate_backup_codes(deps.policy.backup_code_count))
    updated = replace(
        user,
        two_factor=TwoFactorEnabled(secret=enabled.secret, backup_codes=backup_codes),
        updated_at=deps.now(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(_):
            logger.info("backup_codes_regenerated", user_id=user.id)
            return Ok(backup_codes)


async def get_two_factor_status(
    user_id: str, deps: TwoFactorDeps
) -> Result[TwoFactorState, TwoFactorStatusError]:
    match load_user(deps.users, user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    remaining = (
        len(user.two_factor.backup_codes)
        if isinstance(user.two_factor, TwoFactorEnabled)
        else None
    )
    return Ok(TwoFactorState(two_factor_name(user.two_factor), remaining))
