"""Email ownership verification by emailed token."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.credentials import tokens_match
from salonauth.service.deps import EmailVerificationDeps
from salonauth.service.failures import (
    AccountNotActive,
    ConfirmVerificationError,
    EmailAlreadyVerified,
    InvalidToken,
    SendVerificationError,
    TokenExpired,
    TooManyRequests,
)
from salonauth.service.lookups import load_user, save_user
from salonauth.storage.models import Active, Unverified, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerificationSent:
    user_id: str
    email: str


async def send_email_verification(
    user_id: str, deps: EmailVerificationDeps
) -> Result[VerificationSent, SendVerificationError]:
    match load_user(deps.users, user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass

    if user.email_verified:
        return Err(EmailAlreadyVerified())
    if not isinstance(user.status, (Active, Unverified)):
        return Err(AccountNotActive())

    now = deps.now()
    if isinstance(user.status, Unverified):
        issued_at = user.status.token_expiry - deps.policy.email_verification_ttl
        next_allowed = issued_at + deps.policy.token_request_throttle
        if now < next_allowed:
            logger.warning("email_verification_throttled", user_id=user.id)
            return Err(TooManyRequests(math.ceil((next_allowed - now).total_seconds())))

    token = deps.generate_token()
    updated = replace(
        user,
        status=Unverified(
            email_verification_token=token,
            token_expiry=now + deps.policy.email_verification_ttl,
        ),
        updated_at=now,
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(_):
            pass

    match await deps.notifier.send_email_verification(user.email, user.name, token):
        case Err(error):
            logger.error("email_verification_send_failed", user_id=user.id)
            return Err(error)
        case Ok(_):
            logger.info("email_verification_sent", user_id=user.id)
            return Ok(VerificationSent(user.id, user.email))


async def confirm_email_verification(
    token: str, deps: EmailVerificationDeps
) -> Result[User, ConfirmVerificationError]:
    if not token:
        return Err(InvalidToken())
    match deps.users.find_by_email_verification_token(token):
        case Err(_) | Ok(None):
            return Err(InvalidToken())
        case Ok(user):
            pass

    if user.email_verified:
        return Err(EmailAlreadyVerified())
    status = user.status
    if not isinstance(status, Unverified):
        return Err(InvalidToken())
    if not tokens_match(status.email_verification_token, token):
        return Err(InvalidToken())
    now = deps.now()
    if now > status.token_expiry:
        return Err(TokenExpired())

    updated = replace(user, status=Active(), email_verified=True, updated_at=now)
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            logger.info("email_verified", user_id=saved.id)
            return Ok(saved)
