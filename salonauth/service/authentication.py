"""Resolve the caller of an HTTP request to a live session and an active user."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from salonauth.logging import get_logger
from salonauth.result import Err, Ok
from salonauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    ServerError,
    SessionExpiredError,
)
from salonauth.service.failures import DatabaseError, IpNotTrusted, UserNotFound
from salonauth.service.runtime import Runtime, is_access_token_denylisted
from salonauth.service.trusted_ip import check_ip_restriction
from salonauth.storage.models import (
    Active,
    Deleted,
    Locked,
    Session,
    Suspended,
    Unverified,
    User,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    user: User
    session: Session
    claims: Optional[dict[str, Any]] = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def role(self) -> str:
        return self.user.role


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _storage_failure(event: str, error: object) -> ServerError:
    logger.error(event, error=str(error))
    return ServerError("Internal server error", error_type="DATABASE_ERROR")


def _require_usable_account(user: User, runtime: Runtime) -> None:
    match user.status:
        case Active():
            return
        case Locked(locked_at=locked_at) if utcnow() > locked_at + runtime.policy.lock_duration:
            # lapsed locks are lifted on the next login; the session stays usable
            return
        case Locked():
            raise ForbiddenError("Account is locked", error_type="ACCOUNT_LOCKED")
        case Suspended(reason=reason):
            raise ForbiddenError(
                "Account is suspended", error_type="ACCOUNT_SUSPENDED", detail={"reason": reason}
            )
        case Deleted():
            raise ForbiddenError("Account has been deleted", error_type="ACCOUNT_DELETED")
        case Unverified():
            raise ForbiddenError("Email address is not verified", error_type="EMAIL_NOT_VERIFIED")


async def authenticate(
    runtime: Runtime,
    *,
    authorization: Optional[str],
    session_id: Optional[str],
    ip_address: str,
) -> AuthContext:
    """Authenticate by ``Authorization: Bearer`` access token or ``session_id`` cookie.

    A bearer token wins over the cookie. Either way the bound session must
    exist and be unexpired, its owner must hold a usable account, and the
    request address must pass the owner's trusted-IP restriction.

    Raises:
        AuthenticationError: missing, invalid, revoked or expired credentials
        ForbiddenError: the account cannot be used or the address is not trusted
        ServerError: storage failure
    """
    claims: Optional[dict[str, Any]] = None
    token = extract_bearer(authorization)
    if token:
        claims = runtime.tokens.decode_access_token(token)
        if claims is None:
            raise AuthenticationError("Invalid or expired access token", error_type="INVALID_TOKEN")
        if await is_access_token_denylisted(runtime, claims["jti"]):
            logger.info("access_token_denylisted", jti=claims["jti"])
            raise AuthenticationError("Access token has been revoked", error_type="TOKEN_REVOKED")
        session_id = claims["sid"]

    if not session_id:
        raise AuthenticationError("Authentication required")

    match runtime.sessions.find_by_id(session_id):
        case Err(error):
            raise _storage_failure("auth_session_lookup_failed", error)
        case Ok(None):
            raise AuthenticationError("Invalid session", error_type="INVALID_SESSION")
        case Ok(session):
            pass
    if session.is_expired():
        raise SessionExpiredError("Session has expired")

    match runtime.users.find_by_id(session.user_id):
        case Err(error):
            raise _storage_failure("auth_user_lookup_failed", error)
        case Ok(None):
            raise AuthenticationError("Invalid session", error_type="INVALID_SESSION")
        case Ok(user):
            pass
    if claims is not None and claims.get("sub") != user.id:
        logger.warning("access_token_subject_mismatch", session_id=session.id)
        raise AuthenticationError("Invalid or expired access token", error_type="INVALID_TOKEN")

    _require_usable_account(user, runtime)

    match await check_ip_restriction(user.id, ip_address, runtime.base_deps()):
        case Err(IpNotTrusted(ip_address=ip)):
            raise ForbiddenError(
                f"Access denied from IP address: {ip}", error_type="IP_NOT_TRUSTED"
            )
        case Err(UserNotFound()):
            raise AuthenticationError("Invalid session", error_type="INVALID_SESSION")
        case Err(DatabaseError(message=message)):
            raise _storage_failure("auth_ip_check_failed", message)
        case Ok(_):
            pass

    return AuthContext(user=user, session=session, claims=claims)
