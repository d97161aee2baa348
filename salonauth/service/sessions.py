"""Session listing, revocation and refresh-token rotation."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.deps import SessionDeps
from salonauth.service.failures import (
    AccountNotActive,
    DatabaseError,
    InvalidRefreshToken,
    LogoutError,
    NotOwner,
    RefreshTokenError,
    RevokeSessionError,
    SessionExpired,
    SessionNotFound,
    UserNotFound,
    database_error,
)
from salonauth.storage.errors import RecordNotFound
from salonauth.storage.models import Active, Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session: Session


@dataclass(frozen=True)
class SessionSummary:
    id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    remember_me: bool
    is_current: bool


@dataclass(frozen=True)
class SessionList:
    sessions: List[SessionSummary]
    total: int


async def refresh_token(
    token: str, deps: SessionDeps
) -> Result[TokenPair, RefreshTokenError]:
    """Exchange a refresh token for a new access token and a rotated refresh token."""
    if not token:
        return Err(InvalidRefreshToken())
    match deps.sessions.find_by_refresh_token(token):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            logger.warning("refresh_token_unknown")
            return Err(InvalidRefreshToken())
        case Ok(session):
            pass

    now = deps.now()
    if session.is_expired(now):
        match deps.sessions.delete(session.id):
            case Err(RecordNotFound()) | Ok(_):
                pass
            case Err(error):
                logger.warning("expired_session_delete_failed", session_id=session.id, error=str(error))
        return Err(SessionExpired())

    match deps.users.find_by_id(session.user_id):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            return Err(UserNotFound(session.user_id))
        case Ok(user):
            pass
    if not isinstance(user.status, Active):
        return Err(AccountNotActive())

    rotated = replace(session, refresh_token=deps.generate_token(), last_activity_at=now)
    match deps.sessions.update(rotated):
        case Err(RecordNotFound()):
            # revoked concurrently
            return Err(InvalidRefreshToken())
        case Err(error):
            return Err(database_error(error))
        case Ok(rotated):
            pass

    access = deps.tokens.issue_access_token(user, rotated)
    logger.info("refresh_token_rotated", user_id=user.id, session_id=rotated.id)
    return Ok(
        TokenPair(
            access_token=access.token,
            refresh_token=rotated.refresh_token,
            expires_in=access.expires_in,
            session=rotated,
        )
    )


async def logout(session_id: str, deps: SessionDeps) -> Result[None, LogoutError]:
    match deps.sessions.delete(session_id):
        case Err(RecordNotFound()):
            return Err(SessionNotFound())
        case Err(error):
            return Err(database_error(error))
        case Ok(_):
            logger.info("session_logged_out", session_id=session_id)
            return Ok(None)


async def logout_all(user_id: str, deps: SessionDeps) -> Result[int, DatabaseError]:
    """Delete every session of ``user_id``; returns how many were removed."""
    match deps.sessions.delete_by_user_id(user_id):
        case Err(error):
            return Err(database_error(error))
        case Ok(count):
            logger.info("sessions_logged_out", user_id=user_id, count=count)
            return Ok(count)


async def revoke_session(
    session_id: str, user_id: str, deps: SessionDeps
) -> Result[None, RevokeSessionError]:
    match deps.sessions.find_by_id(session_id):
        case Err(error):
            return Err(database_error(error))
        case Ok(None):
            return Err(SessionNotFound())
        case Ok(session) if session.user_id != user_id:
            logger.warning(
                "session_revoke_not_owner", session_id=session_id, user_id=user_id
            )
            return Err(NotOwner())
        case Ok(_):
            pass
    match deps.sessions.delete(session_id):
        case Err(RecordNotFound()):
            return Err(SessionNotFound())
        case Err(error):
            return Err(database_error(error))
        case Ok(_):
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
            return Ok(None)


async def get_sessions(
    user_id: str, current_session_id: Optional[str], deps: SessionDeps
) -> Result[SessionList, DatabaseError]:
    match deps.sessions.find_by_user_id(user_id):
        case Err(error):
            return Err(database_error(error))
        case Ok(sessions):
            pass
    now = deps.now()
    live = sorted(
        (s for s in sessions if not s.is_expired(now)),
        key=lambda s: s.last_activity_at,
        reverse=True,
    )
    summaries = [
        SessionSummary(
            id=s.id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=s.created_at,
            last_activity_at=s.last_activity_at,
            expires_at=s.expires_at,
            remember_me=s.remember_me,
            is_current=s.id == current_session_id,
        )
        for s in live
    ]
    return Ok(SessionList(summaries, len(summaries)))


async def purge_expired_sessions(deps: SessionDeps) -> Result[int, DatabaseError]:
    match deps.sessions.delete_expired(deps.now()):
        case Err(error):
            return Err(database_error(error))
        case Ok(count):
            if count:
                logger.info("expired_sessions_purged", count=count)
            return Ok(count)
