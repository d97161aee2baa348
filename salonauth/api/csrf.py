"""Session-bound double-submit CSRF protection.

Safe requests carrying a session get a token stored in ``session.meta`` and
echoed in the ``X-CSRF-Token`` response header. State-changing requests must
send the same token back in that header, a ``_csrf`` body field or a
``_csrf`` query parameter, checked in that order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Sequence
from urllib.parse import parse_qs

from fastapi import Request

from salonauth.api.error_handling import _error_response
from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.authentication import extract_bearer
from salonauth.service.credentials import generate_token, tokens_match
from salonauth.storage.errors import RepositoryError
from salonauth.storage.models import Session
from salonauth.storage.repository import SessionRepository

logger = get_logger(__name__)

CSRF_HEADER_NAME = "X-CSRF-Token"
CSRF_FIELD_NAME = "_csrf"
SESSION_COOKIE_NAME = "session_id"

_PROTECTED_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})


@dataclass(frozen=True)
class CsrfOptions:
    exclude_paths: Sequence[str] = field(default_factory=tuple)
    session_required: bool = True
    exempt_bearer_requests: bool = True


def requires_protection(method: str) -> bool:
    return method.upper() in _PROTECTED_METHODS


def is_path_excluded(path: str, exclude_paths: Sequence[str]) -> bool:
    """Exact match, or prefix match for entries ending in ``*``."""
    for pattern in exclude_paths:
        if pattern.endswith("*"):
            if path.startswith(pattern[:-1]):
                return True
        elif path == pattern:
            return True
    return False


def ensure_csrf_token(
    sessions: SessionRepository, session: Session
) -> Result[str, RepositoryError]:
    """Return the session's token, minting and storing one when it has none."""
    existing = session.csrf_token
    if existing:
        return Ok(existing)
    token = generate_token()
    meta = dict(session.meta or {})
    meta["csrf_token"] = token
    match sessions.update(replace(session, meta=meta)):
        case Err(error):
            return Err(error)
        case Ok(_):
            return Ok(token)


async def token_from_request(request: Request) -> Optional[str]:
    header_token = request.headers.get(CSRF_HEADER_NAME)
    if header_token:
        return header_token

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type in ("application/json", "application/x-www-form-urlencoded"):
        body = await request.body()
        if body:
            if content_type == "application/json":
                try:
                    payload = json.loads(body)
                except ValueError:
                    payload = None
                if isinstance(payload, dict) and isinstance(payload.get(CSRF_FIELD_NAME), str):
                    return payload[CSRF_FIELD_NAME]
            else:
                values = parse_qs(body.decode("utf-8", errors="replace")).get(CSRF_FIELD_NAME)
                if values:
                    return values[0]

    return request.query_params.get(CSRF_FIELD_NAME) or None


def _invalid_token():
    return _error_response(
        403, "Invalid or missing CSRF token", error_type="INVALID_CSRF_TOKEN"
    )


class CsrfProtection:
    """HTTP middleware; install with ``app.middleware("http")(CsrfProtection(...))``."""

    def __init__(
        self,
        options: CsrfOptions,
        sessions: Callable[[], SessionRepository],
    ) -> None:
        self.options = options
        self._sessions = sessions

    def _lookup_session(self, session_id: Optional[str]) -> Result[Optional[Session], RepositoryError]:
        if not session_id:
            return Ok(None)
        match self._sessions().find_by_id(session_id):
            case Ok(session) if session is not None and session.is_expired():
                return Ok(None)
            case result:
                return result

    async def __call__(self, request: Request, call_next):
        if is_path_excluded(request.url.path, self.options.exclude_paths):
            return await call_next(request)
        if self.options.exempt_bearer_requests and extract_bearer(
            request.headers.get("Authorization")
        ):
            # no ambient credential to ride on
            return await call_next(request)

        match self._lookup_session(request.cookies.get(SESSION_COOKIE_NAME)):
            case Err(error):
                logger.warning("csrf_session_lookup_failed", error=str(error))
                return _invalid_token()
            case Ok(session):
                pass

        if not requires_protection(request.method):
            token: Optional[str] = None
            if session is not None:
                match ensure_csrf_token(self._sessions(), session):
                    case Err(error):
                        logger.warning(
                            "csrf_token_issue_failed", session_id=session.id, error=str(error)
                        )
                    case Ok(token):
                        pass
            response = await call_next(request)
            if token:
                response.headers[CSRF_HEADER_NAME] = token
            return response

        if session is None and self.options.session_required:
            logger.warning("csrf_session_missing", path=request.url.path, method=request.method)
            return _error_response(
                403, "Session is required for CSRF protection", error_type="SESSION_REQUIRED"
            )

        expected = session.csrf_token if session is not None else None
        provided = await token_from_request(request)
        if not tokens_match(expected, provided):
            logger.warning(
                "csrf_token_rejected",
                path=request.url.path,
                method=request.method,
                token_present=provided is not None,
            )
            return _invalid_token()
        return await call_next(request)
