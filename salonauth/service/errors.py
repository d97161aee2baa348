from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for exceptions raised outside the use cases and mapped to HTTP.

    Use cases return failure variants instead of raising. These exceptions cover
    request authentication, where a dependency has to abort the request before
    any use case runs. Each class carries an HTTP
    ``status_code``, a stable ``error_code`` and optionally the ``error_type``
    variant name shown in the envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    error_type: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if error_type is not None:
            self.error_type = error_type
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    error_type = "UNAUTHORIZED"


class SessionExpiredError(AuthenticationError):
    error_type = "SESSION_EXPIRED"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    error_type = "FORBIDDEN"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    error_type = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "ServerError",
]
