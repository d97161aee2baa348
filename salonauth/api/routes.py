from __future__ import annotations

from typing import Optional, assert_never

from fastapi import APIRouter, Body, Cookie, Depends, Header, HTTPException, Path, Query, Request, Response

from salonauth.api.csrf import CSRF_HEADER_NAME, SESSION_COOKIE_NAME, ensure_csrf_token
from salonauth.api.error_handling import _error_code_for_status
from salonauth.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    CsrfTokenResponse,
    EmailVerificationConfirmRequest,
    EmailVerificationSendRequest,
    Envelope,
    ForgotPasswordRequest,
    LockStatusResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    TokenValidationResponse,
    TrustedIpListResponse,
    TrustedIpRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserResponse,
)
from salonauth.logging import get_logger
from salonauth.result import Err, Ok
from salonauth.service import login as login_flow
from salonauth.service import passwords as password_flow
from salonauth.service import sessions as session_flow
from salonauth.service import two_factor as two_factor_flow
from salonauth.service.authentication import AuthContext, authenticate
from salonauth.service.email_verification import (
    confirm_email_verification,
    send_email_verification,
)
from salonauth.service.failures import (
    AccountDeleted,
    AccountLocked,
    AccountNotActive,
    AccountNotLocked,
    AccountSuspended,
    AddTrustedIpError,
    AdminNotFound,
    AdminUserError,
    ChangePasswordError,
    ConfirmVerificationError,
    DatabaseError,
    DisableTwoFactorError,
    DuplicateEmail,
    EmailAlreadyVerified,
    EmailNotVerified,
    EmailServiceError,
    HashError,
    InvalidCode,
    InvalidCredentials,
    InvalidEmail,
    InvalidIpAddress,
    InvalidPassword,
    InvalidRefreshToken,
    InvalidToken,
    InvalidTwoFactorCode,
    IpAlreadyTrusted,
    IpNotFound,
    IpNotTrusted,
    LoginError,
    MaxTrustedIpsReached,
    NotAdmin,
    NotOwner,
    PasswordReused,
    RefreshTokenError,
    RegenerateBackupCodesError,
    RegisterError,
    RemoveTrustedIpError,
    ResetPasswordError,
    RevokeSessionError,
    SessionExpired,
    SessionNotFound,
    SetupTwoFactorError,
    TokenExpired,
    TooManyRequests,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorNotPending,
    TwoFactorRequired,
    TwoFactorStatusError,
    UnlockAccountError,
    UserNotFound,
    VerifyResetTokenError,
    VerifyTwoFactorError,
    WeakPassword,
    error_type,
)
from salonauth.service.runtime import (
    Runtime,
    check_rate_limit,
    denylist_access_token,
    get_runtime,
)
from salonauth.service.trusted_ip import (
    TrustedIpRequest as TrustedIpChange,
    add_trusted_ip,
    get_trusted_ips,
    remove_trusted_ip,
)
from salonauth.storage.models import Session, User, status_name, two_factor_name

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

REFRESH_COOKIE_NAME = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"

FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, a password reset link has been sent"
VERIFICATION_SENT_MESSAGE = (
    "If the account exists and is awaiting verification, a verification email has been sent"
)
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"
INVALID_VERIFICATION_TOKEN_MESSAGE = "Invalid or expired verification token"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    *,
    error_type: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if error_type is not None:
        payload["error"]["type"] = error_type  # type: ignore[index]
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _fail(
    failure: object,
    status_code: int,
    message: str,
    details: Optional[dict] = None,
    *,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    """HTTP error whose ``type`` names the failure variant."""
    return _http_error(
        _error_code_for_status(status_code),
        message,
        status_code,
        details,
        error_type=error_type(failure),
        headers=headers,
    )


def _database_failure(error: DatabaseError) -> HTTPException:
    logger.error("database_error", message=error.message)
    return _fail(error, 500, "Internal server error")


def _hash_failure(error: HashError) -> HTTPException:
    logger.error("password_hash_error", message=error.message)
    return _fail(error, 500, "Internal server error")


def _email_failure(error: EmailServiceError) -> HTTPException:
    logger.error("email_service_error", message=error.message)
    return _fail(error, 500, "Failed to send email")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one request from the ``key`` bucket.

    Raises:
        HTTPException with 429 if the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later",
            429,
            error_type="TOO_MANY_REQUESTS",
            headers={
                "Retry-After": str(max(1, reset_seconds)),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return info


def _client_ip(request: Request) -> str:
    settings = get_runtime().settings
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _login_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
    )


async def _reset_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.reset_rate_limit_window_seconds,
        response=response,
    )


async def _general_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"general:{_client_ip(request)}",
        runtime.settings.general_rate_limit_per_window,
        runtime.settings.general_rate_limit_window_seconds,
        response=response,
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
) -> AuthContext:
    return await authenticate(
        get_runtime(),
        authorization=authorization,
        session_id=session_cookie,
        ip_address=_client_ip(request),
    )


async def get_admin_actor(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
) -> AuthContext:
    """Authenticated caller of an admin route; the use case checks the role."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_window,
        runtime.settings.admin_rate_limit_window_seconds,
        response=response,
    )
    return principal


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        status=status_name(user.status),
        email_verified=user.email_verified,
        two_factor=two_factor_name(user.two_factor),
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _apply_session_cookies(response: Response, session: Session, *, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.id,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        session.refresh_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        expires=session.expires_at,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response, *, secure: bool) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/", secure=secure, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE_NAME, path=REFRESH_COOKIE_PATH, secure=secure, samesite="strict"
    )


async def _revoke_access_token(runtime: Runtime, principal: AuthContext) -> None:
    if principal.claims:
        await denylist_access_token(runtime, principal.claims["jti"], principal.claims["exp"])


# --- error mapping, one function per use case -----------------------------


def _register_failure(error: RegisterError) -> HTTPException:
    match error:
        case InvalidEmail():
            return _fail(error, 400, "Invalid email address")
        case WeakPassword(reason=reason):
            return _fail(error, 400, "Password does not meet security requirements", {"reason": reason})
        case DuplicateEmail():
            return _fail(error, 409, "Email already registered")
        case HashError():
            return _hash_failure(error)
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _login_failure(error: LoginError) -> HTTPException:
    match error:
        case InvalidCredentials():
            return _fail(error, 401, "Invalid email or password")
        case AccountDeleted():
            # indistinguishable from an unknown account
            return _fail(InvalidCredentials(), 401, "Invalid email or password")
        case AccountLocked(until=until):
            return _fail(
                error,
                403,
                "Account is temporarily locked due to too many failed login attempts",
                {"locked_until": until.isoformat()},
            )
        case AccountSuspended():
            return _fail(error, 403, "Account is suspended")
        case EmailNotVerified():
            return _fail(error, 403, "Email address is not verified")
        case TwoFactorRequired():
            return _fail(error, 401, "Two-factor authentication code required", {"two_factor_required": True})
        case InvalidTwoFactorCode():
            return _fail(error, 401, "Invalid two-factor authentication code")
        case IpNotTrusted(ip_address=ip):
            return _fail(error, 403, f"Access denied from IP address: {ip}")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _refresh_failure(error: RefreshTokenError) -> HTTPException:
    match error:
        case InvalidRefreshToken():
            return _fail(error, 401, "Invalid refresh token")
        case SessionExpired():
            return _fail(error, 401, "Session has expired")
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case AccountNotActive():
            return _fail(error, 403, "Account is not active")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _revoke_failure(error: RevokeSessionError) -> HTTPException:
    match error:
        case SessionNotFound():
            return _fail(error, 404, "Session not found")
        case NotOwner():
            return _fail(error, 403, "You can only revoke your own sessions")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _reset_token_failure(error: VerifyResetTokenError) -> HTTPException:
    match error:
        case InvalidToken() | TokenExpired():
            return _fail(InvalidToken(), 400, INVALID_RESET_TOKEN_MESSAGE)
        case _:
            assert_never(error)


def _reset_password_failure(error: ResetPasswordError) -> HTTPException:
    match error:
        case WeakPassword(reason=reason):
            return _fail(error, 400, "Password does not meet security requirements", {"reason": reason})
        case InvalidToken() | TokenExpired():
            return _fail(InvalidToken(), 400, INVALID_RESET_TOKEN_MESSAGE)
        case PasswordReused():
            return _fail(error, 400, "Password was used recently. Please choose a different password")
        case HashError():
            return _hash_failure(error)
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _change_password_failure(error: ChangePasswordError) -> HTTPException:
    match error:
        case WeakPassword(reason=reason):
            return _fail(error, 400, "New password does not meet security requirements", {"reason": reason})
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case InvalidPassword():
            return _fail(error, 400, "Current password is incorrect")
        case PasswordReused():
            return _fail(error, 400, "Password was used recently. Please choose a different password")
        case HashError():
            return _hash_failure(error)
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _confirm_verification_failure(error: ConfirmVerificationError) -> HTTPException:
    match error:
        case InvalidToken() | TokenExpired():
            return _fail(InvalidToken(), 400, INVALID_VERIFICATION_TOKEN_MESSAGE)
        case EmailAlreadyVerified():
            return _fail(error, 409, "Email is already verified")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _two_factor_status_failure(error: TwoFactorStatusError) -> HTTPException:
    match error:
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _setup_two_factor_failure(error: SetupTwoFactorError) -> HTTPException:
    match error:
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case AccountNotActive():
            return _fail(error, 403, "Account is not active")
        case EmailNotVerified():
            return _fail(error, 403, "Email must be verified before enabling 2FA")
        case TwoFactorAlreadyEnabled():
            return _fail(error, 409, "Two-factor authentication is already enabled")
        case InvalidPassword():
            return _fail(error, 401, "Invalid password")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _verify_two_factor_failure(error: VerifyTwoFactorError) -> HTTPException:
    match error:
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case AccountNotActive():
            return _fail(error, 403, "Account is not active")
        case TwoFactorNotPending():
            return _fail(error, 409, "Two-factor authentication setup not in progress")
        case InvalidCode():
            return _fail(error, 401, "Invalid verification code")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _disable_two_factor_failure(error: DisableTwoFactorError) -> HTTPException:
    match error:
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case AccountNotActive():
            return _fail(error, 403, "Account is not active")
        case TwoFactorNotEnabled():
            return _fail(error, 409, "Two-factor authentication is not enabled")
        case InvalidPassword():
            return _fail(error, 401, "Invalid password")
        case InvalidCode():
            return _fail(error, 401, "Invalid verification code")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _regenerate_codes_failure(error: RegenerateBackupCodesError) -> HTTPException:
    match error:
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case AccountNotActive():
            return _fail(error, 403, "Account is not active")
        case TwoFactorNotEnabled():
            return _fail(error, 409, "Two-factor authentication is not enabled")
        case InvalidCode():
            return _fail(error, 401, "Invalid verification code")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _admin_lookup_failure(error: AdminUserError, forbidden_message: str) -> HTTPException:
    match error:
        case AdminNotFound():
            return _fail(error, 404, "Admin user not found")
        case NotAdmin():
            return _fail(error, 403, forbidden_message)
        case UserNotFound():
            return _fail(error, 404, "User not found")
        case DatabaseError():
            return _database_failure(error)
        case _:
            assert_never(error)


def _add_trusted_ip_failure(error: AddTrustedIpError) -> HTTPException:
    match error:
        case InvalidIpAddress():
            return _fail(error, 400, "Invalid IP address format")
        case AdminNotFound() | NotAdmin() | UserNotFound() | DatabaseError():
            return _admin_lookup_failure(error, "Only admins can manage trusted IPs")
        case IpAlreadyTrusted():
            return _fail(error, 409, "IP address is already trusted")
        case MaxTrustedIpsReached(limit=limit):
            return _fail(error, 409, "Maximum number of trusted IPs reached", {"max_trusted_ips": limit})
        case _:
            assert_never(error)


def _remove_trusted_ip_failure(error: RemoveTrustedIpError) -> HTTPException:
    match error:
        case AdminNotFound() | NotAdmin() | UserNotFound() | DatabaseError():
            return _admin_lookup_failure(error, "Only admins can manage trusted IPs")
        case IpNotFound():
            return _fail(error, 404, "IP address not found in trusted list")
        case _:
            assert_never(error)


def _unlock_failure(error: UnlockAccountError) -> HTTPException:
    match error:
        case AdminNotFound() | NotAdmin() | UserNotFound() | DatabaseError():
            return _admin_lookup_failure(error, "Only admins can unlock accounts")
        case AccountNotLocked():
            return _fail(error, 409, "Account is not locked")
        case _:
            assert_never(error)


# --- registration, login and sessions ------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account awaiting email verification.

    No session is issued; the user logs in after confirming the emailed link.
    """
    await _login_rate_limit(request, response)
    runtime = get_runtime()
    result = await login_flow.register(
        login_flow.RegisterRequest(
            email=body.email, password=body.password, name=body.name, role=body.role
        ),
        runtime.password_deps(),
    )
    match result:
        case Err(error):
            raise _register_failure(error)
        case Ok(user):
            return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email, password and, when enrolled, a 2FA or backup code."""
    await _login_rate_limit(request, response)
    runtime = get_runtime()
    result = await login_flow.login(
        login_flow.LoginRequest(
            email=body.email,
            password=body.password,
            ip_address=_client_ip(request),
            user_agent=user_agent,
            remember_me=body.remember_me,
            two_factor_code=body.two_factor_code,
        ),
        runtime.login_deps(),
    )
    match result:
        case Err(error):
            raise _login_failure(error)
        case Ok(outcome):
            pass

    access = runtime.tokens.issue_access_token(outcome.user, outcome.session)
    csrf_token: Optional[str] = None
    match ensure_csrf_token(runtime.sessions, outcome.session):
        case Err(error):
            logger.warning("login_csrf_token_failed", session_id=outcome.session.id, error=str(error))
        case Ok(csrf_token):
            response.headers[CSRF_HEADER_NAME] = csrf_token
    _apply_session_cookies(response, outcome.session, secure=runtime.settings.session_cookie_secure)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=access.token,
            refresh_token=outcome.session.refresh_token,
            expires_in=access.expires_in,
            session_id=outcome.session.id,
            session_expires_at=outcome.session.expires_at,
            csrf_token=csrf_token,
            used_backup_code=outcome.used_backup_code,
            remaining_backup_codes=outcome.remaining_backup_codes,
            user=_user_to_response(outcome.user),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME),
):
    """Rotate the refresh token and mint a new access token."""
    await _general_rate_limit(request, response)
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error(
            "validation_error", "Refresh token is required", 400, error_type="VALIDATION_ERROR"
        )
    runtime = get_runtime()
    match await session_flow.refresh_token(token, runtime.session_deps()):
        case Err(error):
            if isinstance(error, SessionExpired):
                _clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
            raise _refresh_failure(error)
        case Ok(pair):
            pass
    _apply_session_cookies(response, pair.session, secure=runtime.settings.session_cookie_secure)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            session_id=pair.session.id,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    match await session_flow.logout(principal.session_id, runtime.session_deps()):
        case Err(SessionNotFound()):
            # already gone; the caller is logged out either way
            pass
        case Err(DatabaseError() as error):
            raise _database_failure(error)
        case Ok(_):
            pass
    await _revoke_access_token(runtime, principal)
    _clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    match await session_flow.logout_all(principal.user_id, runtime.session_deps()):
        case Err(error):
            raise _database_failure(error)
        case Ok(count):
            pass
    await _revoke_access_token(runtime, principal)
    _clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
    return Envelope(
        status="ok",
        data={"message": "Logged out from all sessions successfully", "sessions_revoked": count},
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    match await session_flow.get_sessions(
        principal.user_id, principal.session_id, runtime.session_deps()
    ):
        case Err(error):
            raise _database_failure(error)
        case Ok(listing):
            return Envelope(
                status="ok",
                data=SessionListResponse(
                    sessions=[
                        SessionResponse(
                            id=s.id,
                            ip_address=s.ip_address,
                            user_agent=s.user_agent,
                            created_at=s.created_at,
                            last_activity_at=s.last_activity_at,
                            expires_at=s.expires_at,
                            remember_me=s.remember_me,
                            is_current=s.is_current,
                        )
                        for s in listing.sessions
                    ],
                    total=listing.total,
                ),
            )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    request: Request,
    response: Response,
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    match await session_flow.revoke_session(session_id, principal.user_id, runtime.session_deps()):
        case Err(error):
            raise _revoke_failure(error)
        case Ok(_):
            pass
    if session_id == principal.session_id:
        await _revoke_access_token(runtime, principal)
        _clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
    return Envelope(status="ok", data=MessageResponse(message="Session revoked successfully"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    return Envelope(status="ok", data=_user_to_response(principal.user))


@router.get("/auth/csrf-token", response_model=Envelope, tags=["auth"])
async def get_csrf_token(
    response: Response,
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    """Return the CSRF token bound to the caller's session cookie."""
    runtime = get_runtime()
    session: Optional[Session] = None
    if session_cookie:
        match runtime.sessions.find_by_id(session_cookie):
            case Err(error):
                logger.error("csrf_session_lookup_failed", error=str(error))
                raise _http_error("server_error", "Internal server error", 500, error_type="DATABASE_ERROR")
            case Ok(found) if found is not None and not found.is_expired():
                session = found
            case Ok(_):
                pass
    if session is None:
        raise _http_error(
            "validation_error",
            "Session is required to generate CSRF token",
            400,
            error_type="SESSION_REQUIRED",
        )
    match ensure_csrf_token(runtime.sessions, session):
        case Err(error):
            logger.error("csrf_token_issue_failed", session_id=session.id, error=str(error))
            raise _http_error("server_error", "Internal server error", 500, error_type="DATABASE_ERROR")
        case Ok(token):
            response.headers[CSRF_HEADER_NAME] = token
            return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token))


# --- password lifecycle ----------------------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Email a reset link. The reply is identical whether or not the account exists."""
    await _reset_rate_limit(request, response)
    runtime = get_runtime()
    result = await password_flow.request_password_reset(body.email, runtime.password_deps())
    match result:
        case Ok(_) | Err(UserNotFound()):
            pass
        case Err(TooManyRequests(retry_after_seconds=retry_after)):
            logger.info("password_reset_request_throttled", retry_after_seconds=retry_after)
        case Err(EmailServiceError() as error):
            raise _email_failure(error)
        case Err(DatabaseError() as error):
            raise _database_failure(error)
        case _:
            assert_never(result)
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.get("/auth/reset-password/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=256),
):
    await _reset_rate_limit(request, response)
    runtime = get_runtime()
    match await password_flow.verify_reset_token(token, runtime.base_deps()):
        case Err(error):
            raise _reset_token_failure(error)
        case Ok(_):
            return Envelope(status="ok", data=TokenValidationResponse(valid=True))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    await _reset_rate_limit(request, response)
    runtime = get_runtime()
    result = await password_flow.reset_password(
        password_flow.ResetPasswordRequest(token=body.token, new_password=body.new_password),
        runtime.password_deps(),
    )
    match result:
        case Err(error):
            raise _reset_password_failure(error)
        case Ok(_):
            return Envelope(
                status="ok", data=MessageResponse(message="Password has been reset successfully")
            )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    result = await password_flow.change_password(
        password_flow.ChangePasswordRequest(
            user_id=principal.user_id,
            current_password=body.current_password,
            new_password=body.new_password,
        ),
        runtime.password_deps(),
    )
    match result:
        case Err(error):
            raise _change_password_failure(error)
        case Ok(_):
            return Envelope(
                status="ok", data=MessageResponse(message="Password has been changed successfully")
            )


# --- email verification ----------------------------------------------------


@router.post("/auth/email-verification/send", response_model=Envelope, tags=["auth"])
async def send_verification(body: EmailVerificationSendRequest, request: Request, response: Response):
    """Resend the verification email.

    Unverified accounts cannot log in, so the account is named by email and the
    reply does not reveal whether it exists or is already verified.
    """
    await _reset_rate_limit(request, response)
    runtime = get_runtime()
    match runtime.users.find_by_email(body.email):
        case Err(error):
            logger.error("verification_lookup_failed", error=str(error))
            raise _http_error("server_error", "Internal server error", 500, error_type="DATABASE_ERROR")
        case Ok(None):
            return Envelope(status="ok", data=MessageResponse(message=VERIFICATION_SENT_MESSAGE))
        case Ok(user):
            pass

    result = await send_email_verification(
        user.id, runtime.email_verification_deps()
    )
    match result:
        case Ok(_) | Err(UserNotFound()) | Err(EmailAlreadyVerified()) | Err(AccountNotActive()):
            pass
        case Err(TooManyRequests(retry_after_seconds=retry_after)):
            logger.info("email_verification_request_throttled", retry_after_seconds=retry_after)
        case Err(EmailServiceError() as error):
            raise _email_failure(error)
        case Err(DatabaseError() as error):
            raise _database_failure(error)
        case _:
            assert_never(result)
    return Envelope(status="ok", data=MessageResponse(message=VERIFICATION_SENT_MESSAGE))


@router.post("/auth/email-verification/confirm", response_model=Envelope, tags=["auth"])
async def confirm_verification(
    body: EmailVerificationConfirmRequest, request: Request, response: Response
):
    await _reset_rate_limit(request, response)
    runtime = get_runtime()
    match await confirm_email_verification(body.token, runtime.email_verification_deps()):
        case Err(error):
            raise _confirm_verification_failure(error)
        case Ok(user):
            return Envelope(
                status="ok",
                data={"message": "Email has been verified successfully", "user": _user_to_response(user)},
            )


# --- two-factor ------------------------------------------------------------


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    match await two_factor_flow.get_two_factor_status(principal.user_id, runtime.two_factor_deps()):
        case Err(error):
            raise _two_factor_status_failure(error)
        case Ok(state):
            return Envelope(
                status="ok",
                data=TwoFactorStatusResponse(
                    status=state.status,
                    enabled=state.status == "enabled",
                    remaining_backup_codes=state.remaining_backup_codes,
                ),
            )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(
    body: TwoFactorSetupRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Start TOTP enrollment; the secret stays pending until a code is verified."""
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    result = await two_factor_flow.setup_two_factor(
        two_factor_flow.SetupTwoFactorRequest(user_id=principal.user_id, password=body.password),
        runtime.two_factor_deps(),
    )
    match result:
        case Err(error):
            raise _setup_two_factor_failure(error)
        case Ok(setup):
            return Envelope(
                status="ok",
                data=TwoFactorSetupResponse(
                    secret=setup.secret,
                    qr_code_url=setup.qr_code_url,
                    otpauth_uri=setup.otpauth_uri,
                    backup_codes=list(setup.backup_codes),
                ),
            )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_two_factor(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    result = await two_factor_flow.verify_two_factor(
        two_factor_flow.TwoFactorCodeRequest(user_id=principal.user_id, code=body.code),
        runtime.two_factor_deps(),
    )
    match result:
        case Err(error):
            raise _verify_two_factor_failure(error)
        case Ok(backup_codes):
            return Envelope(
                status="ok",
                data={
                    "message": "Two-factor authentication enabled successfully",
                    "backup_codes": list(backup_codes),
                },
            )


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    result = await two_factor_flow.disable_two_factor(
        two_factor_flow.DisableTwoFactorRequest(
            user_id=principal.user_id, password=body.password, code=body.code
        ),
        runtime.two_factor_deps(),
    )
    match result:
        case Err(error):
            raise _disable_two_factor_failure(error)
        case Ok(_):
            return Envelope(
                status="ok",
                data=MessageResponse(message="Two-factor authentication disabled successfully"),
            )


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    await _general_rate_limit(request, response)
    runtime = get_runtime()
    result = await two_factor_flow.regenerate_backup_codes(
        two_factor_flow.TwoFactorCodeRequest(user_id=principal.user_id, code=body.code),
        runtime.two_factor_deps(),
    )
    match result:
        case Err(error):
            raise _regenerate_codes_failure(error)
        case Ok(backup_codes):
            return Envelope(status="ok", data=BackupCodesResponse(backup_codes=list(backup_codes)))


# --- admin: trusted IPs and lockout ----------------------------------------


def _trusted_ip_response(listing) -> TrustedIpListResponse:
    return TrustedIpListResponse(
        user_id=listing.user_id,
        trusted_ip_addresses=list(listing.trusted_ip_addresses),
        max_trusted_ips=listing.max_trusted_ips,
    )


@router.post("/auth/trusted-ip/{user_id}", response_model=Envelope, tags=["admin"])
async def add_trusted_ip_route(
    body: TrustedIpRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_actor),
):
    runtime = get_runtime()
    result = await add_trusted_ip(
        TrustedIpChange(user_id=user_id, ip_address=body.ip_address, admin_user_id=principal.user_id),
        runtime.trusted_ip_deps(),
    )
    match result:
        case Err(error):
            raise _add_trusted_ip_failure(error)
        case Ok(listing):
            return Envelope(status="ok", data=_trusted_ip_response(listing))


@router.delete("/auth/trusted-ip/{user_id}", response_model=Envelope, tags=["admin"])
async def remove_trusted_ip_route(
    body: TrustedIpRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_actor),
):
    runtime = get_runtime()
    result = await remove_trusted_ip(
        TrustedIpChange(user_id=user_id, ip_address=body.ip_address, admin_user_id=principal.user_id),
        runtime.trusted_ip_deps(),
    )
    match result:
        case Err(error):
            raise _remove_trusted_ip_failure(error)
        case Ok(listing):
            return Envelope(status="ok", data=_trusted_ip_response(listing))


@router.get("/auth/trusted-ip/{user_id}", response_model=Envelope, tags=["admin"])
async def list_trusted_ips_route(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_actor),
):
    runtime = get_runtime()
    match await get_trusted_ips(user_id, principal.user_id, runtime.trusted_ip_deps()):
        case Err(error):
            raise _admin_lookup_failure(error, "Only admins can manage trusted IPs")
        case Ok(listing):
            return Envelope(status="ok", data=_trusted_ip_response(listing))


@router.post("/auth/unlock/{user_id}", response_model=Envelope, tags=["admin"])
async def unlock_account_route(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_actor),
):
    runtime = get_runtime()
    result = await login_flow.unlock_account(
        login_flow.UnlockRequest(user_id=user_id, admin_user_id=principal.user_id),
        runtime.base_deps(),
    )
    match result:
        case Err(error):
            raise _unlock_failure(error)
        case Ok(user):
            return Envelope(
                status="ok",
                data={"message": "Account unlocked successfully", "user": _user_to_response(user)},
            )


@router.get("/auth/lock-status/{user_id}", response_model=Envelope, tags=["admin"])
async def lock_status_route(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_actor),
):
    runtime = get_runtime()
    match await login_flow.get_lock_status(user_id, principal.user_id, runtime.base_deps()):
        case Err(error):
            raise _admin_lookup_failure(error, "Only admins can view lock status")
        case Ok(lock):
            return Envelope(
                status="ok",
                data=LockStatusResponse(
                    user_id=user_id,
                    is_locked=lock.is_locked,
                    status=lock.status,
                    locked_at=lock.locked_at,
                    reason=lock.reason,
                    failed_attempts=lock.failed_attempts,
                    expires_at=lock.expires_at,
                ),
            )
