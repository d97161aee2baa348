from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from salonauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

_ERROR_TYPE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


class ErrorBody(BaseModel):
    """Error envelope body: a stable status ``code`` plus the domain ``type``."""

    code: str = Field(..., description="Stable error code derived from the HTTP status")
    type: Optional[str] = Field(
        default=None, description="Domain failure variant, e.g. IP_ALREADY_TRUSTED"
    )
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value

    @field_validator("type")
    @classmethod
    def _validate_error_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _ERROR_TYPE_PATTERN.match(value):
            raise ValueError("error type must be UPPER_SNAKE_CASE")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    return normalized


# --- auth -------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)
    name: str = Field(..., min_length=1, max_length=100)
    role: Literal["customer", "staff"] = "customer"

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name must not be blank")
        return normalized


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=256)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _normalize_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    status: str
    email_verified: bool
    two_factor: str
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: str
    session_expires_at: datetime
    csrf_token: Optional[str] = None
    used_backup_code: bool = False
    remaining_backup_codes: Optional[int] = None
    user: UserResponse


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=256)


class TokenRefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: str


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    remember_me: bool
    is_current: bool


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class MessageResponse(BaseModel):
    message: str


# --- password lifecycle -----------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _normalize_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class TokenValidationResponse(BaseModel):
    valid: bool
    email: Optional[str] = None


class EmailVerificationSendRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_verification_email(cls, value: str) -> str:
        return _normalize_email(value)


class EmailVerificationConfirmRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


# --- two-factor -------------------------------------------------------------


class TwoFactorSetupRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=256)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    qr_code_url: str
    otpauth_uri: str
    backup_codes: List[str]


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=16)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    status: Literal["disabled", "pending", "enabled"]
    enabled: bool
    remaining_backup_codes: Optional[int] = None


# --- admin ------------------------------------------------------------------


class TrustedIpRequest(BaseModel):
    ip_address: str = Field(..., min_length=1, max_length=64)


class TrustedIpListResponse(BaseModel):
    user_id: str
    trusted_ip_addresses: List[str]
    max_trusted_ips: int


class LockStatusResponse(BaseModel):
    user_id: str
    is_locked: bool
    status: str
    locked_at: Optional[datetime] = None
    reason: Optional[str] = None
    failed_attempts: Optional[int] = None
    expires_at: Optional[datetime] = None
