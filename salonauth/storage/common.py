"""Record conversion shared between the memory and postgres stores.

Both backends keep the tagged unions of a :class:`User` as small JSON objects
with a ``type`` discriminator, e.g. ``{"type": "locked", "reason": ...}``, so
that the JSON snapshot and the JSONB columns share one format.
"""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from salonauth.logging import get_logger
from salonauth.storage.models import (
    AccountStatus,
    Active,
    Deleted,
    Locked,
    NoPasswordReset,
    PasswordResetRequested,
    PasswordResetStatus,
    Session,
    Suspended,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
    TwoFactorStatus,
    Unverified,
    User,
)

logger = get_logger(__name__)

SecretCodec = Callable[[str], str]


def _identity(value: str) -> str:
    return value


# ============================================================================
# DATETIMES / JSON
# ============================================================================


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def parse_datetime(raw: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime), always tz-aware UTC."""
    if raw is None or raw == "":
        return None
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_json_field(raw: Any) -> Optional[Dict]:
    """Decode a JSON column that a driver may hand back as text or as a dict."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("json_field_decode_failed", length=len(raw))
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


# ============================================================================
# SECRET ENCRYPTION
# ============================================================================


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("two-factor encryption key material is required")
        self._fernet = Fernet(derive_cipher_key(key_material))

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # wrong or rotated key
            logger.error("two_factor_secret_decrypt_failed")
            raise


# ============================================================================
# TAGGED UNIONS
# ============================================================================


def status_to_record(status: AccountStatus) -> Dict[str, Any]:
    match status:
        case Active():
            return {"type": "active"}
        case Unverified(email_verification_token=token, token_expiry=expiry):
            return {
                "type": "unverified",
                "email_verification_token": token,
                "token_expiry": serialize_datetime(expiry),
            }
        case Locked(reason=reason, locked_at=locked_at, failed_attempts=attempts):
            return {
                "type": "locked",
                "reason": reason,
                "locked_at": serialize_datetime(locked_at),
                "failed_attempts": attempts,
            }
        case Suspended(reason=reason, suspended_at=suspended_at):
            return {
                "type": "suspended",
                "reason": reason,
                "suspended_at": serialize_datetime(suspended_at),
            }
        case Deleted(deleted_at=deleted_at):
            return {"type": "deleted", "deleted_at": serialize_datetime(deleted_at)}
    raise ValueError(f"unknown account status: {status!r}")


def status_from_record(record: Optional[Dict[str, Any]]) -> AccountStatus:
    record = record or {"type": "active"}
    kind = record.get("type")
    if kind == "active":
        return Active()
    if kind == "unverified":
        return Unverified(
            email_verification_token=record["email_verification_token"],
            token_expiry=parse_datetime(record["token_expiry"]),
        )
    if kind == "locked":
        return Locked(
            reason=record.get("reason", ""),
            locked_at=parse_datetime(record["locked_at"]),
            failed_attempts=int(record.get("failed_attempts", 0)),
        )
    if kind == "suspended":
        return Suspended(
            reason=record.get("reason", ""),
            suspended_at=parse_datetime(record["suspended_at"]),
        )
    if kind == "deleted":
        return Deleted(deleted_at=parse_datetime(record["deleted_at"]))
    raise ValueError(f"unknown account status record: {kind!r}")


def two_factor_to_record(
    status: TwoFactorStatus, encrypt: SecretCodec = _identity
) -> Dict[str, Any]:
    match status:
        case TwoFactorDisabled():
            return {"type": "disabled"}
        case TwoFactorPending(secret=secret, qr_code_url=qr, backup_codes=codes):
            return {
                "type": "pending",
                "secret": encrypt(secret),
                "qr_code_url": qr,
                "backup_codes": list(codes),
            }
        case TwoFactorEnabled(secret=secret, backup_codes=codes):
            return {"type": "enabled", "secret": encrypt(secret), "backup_codes": list(codes)}
    raise ValueError(f"unknown two-factor status: {status!r}")


def two_factor_from_record(
    record: Optional[Dict[str, Any]], decrypt: SecretCodec = _identity
) -> TwoFactorStatus:
    record = record or {"type": "disabled"}
    kind = record.get("type")
    if kind == "disabled":
        return TwoFactorDisabled()
    if kind == "pending":
        return TwoFactorPending(
            secret=decrypt(record["secret"]),
            qr_code_url=record.get("qr_code_url", ""),
            backup_codes=tuple(record.get("backup_codes") or ()),
        )
    if kind == "enabled":
        return TwoFactorEnabled(
            secret=decrypt(record["secret"]),
            backup_codes=tuple(record.get("backup_codes") or ()),
        )
    raise ValueError(f"unknown two-factor record: {kind!r}")


def password_reset_to_record(status: PasswordResetStatus) -> Dict[str, Any]:
    match status:
        case NoPasswordReset():
            return {"type": "none"}
        case PasswordResetRequested(token=token, token_expiry=expiry):
            return {
                "type": "requested",
                "token": token,
                "token_expiry": serialize_datetime(expiry),
            }
    raise ValueError(f"unknown password reset status: {status!r}")


def password_reset_from_record(record: Optional[Dict[str, Any]]) -> PasswordResetStatus:
    if not record or record.get("type") == "none":
        return NoPasswordReset()
    if record.get("type") == "requested":
        return PasswordResetRequested(
            token=record["token"], token_expiry=parse_datetime(record["token_expiry"])
        )
    raise ValueError(f"unknown password reset record: {record.get('type')!r}")


def verification_token_of(user: User) -> Optional[str]:
    if isinstance(user.status, Unverified):
        return user.status.email_verification_token
    return None


def reset_token_of(user: User) -> Optional[str]:
    if isinstance(user.password_reset, PasswordResetRequested):
        return user.password_reset.token
    return None


# ============================================================================
# AGGREGATES
# ============================================================================


def user_to_record(user: User, encrypt: SecretCodec = _identity) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "password_hash": user.password_hash,
        "role": user.role,
        "email_verified": user.email_verified,
        "status": status_to_record(user.status),
        "two_factor": two_factor_to_record(user.two_factor, encrypt),
        "password_reset": password_reset_to_record(user.password_reset),
        "password_history": list(user.password_history),
        "trusted_ip_addresses": list(user.trusted_ip_addresses),
        "failed_login_attempts": user.failed_login_attempts,
        "created_at": serialize_datetime(user.created_at),
        "updated_at": serialize_datetime(user.updated_at),
        "last_password_change_at": serialize_datetime(user.last_password_change_at),
        "last_login_at": serialize_datetime(user.last_login_at),
        "last_login_ip": user.last_login_ip,
    }


def user_from_record(record: Dict[str, Any], decrypt: SecretCodec = _identity) -> User:
    return User(
        id=str(record["id"]),
        email=record["email"],
        name=record.get("name") or "",
        password_hash=record["password_hash"],
        role=record.get("role") or "customer",
        email_verified=bool(record.get("email_verified")),
        status=status_from_record(parse_json_field(record.get("status"))),
        two_factor=two_factor_from_record(parse_json_field(record.get("two_factor")), decrypt),
        password_reset=password_reset_from_record(
            parse_json_field(record.get("password_reset"))
        ),
        password_history=tuple(record.get("password_history") or ()),
        trusted_ip_addresses=tuple(str(ip) for ip in record.get("trusted_ip_addresses") or ()),
        failed_login_attempts=int(record.get("failed_login_attempts") or 0),
        created_at=parse_datetime(record["created_at"]),
        updated_at=parse_datetime(record.get("updated_at") or record["created_at"]),
        last_password_change_at=parse_datetime(record.get("last_password_change_at")),
        last_login_at=parse_datetime(record.get("last_login_at")),
        last_login_ip=record.get("last_login_ip"),
    )


def session_to_record(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "refresh_token": session.refresh_token,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "expires_at": serialize_datetime(session.expires_at),
        "remember_me": session.remember_me,
        "created_at": serialize_datetime(session.created_at),
        "last_activity_at": serialize_datetime(session.last_activity_at),
        "meta": session.meta or {},
    }


def session_from_record(record: Dict[str, Any]) -> Session:
    ip = record.get("ip_address")
    return Session(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        refresh_token=record["refresh_token"],
        ip_address=str(ip) if ip is not None else None,
        user_agent=record.get("user_agent"),
        expires_at=parse_datetime(record["expires_at"]),
        remember_me=bool(record.get("remember_me")),
        created_at=parse_datetime(record["created_at"]),
        last_activity_at=parse_datetime(
            record.get("last_activity_at") or record["created_at"]
        ),
        meta=parse_json_field(record.get("meta")) or None,
    )
