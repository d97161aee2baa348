from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import re
import secrets
import string
import time
from io import BytesIO
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

import qrcode
import qrcode.image.svg
from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128
PASSWORD_REUSE_DEPTH = 3

BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SPECIAL_RE = re.compile(r"[^A-Za-z0-9]")


# ============================================================================
# PASSWORDS
# ============================================================================


class PasswordHasher:
    """argon2id hashing with a configurable cost."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash(self, password: str) -> Result[str, str]:
        try:
            return Ok(self._hasher.hash(password))
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            return Err(str(exc))

    def verify(self, password_hash: str, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def matches_any(self, hashes: Iterable[str], password: str) -> bool:
        return any(self.verify(candidate, password) for candidate in hashes)


def validate_password_strength(password: str) -> Optional[str]:
    """Return a human-readable reason when ``password`` is too weak, else None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
    has_upper = any(ch.isupper() for ch in password)
    has_lower = any(ch.islower() for ch in password)
    has_digit = any(ch.isdigit() for ch in password)
    has_special = bool(_SPECIAL_RE.search(password))
    if not (has_upper and has_lower and has_digit and has_special):
        return "Password must contain uppercase, lowercase, numbers, and special characters"
    return None


def is_valid_email(email: str) -> bool:
    return bool(email) and len(email) <= 254 and bool(_EMAIL_RE.match(email))


def is_valid_ip_address(value: str) -> bool:
    """Accept IPv4 dotted quads and IPv6 (including compressed) literals."""
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


# ============================================================================
# RANDOM TOKENS
# ============================================================================


def generate_token(num_bytes: int = 32) -> str:
    """Hex-encoded random token (64 characters for the default 32 bytes)."""
    return secrets.token_hex(num_bytes)


def tokens_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def generate_backup_codes(count: int = 8) -> List[str]:
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def consume_backup_code(codes: Sequence[str], code: str) -> Optional[Tuple[str, ...]]:
    """Return the remaining codes when ``code`` exactly matches one of ``codes``, else None."""
    for index, candidate in enumerate(codes):
        if hmac.compare_digest(candidate.encode(), code.encode()):
            return tuple(codes[:index]) + tuple(codes[index + 1 :])
    return None


# ============================================================================
# TOTP
# ============================================================================


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded.upper(), True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    # SHA-1 is what authenticator apps implement for otpauth://totp
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 2,
    interval: int = 30,
    now: Optional[float] = None,
) -> bool:
    """Check ``code`` against the steps within ``window`` of the current one."""
    code = (code or "").strip().replace(" ", "")
    if not code.isdigit() or len(code) != 6:
        return False
    timestamp = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def build_otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer, "algorithm": "SHA1", "digits": 6, "period": 30})
    return f"otpauth://totp/{label}?{query}"


def build_qr_code_url(otpauth_uri: str) -> str:
    """Render ``otpauth_uri`` as an SVG QR code and return it as a data URL."""
    image = qrcode.make(otpauth_uri, image_factory=qrcode.image.svg.SvgPathImage)
    buf = BytesIO()
    image.save(buf)
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
