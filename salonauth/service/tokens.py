from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from salonauth.logging import get_logger
from salonauth.storage.models import Session, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessToken:
    token: str
    jti: str
    expires_in: int
    expires_at: float


class TokenService:
    """HS256 access tokens bound to a session id (``sid``)."""

    CLOCK_SKEW_LEEWAY_SECONDS = 30

    def __init__(self, secret: str, *, issuer: str, ttl_minutes: int) -> None:
        if not secret:
            raise ValueError("JWT secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl_seconds = ttl_minutes * 60

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user: User, session: Session) -> AccessToken:
        now = time.time()
        jti = str(uuid.uuid4())
        exp = now + self.ttl_seconds
        payload = {
            "iss": self.issuer,
            "sub": user.id,
            "sid": session.id,
            "role": user.role,
            "email": user.email,
            "iat": int(now),
            "exp": int(exp),
            "jti": jti,
            "token_type": "access",
        }
        return AccessToken(
            token=self._encode_jwt(payload), jti=jti, expires_in=self.ttl_seconds, expires_at=exp
        )

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        """Return the verified claims of ``token`` or None when it is not acceptable."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.CLOCK_SKEW_LEEWAY_SECONDS:
            return None
        return payload
