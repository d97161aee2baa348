"""Unit tests for access tokens and request authentication.

Tests for:
- Access token issue and verification
- Rejection of tampered, foreign and expired tokens
- Bearer and cookie authentication against the session store
- Account status and trusted-IP checks on authenticated requests
"""

import json
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from salonauth.service.authentication import authenticate, extract_bearer
from salonauth.service.errors import AuthenticationError, ForbiddenError, SessionExpiredError
from salonauth.service.runtime import denylist_access_token, get_runtime
from salonauth.service.tokens import TokenService
from salonauth.storage.models import Locked, Session, Suspended, User, utcnow

CLIENT_IP = "203.0.113.10"


@pytest.fixture
def tokens():
    """Create a token service for testing."""
    return TokenService("unit-test-secret", issuer="salonauth-tests", ttl_minutes=15)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def account(runtime):
    """Persist a verified customer and an open session in the runtime store."""
    user = User.new("bearer@salon.example", "Bea Bearer", "$argon2id$hash", email_verified=True)
    runtime.users.save(user)
    session = Session.new(user.id, "refresh-token", timedelta(days=7), ip_address=CLIENT_IP)
    runtime.sessions.save(session)
    return user, session


class TestTokenService:
    """Tests for access token encoding."""

    def test_issue_and_decode(self, tokens):
        """An issued token decodes back to its claims."""
        user = User.new("ana@salon.example", "Ana", "$argon2id$hash", role="staff")
        session = Session.new(user.id, "refresh", timedelta(days=1))
        issued = tokens.issue_access_token(user, session)

        claims = tokens.decode_access_token(issued.token)
        assert claims["sub"] == user.id
        assert claims["sid"] == session.id
        assert claims["role"] == "staff"
        assert claims["jti"] == issued.jti
        assert issued.expires_in == 15 * 60

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenService("", issuer="x", ttl_minutes=15)

    def test_tampered_payload_rejected(self, tokens):
        """Changing the payload invalidates the signature."""
        user = User.new("ana@salon.example", "Ana", "$argon2id$hash")
        token = tokens.issue_access_token(user, Session.new(user.id, "r", timedelta(days=1))).token
        header, _, signature = token.split(".")
        forged = tokens._encode_segment(
            json.dumps({"sub": user.id, "role": "admin", "iss": "salonauth-tests"}).encode()
        )
        assert tokens.decode_access_token(f"{header}.{forged}.{signature}") is None

    def test_other_secret_or_issuer_rejected(self, tokens):
        user = User.new("ana@salon.example", "Ana", "$argon2id$hash")
        session = Session.new(user.id, "r", timedelta(days=1))
        token = tokens.issue_access_token(user, session).token

        other_secret = TokenService("another-secret", issuer="salonauth-tests", ttl_minutes=15)
        other_issuer = TokenService("unit-test-secret", issuer="someone-else", ttl_minutes=15)
        assert other_secret.decode_access_token(token) is None
        assert other_issuer.decode_access_token(token) is None

    def test_non_hs256_algorithm_rejected(self, tokens):
        header = tokens._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        payload = tokens._encode_segment(json.dumps({"iss": "salonauth-tests"}).encode())
        signing_input = f"{header}.{payload}"
        assert tokens.decode_access_token(f"{signing_input}.{tokens._sign(signing_input)}") is None

    def test_expired_token_rejected(self, tokens):
        """Tokens past expiry plus leeway are refused."""
        expired = tokens._encode_jwt(
            {
                "iss": "salonauth-tests",
                "sub": "u",
                "sid": "s",
                "jti": "j",
                "token_type": "access",
                "exp": int(time.time()) - tokens.CLOCK_SKEW_LEEWAY_SECONDS - 5,
            }
        )
        assert tokens.decode_access_token(expired) is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, tokens, token):
        assert tokens.decode_access_token(token) is None


class TestExtractBearer:
    def test_parses_scheme_case_insensitively(self):
        assert extract_bearer("bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer("Bearer   ") is None
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer(None) is None


class TestAuthenticate:
    """Tests for request authentication."""

    async def test_bearer_token_resolves_session(self, runtime, account):
        user, session = account
        token = runtime.tokens.issue_access_token(user, session).token

        ctx = await authenticate(
            runtime, authorization=f"Bearer {token}", session_id=None, ip_address=CLIENT_IP
        )
        assert ctx.user_id == user.id
        assert ctx.session_id == session.id
        assert ctx.claims["sid"] == session.id

    async def test_cookie_session_resolves(self, runtime, account):
        user, session = account
        ctx = await authenticate(
            runtime, authorization=None, session_id=session.id, ip_address=CLIENT_IP
        )
        assert ctx.user == user
        assert ctx.claims is None

    async def test_missing_credentials(self, runtime):
        with pytest.raises(AuthenticationError) as exc:
            await authenticate(runtime, authorization=None, session_id=None, ip_address=CLIENT_IP)
        assert exc.value.error_type == "UNAUTHORIZED"

    async def test_invalid_bearer_token(self, runtime, account):
        with pytest.raises(AuthenticationError) as exc:
            await authenticate(
                runtime, authorization="Bearer not.a.token", session_id=None, ip_address=CLIENT_IP
            )
        assert exc.value.error_type == "INVALID_TOKEN"

    async def test_denylisted_token(self, runtime, account):
        user, session = account
        issued = runtime.tokens.issue_access_token(user, session)
        await denylist_access_token(runtime, issued.jti, issued.expires_at)

        with pytest.raises(AuthenticationError) as exc:
            await authenticate(
                runtime,
                authorization=f"Bearer {issued.token}",
                session_id=None,
                ip_address=CLIENT_IP,
            )
        assert exc.value.error_type == "TOKEN_REVOKED"

    async def test_unknown_session(self, runtime):
        with pytest.raises(AuthenticationError) as exc:
            await authenticate(
                runtime, authorization=None, session_id="missing", ip_address=CLIENT_IP
            )
        assert exc.value.error_type == "INVALID_SESSION"

    async def test_expired_session(self, runtime, account):
        user, session = account
        runtime.sessions.update(replace(session, expires_at=utcnow() - timedelta(minutes=1)))

        with pytest.raises(SessionExpiredError) as exc:
            await authenticate(
                runtime, authorization=None, session_id=session.id, ip_address=CLIENT_IP
            )
        assert exc.value.status_code == 401
        assert exc.value.error_type == "SESSION_EXPIRED"

    async def test_suspended_account(self, runtime, account):
        user, session = account
        runtime.users.update(replace(user, status=Suspended("chargeback", utcnow())))

        with pytest.raises(ForbiddenError) as exc:
            await authenticate(
                runtime, authorization=None, session_id=session.id, ip_address=CLIENT_IP
            )
        assert exc.value.error_type == "ACCOUNT_SUSPENDED"
        assert exc.value.detail == {"reason": "chargeback"}

    async def test_locked_account_until_lock_lapses(self, runtime, account):
        user, session = account
        runtime.users.update(replace(user, status=Locked("Too many failed login attempts", utcnow(), 5)))
        with pytest.raises(ForbiddenError) as exc:
            await authenticate(
                runtime, authorization=None, session_id=session.id, ip_address=CLIENT_IP
            )
        assert exc.value.error_type == "ACCOUNT_LOCKED"

        lapsed = utcnow() - runtime.policy.lock_duration - timedelta(minutes=1)
        runtime.users.update(replace(user, status=Locked("Too many failed login attempts", lapsed, 5)))
        ctx = await authenticate(
            runtime, authorization=None, session_id=session.id, ip_address=CLIENT_IP
        )
        assert ctx.user_id == user.id

    async def test_untrusted_ip_rejected_when_restricted(self, runtime, account, monkeypatch):
        user, session = account
        runtime.users.update(replace(user, trusted_ip_addresses=("198.51.100.1",)))
        monkeypatch.setattr(runtime, "policy", replace(runtime.policy, ip_restriction_enabled=True))

        with pytest.raises(ForbiddenError) as exc:
            await authenticate(
                runtime, authorization=None, session_id=session.id, ip_address=CLIENT_IP
            )
        assert exc.value.error_type == "IP_NOT_TRUSTED"

        ctx = await authenticate(
            runtime, authorization=None, session_id=session.id, ip_address="198.51.100.1"
        )
        assert ctx.user_id == user.id
