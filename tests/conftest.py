import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("RESET_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("GENERAL_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("ADMIN_RATE_LIMIT_PER_WINDOW", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from salonauth.result import Ok  # noqa: E402
from salonauth.service.credentials import PasswordHasher  # noqa: E402
from salonauth.service.deps import (  # noqa: E402
    AuthPolicy,
    BaseDeps,
    EmailVerificationDeps,
    LoginDeps,
    PasswordDeps,
    SessionDeps,
    TrustedIpDeps,
    TwoFactorDeps,
)
from salonauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from salonauth.service.tokens import TokenService  # noqa: E402
from salonauth.storage.memory import MemoryStore  # noqa: E402
from salonauth.storage.models import Active, User  # noqa: E402

STRONG_PASSWORD = "Sal0n!Passw0rd"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Settable clock handed to the use cases as ``deps.now``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Notifier that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str | None]] = []
        self.fail = False

    async def _record(self, kind: str, email: str, token: str | None = None):
        if self.fail:
            from salonauth.result import Err
            from salonauth.service.failures import EmailServiceError

            return Err(EmailServiceError())
        self.sent.append((kind, email, token))
        return Ok(None)

    async def send_password_reset(self, email, name, token):
        return await self._record("password_reset", email, token)

    async def send_email_verification(self, email, name, token):
        return await self._record("email_verification", email, token)

    async def send_password_changed(self, email, name):
        return await self._record("password_changed", email)

    async def send_two_factor_enabled(self, email, name):
        return await self._record("two_factor_enabled", email)

    def last_token(self, kind: str) -> str | None:
        for sent_kind, _, token in reversed(self.sent):
            if sent_kind == kind:
                return token
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def policy():
    return AuthPolicy()


@pytest.fixture
def token_service():
    return TokenService("unit-test-secret", issuer="salonauth-tests", ttl_minutes=15)


@pytest.fixture
def deps(store, hasher, notifier, clock, policy, token_service):
    """One bundle of every dependency type, sharing the same store and clock."""

    class Bundle:
        base = BaseDeps(users=store.users, policy=policy, now=clock)
        trusted_ip = TrustedIpDeps(users=store.users, policy=policy, now=clock)
        two_factor = TwoFactorDeps(
            users=store.users, policy=policy, now=clock, passwords=hasher, notifier=notifier
        )
        login = LoginDeps(
            users=store.users,
            sessions=store.sessions,
            policy=policy,
            now=clock,
            passwords=hasher,
            notifier=notifier,
        )
        password = PasswordDeps(
            users=store.users, policy=policy, now=clock, passwords=hasher, notifier=notifier
        )
        email_verification = EmailVerificationDeps(
            users=store.users, policy=policy, now=clock, notifier=notifier
        )
        session = SessionDeps(
            users=store.users,
            sessions=store.sessions,
            policy=policy,
            now=clock,
            tokens=token_service,
        )

    return Bundle


@pytest.fixture
def make_user(store, hasher, clock):
    """Persist an active, verified user and return it."""

    def _make(
        email: str = "client@salon.example",
        *,
        password: str = STRONG_PASSWORD,
        role: str = "customer",
        name: str = "Ada Client",
        **changes,
    ) -> User:
        password_hash = hasher.hash(password).value
        user = User.new(
            email,
            name,
            password_hash,
            role=role,
            status=Active(),
            email_verified=True,
            now=clock(),
        )
        if changes:
            from dataclasses import replace

            user = replace(user, **changes)
        saved = store.users.save(user)
        assert isinstance(saved, Ok)
        return saved.value

    return _make
