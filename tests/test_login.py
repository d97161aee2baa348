"""Registration, login, lockout and admin unlock."""

from dataclasses import replace
from datetime import timedelta

from conftest import STRONG_PASSWORD

from salonauth.result import Err, Ok
from salonauth.service.credentials import generate_totp
from salonauth.service.failures import (
    AccountDeleted,
    AccountLocked,
    AccountNotLocked,
    AccountSuspended,
    AdminNotFound,
    DuplicateEmail,
    EmailNotVerified,
    InvalidCredentials,
    InvalidEmail,
    InvalidTwoFactorCode,
    IpNotTrusted,
    NotAdmin,
    TwoFactorRequired,
    UserNotFound,
    WeakPassword,
)
from salonauth.service.login import (
    LOCK_REASON,
    LoginRequest,
    RegisterRequest,
    UnlockRequest,
    get_lock_status,
    handle_failed_login,
    login,
    register,
    unlock_account,
)
from salonauth.storage.models import (
    Active,
    Deleted,
    Locked,
    Suspended,
    TwoFactorEnabled,
    Unverified,
)


def _login(email="client@salon.example", password=STRONG_PASSWORD, **kwargs):
    return LoginRequest(email=email, password=password, ip_address="203.0.113.7", **kwargs)


class TestRegister:
    async def test_creates_unverified_account_and_sends_verification(self, deps, notifier, clock):
        result = await register(
            RegisterRequest("New@Salon.Example ", STRONG_PASSWORD, "Nia New"), deps.password
        )
        assert isinstance(result, Ok)
        user = result.value
        assert user.email == "new@salon.example"
        assert user.role == "customer"
        assert not user.email_verified
        assert isinstance(user.status, Unverified)
        assert user.status.token_expiry == clock() + timedelta(hours=24)
        assert notifier.last_token("email_verification") == user.status.email_verification_token
        assert user.password_history == (user.password_hash,)

    async def test_rejects_invalid_email(self, deps):
        result = await register(RegisterRequest("not-an-email", STRONG_PASSWORD, "X"), deps.password)
        assert result == Err(InvalidEmail())

    async def test_rejects_weak_password(self, deps):
        result = await register(RegisterRequest("a@salon.example", "weak", "X"), deps.password)
        assert isinstance(result, Err)
        assert isinstance(result.error, WeakPassword)

    async def test_rejects_duplicate_email(self, deps, make_user):
        make_user("taken@salon.example")
        result = await register(
            RegisterRequest("TAKEN@salon.example", STRONG_PASSWORD, "X"), deps.password
        )
        assert result == Err(DuplicateEmail())

    async def test_email_failure_does_not_undo_registration(self, deps, notifier, store):
        notifier.fail = True
        result = await register(
            RegisterRequest("quiet@salon.example", STRONG_PASSWORD, "Q"), deps.password
        )
        assert isinstance(result, Ok)
        assert store.users.find_by_email("quiet@salon.example").value is not None


class TestLogin:
    async def test_success_creates_session_and_resets_attempts(self, deps, make_user, clock, store):
        user = make_user(failed_login_attempts=3)
        result = await login(_login(user_agent="pytest"), deps.login)
        assert isinstance(result, Ok)
        outcome = result.value
        assert outcome.user.failed_login_attempts == 0
        assert outcome.user.last_login_at == clock()
        assert outcome.user.last_login_ip == "203.0.113.7"
        assert outcome.session.user_id == user.id
        assert outcome.session.expires_at == clock() + timedelta(days=7)
        assert outcome.session.user_agent == "pytest"
        assert store.sessions.find_by_id(outcome.session.id).value is not None

    async def test_remember_me_extends_session(self, deps, make_user, clock):
        make_user()
        result = await login(_login(remember_me=True), deps.login)
        assert result.value.session.expires_at == clock() + timedelta(days=30)

    async def test_unknown_email_is_invalid_credentials(self, deps):
        assert await login(_login("ghost@salon.example"), deps.login) == Err(InvalidCredentials())

    async def test_wrong_password_counts_attempt(self, deps, make_user, store):
        user = make_user()
        result = await login(_login(password="Wrong!Passw0rd"), deps.login)
        assert result == Err(InvalidCredentials())
        assert store.users.find_by_id(user.id).value.failed_login_attempts == 1

    async def test_blocked_states(self, deps, make_user, clock):
        make_user("suspended@salon.example", status=Suspended("chargeback", clock()))
        make_user("deleted@salon.example", status=Deleted(clock()))
        make_user(
            "pending@salon.example",
            email_verified=False,
            status=Unverified("tok", clock() + timedelta(hours=1)),
        )
        assert await login(_login("suspended@salon.example"), deps.login) == Err(
            AccountSuspended("chargeback")
        )
        assert await login(_login("deleted@salon.example"), deps.login) == Err(AccountDeleted())
        assert await login(_login("pending@salon.example"), deps.login) == Err(EmailNotVerified())

    async def test_two_factor_required_and_checked(self, deps, make_user, clock):
        secret = "JBSWY3DPEHPK3PXP"
        make_user(two_factor=TwoFactorEnabled(secret=secret, backup_codes=("ABCD2345",)))

        assert await login(_login(), deps.login) == Err(TwoFactorRequired())
        assert await login(_login(two_factor_code="12345"), deps.login) == Err(InvalidTwoFactorCode())

        code = generate_totp(secret, clock().timestamp())
        result = await login(_login(two_factor_code=code), deps.login)
        assert isinstance(result, Ok)
        assert result.value.used_backup_code is False
        assert result.value.remaining_backup_codes == 1

    async def test_backup_code_login_consumes_code(self, deps, make_user, store):
        user = make_user(
            two_factor=TwoFactorEnabled(secret="JBSWY3DPEHPK3PXP", backup_codes=("ABCD2345", "WXYZ6789"))
        )
        result = await login(_login(two_factor_code="ABCD2345"), deps.login)
        assert isinstance(result, Ok)
        assert result.value.used_backup_code is True
        assert result.value.remaining_backup_codes == 1
        assert store.users.find_by_id(user.id).value.two_factor.backup_codes == ("WXYZ6789",)

        again = await login(_login(two_factor_code="ABCD2345"), deps.login)
        assert again == Err(InvalidTwoFactorCode())

    async def test_ip_restriction_applies_after_password(self, deps, make_user):
        deps_restricted = replace(deps.login, policy=replace(deps.login.policy, ip_restriction_enabled=True))
        make_user(trusted_ip_addresses=("198.51.100.1",))
        result = await login(_login(), deps_restricted)
        assert result == Err(IpNotTrusted("203.0.113.7"))

    async def test_untrusted_ip_does_not_spend_backup_code(self, deps, make_user, store):
        deps_restricted = replace(deps.login, policy=replace(deps.login.policy, ip_restriction_enabled=True))
        user = make_user(
            trusted_ip_addresses=("198.51.100.1",),
            two_factor=TwoFactorEnabled(secret="JBSWY3DPEHPK3PXP", backup_codes=("ABCD2345", "WXYZ6789")),
        )
        result = await login(_login(two_factor_code="ABCD2345"), deps_restricted)
        assert result == Err(IpNotTrusted("203.0.113.7"))
        assert store.users.find_by_id(user.id).value.two_factor.backup_codes == ("ABCD2345", "WXYZ6789")


class TestLockout:
    async def test_locks_at_threshold(self, deps, make_user, store, clock):
        user = make_user()
        for expected_remaining in (4, 3, 2, 1):
            outcome = await handle_failed_login(user.email, deps.base)
            assert outcome.value.is_locked is False
            assert outcome.value.remaining_attempts == expected_remaining

        outcome = await handle_failed_login(user.email, deps.base)
        assert outcome.value.is_locked is True
        assert outcome.value.lock_duration == 30 * 60
        status = store.users.find_by_id(user.id).value.status
        assert status == Locked(reason=LOCK_REASON, locked_at=clock(), failed_attempts=5)

    async def test_locked_account_reports_remaining_lock_time(self, deps, make_user, clock):
        user = make_user(status=Locked(LOCK_REASON, clock(), 5), failed_login_attempts=5)
        clock.advance(minutes=10)
        outcome = await handle_failed_login(user.email, deps.base)
        assert outcome.value.is_locked is True
        assert outcome.value.lock_duration == 20 * 60

    async def test_unknown_email(self, deps):
        assert await handle_failed_login("ghost@salon.example", deps.base) == Err(UserNotFound())

    async def test_login_refused_while_locked(self, deps, make_user, clock):
        make_user(status=Locked(LOCK_REASON, clock(), 5), failed_login_attempts=5)
        result = await login(_login(), deps.login)
        assert result == Err(AccountLocked(until=clock() + timedelta(minutes=30)))

    async def test_lock_lapses_after_duration(self, deps, make_user, clock):
        make_user(status=Locked(LOCK_REASON, clock(), 5), failed_login_attempts=5)
        clock.advance(minutes=31)
        result = await login(_login(), deps.login)
        assert isinstance(result, Ok)
        assert result.value.user.status == Active()
        assert result.value.user.failed_login_attempts == 0

    async def test_four_failures_lock_expiry_then_four_remaining(self, deps, make_user, store, clock):
        user = make_user()
        wrong = _login(password="Wrong!Passw0rd")
        for _ in range(4):
            assert await login(wrong, deps.login) == Err(InvalidCredentials())
        assert store.users.find_by_id(user.id).value.failed_login_attempts == 4

        assert await login(wrong, deps.login) == Err(InvalidCredentials())
        assert isinstance(store.users.find_by_id(user.id).value.status, Locked)
        assert isinstance(await login(_login(), deps.login), Err)

        clock.advance(minutes=30, seconds=1)
        assert await login(wrong, deps.login) == Err(InvalidCredentials())
        refreshed = store.users.find_by_id(user.id).value
        assert refreshed.status == Active()
        assert refreshed.failed_login_attempts == 1
        assert deps.login.policy.max_failed_attempts - refreshed.failed_login_attempts == 4


class TestUnlock:
    async def test_admin_unlocks_locked_account(self, deps, make_user, clock):
        admin = make_user("owner@salon.example", role="admin")
        user = make_user(status=Locked(LOCK_REASON, clock(), 5), failed_login_attempts=5)
        result = await unlock_account(UnlockRequest(user.id, admin.id), deps.base)
        assert isinstance(result, Ok)
        assert result.value.status == Active()
        assert result.value.failed_login_attempts == 0

    async def test_requires_admin(self, deps, make_user, clock):
        staff = make_user("stylist@salon.example", role="staff")
        user = make_user(status=Locked(LOCK_REASON, clock(), 5))
        assert await unlock_account(UnlockRequest(user.id, staff.id), deps.base) == Err(NotAdmin())
        assert await unlock_account(UnlockRequest(user.id, "nobody"), deps.base) == Err(
            AdminNotFound("nobody")
        )

    async def test_not_locked(self, deps, make_user):
        admin = make_user("owner@salon.example", role="admin")
        user = make_user()
        assert await unlock_account(UnlockRequest(user.id, admin.id), deps.base) == Err(
            AccountNotLocked()
        )

    async def test_lock_status(self, deps, make_user, clock):
        admin = make_user("owner@salon.example", role="admin")
        user = make_user(status=Locked(LOCK_REASON, clock(), 5))
        status = (await get_lock_status(user.id, admin.id, deps.base)).value
        assert status.is_locked is True
        assert status.expires_at == clock() + timedelta(minutes=30)
        assert status.failed_attempts == 5

        other = make_user("free@salon.example")
        status = (await get_lock_status(other.id, admin.id, deps.base)).value
        assert status.is_locked is False
        assert status.status == "active"
