from dataclasses import replace

import pytest
from conftest import STRONG_PASSWORD

from salonauth.result import Err, Ok
from salonauth.service.credentials import generate_totp
from salonauth.service.failures import (
    AccountNotActive,
    EmailNotVerified,
    InvalidCode,
    InvalidPassword,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorNotPending,
    UserNotFound,
)
from salonauth.service.two_factor import (
    DisableTwoFactorRequest,
    SetupTwoFactorRequest,
    TwoFactorCodeRequest,
    disable_two_factor,
    get_two_factor_status,
    regenerate_backup_codes,
    setup_two_factor,
    verify_two_factor,
    verify_two_factor_login,
)
from salonauth.storage.models import (
    Suspended,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
)


def _code(secret, clock):
    return generate_totp(secret, clock().timestamp())


@pytest.fixture
def enrolled(deps, make_user, clock):
    """A user with 2FA enabled and three backup codes."""
    return make_user(
        two_factor=TwoFactorEnabled(
            secret="JBSWY3DPEHPK3PXP", backup_codes=("AAAA1111", "BBBB2222", "CCCC3333")
        )
    )


class TestSetupAndVerify:
    async def test_setup_leaves_enrollment_pending(self, deps, make_user, store):
        user = make_user()
        result = await setup_two_factor(SetupTwoFactorRequest(user.id, STRONG_PASSWORD), deps.two_factor)
        assert isinstance(result, Ok)
        setup = result.value
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert setup.qr_code_url.startswith("data:image/svg+xml;base64,")
        assert len(setup.backup_codes) == 8

        stored = store.users.find_by_id(user.id).value.two_factor
        assert isinstance(stored, TwoFactorPending)
        assert stored.secret == setup.secret
        assert stored.backup_codes == setup.backup_codes

    async def test_verify_enables_and_notifies(self, deps, make_user, store, clock, notifier):
        user = make_user()
        setup = (await setup_two_factor(SetupTwoFactorRequest(user.id, STRONG_PASSWORD), deps.two_factor)).value

        result = await verify_two_factor(
            TwoFactorCodeRequest(user.id, _code(setup.secret, clock)), deps.two_factor
        )
        assert result == Ok(setup.backup_codes)
        stored = store.users.find_by_id(user.id).value.two_factor
        assert stored == TwoFactorEnabled(secret=setup.secret, backup_codes=setup.backup_codes)
        assert ("two_factor_enabled", user.email, None) in notifier.sent

    async def test_verify_rejects_wrong_code(self, deps, make_user, store):
        user = make_user()
        await setup_two_factor(SetupTwoFactorRequest(user.id, STRONG_PASSWORD), deps.two_factor)
        result = await verify_two_factor(TwoFactorCodeRequest(user.id, "12345"), deps.two_factor)
        assert result == Err(InvalidCode())
        assert isinstance(store.users.find_by_id(user.id).value.two_factor, TwoFactorPending)

    async def test_verify_without_setup(self, deps, make_user):
        user = make_user()
        result = await verify_two_factor(TwoFactorCodeRequest(user.id, "123456"), deps.two_factor)
        assert result == Err(TwoFactorNotPending())

    async def test_setup_preconditions(self, deps, make_user, enrolled, clock):
        unverified = make_user("new@salon.example", email_verified=False)
        suspended = make_user("gone@salon.example", status=Suspended("fraud", clock()))

        assert await setup_two_factor(
            SetupTwoFactorRequest(unverified.id, STRONG_PASSWORD), deps.two_factor
        ) == Err(EmailNotVerified())
        assert await setup_two_factor(
            SetupTwoFactorRequest(suspended.id, STRONG_PASSWORD), deps.two_factor
        ) == Err(AccountNotActive())
        assert await setup_two_factor(
            SetupTwoFactorRequest(enrolled.id, STRONG_PASSWORD), deps.two_factor
        ) == Err(TwoFactorAlreadyEnabled())
        assert await setup_two_factor(
            SetupTwoFactorRequest("missing-user", STRONG_PASSWORD), deps.two_factor
        ) == Err(UserNotFound("missing-user"))

    async def test_setup_requires_password(self, deps, make_user):
        user = make_user()
        result = await setup_two_factor(SetupTwoFactorRequest(user.id, "Wrong!Passw0rd"), deps.two_factor)
        assert result == Err(InvalidPassword())


class TestLoginFactor:
    async def test_totp_code(self, deps, enrolled, clock):
        result = await verify_two_factor_login(
            TwoFactorCodeRequest(enrolled.id, _code("JBSWY3DPEHPK3PXP", clock)), deps.two_factor
        )
        assert result.value.used_backup_code is False
        assert result.value.remaining_backup_codes == 3

    async def test_backup_code_is_single_use(self, deps, enrolled, store):
        first = await verify_two_factor_login(TwoFactorCodeRequest(enrolled.id, "BBBB2222"), deps.two_factor)
        assert first.value.used_backup_code is True
        assert first.value.remaining_backup_codes == 2
        assert store.users.find_by_id(enrolled.id).value.two_factor.backup_codes == ("AAAA1111", "CCCC3333")

        second = await verify_two_factor_login(TwoFactorCodeRequest(enrolled.id, "BBBB2222"), deps.two_factor)
        assert second == Err(InvalidCode())

    async def test_not_enabled(self, deps, make_user):
        user = make_user()
        result = await verify_two_factor_login(TwoFactorCodeRequest(user.id, "123456"), deps.two_factor)
        assert result == Err(TwoFactorNotEnabled())


class TestDisableAndRegenerate:
    async def test_disable_requires_password_and_totp(self, deps, enrolled, clock, store):
        code = _code("JBSWY3DPEHPK3PXP", clock)
        assert await disable_two_factor(
            DisableTwoFactorRequest(enrolled.id, "Wrong!Passw0rd", code), deps.two_factor
        ) == Err(InvalidPassword())
        assert await disable_two_factor(
            DisableTwoFactorRequest(enrolled.id, STRONG_PASSWORD, "AAAA1111"), deps.two_factor
        ) == Err(InvalidCode())

        result = await disable_two_factor(
            DisableTwoFactorRequest(enrolled.id, STRONG_PASSWORD, code), deps.two_factor
        )
        assert isinstance(result, Ok)
        assert store.users.find_by_id(enrolled.id).value.two_factor == TwoFactorDisabled()

    async def test_regenerate_replaces_codes(self, deps, enrolled, clock):
        result = await regenerate_backup_codes(
            TwoFactorCodeRequest(enrolled.id, _code("JBSWY3DPEHPK3PXP", clock)), deps.two_factor
        )
        codes = result.value
        assert len(codes) == 8
        assert "AAAA1111" not in codes

        # old codes no longer work
        old = await verify_two_factor_login(TwoFactorCodeRequest(enrolled.id, "AAAA1111"), deps.two_factor)
        assert old == Err(InvalidCode())

    async def test_regenerate_requires_enabled(self, deps, make_user):
        user = make_user()
        result = await regenerate_backup_codes(TwoFactorCodeRequest(user.id, "123456"), deps.two_factor)
        assert result == Err(TwoFactorNotEnabled())


async def test_status_reports_variant_and_remaining_codes(deps, make_user, enrolled, store):
    plain = make_user("plain@salon.example")
    assert (await get_two_factor_status(plain.id, deps.two_factor)).value.status == "disabled"

    state = (await get_two_factor_status(enrolled.id, deps.two_factor)).value
    assert state.status == "enabled"
    assert state.remaining_backup_codes == 3

    pending = replace(
        plain, two_factor=TwoFactorPending(secret="JBSWY3DPEHPK3PXP", qr_code_url="data:")
    )
    store.users.update(pending)
    state = (await get_two_factor_status(plain.id, deps.two_factor)).value
    assert state.status == "pending"
    assert state.remaining_backup_codes is None
