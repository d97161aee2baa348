import importlib.util
from pathlib import Path

import pytest

from salonauth.service.runtime import get_runtime
from salonauth.storage.models import Unverified, User, utcnow

from conftest import STRONG_PASSWORD

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_verified_admin(bootstrap):
    result = bootstrap(" Owner@Salon.example ", "Salon Owner", STRONG_PASSWORD)
    assert result["status"] == "created"

    admin = get_runtime().users.find_by_email("owner@salon.example").value
    assert admin.id == result["user_id"]
    assert admin.is_admin
    assert admin.email_verified
    assert get_runtime().passwords.verify(admin.password_hash, STRONG_PASSWORD)


def test_promotes_existing_user_then_reports_already_admin(bootstrap):
    runtime = get_runtime()
    stylist = User.new(
        "stylist@salon.example",
        "Sam Stylist",
        runtime.passwords.hash(STRONG_PASSWORD).value,
        role="staff",
        status=Unverified("token", utcnow() + runtime.policy.email_verification_ttl),
    )
    runtime.users.save(stylist)

    assert bootstrap("stylist@salon.example", "ignored", "ignored")["status"] == "promoted"
    promoted = runtime.users.find_by_id(stylist.id).value
    assert promoted.is_admin
    assert promoted.email_verified

    assert bootstrap("stylist@salon.example", "ignored", "ignored")["status"] == "already_admin"


def test_dry_run_writes_nothing(bootstrap):
    result = bootstrap("dry@salon.example", "Dry Run", STRONG_PASSWORD, dry_run=True)
    assert result == {"user_id": None, "email": "dry@salon.example", "status": "dry_run"}
    assert get_runtime().users.find_by_email("dry@salon.example").value is None


def test_rejects_weak_password_and_bad_email(bootstrap):
    with pytest.raises(ValueError):
        bootstrap("owner@salon.example", "Owner", "short")
    with pytest.raises(ValueError):
        bootstrap("not-an-email", "Owner", STRONG_PASSWORD)
