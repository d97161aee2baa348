#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user to admin.

Public registration only offers the customer and staff roles, so the first
admin has to come from here.

Usage:
    ADMIN_EMAIL=owner@salon.example ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email owner@salon.example --name "Salon Owner" --password ...

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet the password policy)
    ADMIN_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string; without it MEMORY_STORE_PATH must be set
"""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, name: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the environment is settled before settings load
    from salonauth.result import Err, Ok
    from salonauth.service.credentials import is_valid_email, validate_password_strength
    from salonauth.service.runtime import get_runtime
    from salonauth.storage.models import Active, User, utcnow

    email = email.strip().lower()
    if not is_valid_email(email):
        raise ValueError(f"invalid email address: {email}")

    runtime = get_runtime()
    match runtime.users.find_by_email(email):
        case Err(error):
            raise RuntimeError(f"user lookup failed: {error}")
        case Ok(existing):
            pass

    if existing is not None:
        if existing.is_admin:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        promoted = replace(
            existing,
            role="admin",
            status=Active(),
            email_verified=True,
            updated_at=utcnow(),
        )
        match runtime.users.update(promoted):
            case Err(error):
                raise RuntimeError(f"failed to promote user: {error}")
            case Ok(_):
                return {"user_id": existing.id, "email": email, "status": "promoted"}

    weakness = validate_password_strength(password)
    if weakness:
        raise ValueError(weakness)
    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    match runtime.passwords.hash(password):
        case Err(error):
            raise RuntimeError(f"password hashing failed: {error}")
        case Ok(password_hash):
            pass
    admin = User.new(email, name, password_hash, role="admin", status=Active(), email_verified=True)
    match runtime.users.save(admin):
        case Err(error):
            raise RuntimeError(f"failed to create admin: {error}")
        case Ok(saved):
            return {"user_id": saved.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the salon platform",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        if not os.environ.get("MEMORY_STORE_PATH"):
            print("Error: set DATABASE_URL, or MEMORY_STORE_PATH for a persisted memory store")
            sys.exit(1)
        os.environ["USE_MEMORY_STORE"] = "true"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.name, args.password, args.dry_run)
    except (ValueError, RuntimeError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print(f"\nExisting user {result['email']} promoted to admin (id: {result['user_id']})")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
