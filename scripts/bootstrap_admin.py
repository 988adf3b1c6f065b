#!/usr/bin/env python3
"""Seed the initial super_admin so the invitation chain has a root.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email root@example.com --name "Root" --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the super_admin
    ADMIN_NAME: Display name (defaults to "Super Admin")
    ADMIN_PASSWORD: Password (must meet complexity requirements)
    SHARED_FS_ROOT: Directory holding the persisted store state
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(email: str, name: str, password: str, dry_run: bool = False) -> dict:
    """Create the super_admin or promote an existing principal.

    The principal starts with no MFA method, so its first login returns a
    setup token for choosing one.

    Returns:
        dict with user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from accessflow.service.passwords import hash_password
    from accessflow.service.runtime import get_runtime
    from accessflow.storage.models import Role, UserStatus

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role is Role.SUPER_ADMIN:
            print(f"User {email} already exists as super_admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to super_admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        existing_user.role = Role.SUPER_ADMIN
        existing_user.status = UserStatus.ACTIVE
        runtime.store.save_user(existing_user)
        print(f"Promoted existing user {email} to super_admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super_admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        name,
        hash_password(password),
        role=Role.SUPER_ADMIN,
        status=UserStatus.ACTIVE,
    )
    print(f"Created super_admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the AccessFlow super_admin",
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
        default=os.environ.get("ADMIN_NAME", "Super Admin"),
        help="Display name (or set ADMIN_NAME env var)",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    os.environ.setdefault("PERSIST_STATE", "true")

    try:
        result = bootstrap_admin(args.email.strip().lower(), args.name, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print("  Log in to choose an MFA method.")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super_admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super_admin.")


if __name__ == "__main__":
    main()
