#!/usr/bin/env python3
"""Provision a login for an existing deployment.

Account registration is not exposed over HTTP; operators create users
with this script against the configured credential store.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... \
        python scripts/create_user.py --email user@example.com --password 'S3cure-Passphrase!'

    # Reset the password of an existing user
    python scripts/create_user.py --email user@example.com --password '...' --reset

Environment Variables:
    USER_EMAIL, USER_PASSWORD: defaults for --email and --password
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 12


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def provision_user(
    store,
    verifier,
    email: str,
    password: str,
    *,
    display_name: str | None = None,
    reset: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create a user with a password, or reset the password when ``reset`` is set.

    Returns:
        dict with user_id, email, and status ('created', 'reset', 'exists' or 'dry_run')
    """
    normalized = email.strip().lower()
    existing = await verifier.find_by_login_identifier(normalized)
    if existing:
        if not reset:
            print(f"User {normalized} already exists (id: {existing.id}); pass --reset to change the password")
            return {"user_id": existing.id, "email": normalized, "status": "exists"}
        if dry_run:
            return {"user_id": existing.id, "email": normalized, "status": "dry_run"}
        await verifier.set_secret(existing.id, password)
        print(f"Password reset for {normalized} (id: {existing.id})")
        return {"user_id": existing.id, "email": normalized, "status": "reset"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {normalized}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    user = await asyncio.to_thread(store.create_user, normalized, display_name)
    await verifier.set_secret(user.id, password)
    print(f"Created user: {normalized} (id: {user.id})")
    return {"user_id": user.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create or reset a tokenledger login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("USER_PASSWORD"))
    parser.add_argument("--display-name", default=None)
    parser.add_argument("--reset", action="store_true", help="Reset the password of an existing user")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    # Imported late so argument errors do not require a configured environment
    from tokenledger.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        asyncio.run(
            provision_user(
                runtime.store,
                runtime.verifier,
                args.email,
                args.password,
                display_name=args.display_name,
                reset=args.reset,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
