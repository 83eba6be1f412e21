#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD='Secure#Pass1' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password 'Secure#Pass1'

The account is created already verified, so it can log in immediately.
ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be set as for the server.

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account details
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import late so the env defaults below are in place before settings load
    from storefront.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store
    existing = store.get_user_by_email(email) or store.get_user_by_username(username)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        existing.role = "admin"
        existing.is_verified = True
        existing.clear_verification_token()
        store.save_user(existing)
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        email=email,
        username=username,
        password_hash=runtime.auth._hash_password(password),
        role="admin",
        is_verified=True,
    )
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    from storefront.api.schemas import (
        _validate_email,
        _validate_password_strength,
        _validate_username,
    )

    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Storefront",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("email", "username", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    try:
        email = _validate_email(args.email)
        username = _validate_username(args.username)
        password = _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/storefront-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(email, username, password, args.dry_run)
    except RuntimeError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed, user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
