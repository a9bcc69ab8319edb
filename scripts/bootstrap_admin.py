#!/usr/bin/env python3
"""Create the first Admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Pass' \
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD: credentials for the new admin
    JWT_SECRET, JWT_REFRESH_SECRET: required, as for the server
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)

The admin is created with a verified email. Nothing is changed when an Admin
already exists, unless --force is given.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    *,
    dry_run: bool = False,
    force: bool = False,
) -> dict:
    """Create an Admin account unless one already exists.

    Returns:
        dict with account_id, email, and status ('created', 'admin_exists',
        'email_taken' or 'dry_run')
    """
    # Deferred so the environment defaults below apply before settings load
    from medhub.service.roles import Role
    from medhub.service.runtime import get_runtime
    from medhub.storage.models import normalize_email

    runtime = get_runtime()
    email = normalize_email(email)

    admins = runtime.store.list_accounts(role=Role.ADMIN.value, limit=1)
    if admins and not force:
        print(f"An admin already exists: {admins[0].email} (id: {admins[0].id})")
        return {"account_id": admins[0].id, "email": admins[0].email, "status": "admin_exists"}

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Error: {email} is already registered (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "email_taken"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email,
        runtime.passwords.hash(password),
        first_name,
        last_name,
        [Role.ADMIN.value],
        email_verified=True,
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create the first MedHub admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default=os.environ.get("ADMIN_FIRST_NAME", "System"))
    parser.add_argument("--last-name", default=os.environ.get("ADMIN_LAST_NAME", "Admin"))
    parser.add_argument(
        "--force",
        action="store_true",
        help="Create the account even if another Admin exists",
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

    from medhub.service.passwords import validate_password_strength

    try:
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from medhub.config import ConfigurationError

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            args.first_name.strip(),
            args.last_name.strip(),
            dry_run=args.dry_run,
            force=args.force,
        )
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "email_taken":
        sys.exit(1)


if __name__ == "__main__":
    main()
