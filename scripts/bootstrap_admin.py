#!/usr/bin/env python3
"""Bootstrap an admin account with a verified email/password login.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (8-20 chars, upper, lower, digit, symbol)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import json
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account, or report the one already bound to ``email``."""
    # Import here to avoid loading settings before env vars are set
    from passage.service.runtime import get_runtime
    from passage.service.verification import normalize_email
    from passage.storage.models import PROVIDER_PASSWORD

    runtime = get_runtime()
    email = normalize_email(email)
    runtime.passwords.ensure_strong(password)

    existing = runtime.store.get_associate(PROVIDER_PASSWORD, email)
    if existing:
        account = runtime.store.get_account(existing.account_id)
        return {
            "account_id": existing.account_id,
            "email": email,
            "role": account.role if account else None,
            "status": "exists",
        }

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    account, _ = runtime.store.create_account_with_associate(
        provider=PROVIDER_PASSWORD,
        provider_ref_id=email,
        role="admin",
        nickname="admin",
        email=email,
        email_verified=True,
        password_hash=runtime.passwords.hash(password),
    )
    return {"account_id": account.id, "email": email, "role": account.role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for passage",
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
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create missing Postgres tables before bootstrapping",
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

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)", file=sys.stderr)
    elif args.apply_schema:
        from passage.storage.postgres import PostgresStore

        PostgresStore(os.environ["DATABASE_URL"], ensure_schema=True).close()

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
