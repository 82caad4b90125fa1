#!/usr/bin/env python3
"""Bootstrap an admin account directly in the account directory.

Usage:
    # Using environment variables:
    ADMIN_NICKNAME=root_admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secure-Pass-42 \\
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --nickname root_admin --email admin@example.com \\
        --password Secure-Pass-42

Environment Variables:
    ADMIN_NICKNAME: Nickname for the admin account
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    KDF_VERSION: Password hashing parameter set (defaults to the current one)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

REGISTRATION_METHOD_BOOTSTRAP = "bootstrap script"


def bootstrap_admin(
    store,
    nickname: str,
    email: str,
    password: str,
    *,
    kdf_version: int = 1,
    dry_run: bool = False,
) -> dict:
    """Create an admin account unless one already owns the nickname or email.

    Returns:
        dict with account_id, nickname, email and status
        ('created', 'already_admin' or 'dry_run')

    Raises:
        ValidationError: a field fails the signup validators
        ValueError: the nickname or email belongs to a non-admin account
    """
    from shopgate.service.credentials import hash_password
    from shopgate.service.validators import (
        validate_email,
        validate_nickname,
        validate_password,
    )
    from shopgate.storage.models import ACCOUNT_ROLE_ADMIN

    nickname = nickname.strip()
    email = email.strip().lower()
    password = password.strip()
    validate_nickname(nickname)
    validate_email(email)
    validate_password(password)

    existing = store.get_account_by_login(nickname=nickname) or store.get_account_by_login(
        email=email
    )
    if existing:
        if existing.role == ACCOUNT_ROLE_ADMIN:
            print(f"Account {existing.nickname} already exists as admin (id: {existing.id})")
            return {
                "account_id": existing.id,
                "nickname": existing.nickname,
                "email": existing.email,
                "status": "already_admin",
            }
        raise ValueError(
            f"nickname or email already belongs to a {existing.role} account (id: {existing.id})"
        )

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {nickname} <{email}>")
        return {"account_id": None, "nickname": nickname, "email": email, "status": "dry_run"}

    password_hash, password_salt = hash_password(password, version=kdf_version)
    account = store.create_account(
        nickname,
        email,
        password_hash,
        password_salt,
        role=ACCOUNT_ROLE_ADMIN,
        registration_method=REGISTRATION_METHOD_BOOTSTRAP,
    )
    print(f"Created admin account: {nickname} (id: {account.id})")
    return {
        "account_id": account.id,
        "nickname": account.nickname,
        "email": account.email,
        "status": "created",
    }


def _build_store():
    from shopgate.config import get_settings
    from shopgate.storage.memory import MemoryStore
    from shopgate.storage.postgres import PostgresStore

    settings = get_settings()
    if settings.use_memory_store:
        return MemoryStore(), settings
    return PostgresStore(settings.database_url, min_size=1, max_size=1), settings


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Shopgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--nickname",
        default=os.environ.get("ADMIN_NICKNAME"),
        help="Admin nickname (or set ADMIN_NICKNAME env var)",
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
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (("nickname", args.nickname), ("email", args.email), ("password", args.password)):
        if not value:
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            sys.exit(1)

    # Settings require a signing secret even though the script issues no tokens
    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from shopgate.service.errors import ServiceError

    try:
        store, settings = _build_store()
        result = bootstrap_admin(
            store,
            args.nickname,
            args.email,
            args.password,
            kdf_version=settings.kdf_version,
            dry_run=args.dry_run,
        )
    except ServiceError as e:
        print(f"Error: {e.description}")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Nickname: {result['nickname']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
