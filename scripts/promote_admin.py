#!/usr/bin/env python3
"""Promote an existing user to admin.

Users are created on their first GitHub login, so the account must exist
before it can be promoted. ADMIN_EMAILS only applies at first login; use this
script for accounts that already signed in.

Usage:
    python scripts/promote_admin.py --email chief@example.com
    ADMIN_EMAIL=chief@example.com python scripts/promote_admin.py --dry-run

Environment Variables:
    ADMIN_EMAIL: Email of the user to promote
    DATABASE_URL: PostgreSQL connection string (required)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from quillpress.storage.interfaces import UserDirectory  # noqa: E402


def promote_admin(users: UserDirectory, email: str, dry_run: bool = False) -> dict:
    """Set the role of the user with ``email`` to admin.

    Returns:
        dict with user_id, email, and status ('promoted', 'already_admin',
        'dry_run' or 'not_found')
    """
    existing_user = users.get_user_by_email(email)
    if not existing_user:
        print(f"No user with email {email}; they must sign in with GitHub first")
        return {"user_id": None, "email": email, "status": "not_found"}

    if existing_user.role == "admin":
        print(f"User {email} already exists as admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would promote existing user {email} to admin")
        return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

    users.update_user_role(existing_user.id, "admin")
    print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
    return {"user_id": existing_user.id, "email": email, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Promote a Quillpress user to admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="User email (or set ADMIN_EMAIL env var)",
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

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL must point at the user database")
        sys.exit(1)

    # Imported here so config is read after the checks above
    from quillpress.storage.postgres import PostgresUserDirectory

    users = PostgresUserDirectory(os.environ["DATABASE_URL"])
    try:
        result = promote_admin(users, args.email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        users.close()

    if result["status"] == "not_found":
        sys.exit(1)
    if result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
        print("The new role applies from their next request; no re-login is needed.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
