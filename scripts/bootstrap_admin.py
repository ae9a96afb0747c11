#!/usr/bin/env python3
"""Create an admin user, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --name Admin --password 'long enough'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Optional password enabling password login
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    *,
    name: Optional[str] = None,
    password: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Returns a dict with user_id, email and status (created, promoted, already_admin, dry_run)."""
    # imported late so the env defaults below are in place before settings load
    from fingerauth.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = await runtime.users.get_by_email(email)

    if dry_run:
        action = "promote existing user" if existing else "create admin user"
        print(f"[DRY RUN] Would {action} {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    if existing:
        status = "already_admin" if existing.is_admin else "promoted"
        user = await runtime.users.grant_admin(existing.id)
    else:
        status = "created"
        user = await runtime.users.create(email, name=name or email.split("@", 1)[0])
        user = await runtime.users.grant_admin(user.id)

    if password:
        await runtime.users.set_password(user.id, password)
    return {"user_id": user.id, "email": email, "status": status, "roles": user.roles}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Fingerauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--name", default=None, help="Display name for a new user")
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Optional password (or set ADMIN_PASSWORD env var)",
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
    if args.password is not None and len(args.password) < 8:
        print("Error: password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/fingerauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, name=args.name, password=args.password, dry_run=args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif result["status"] == "promoted":
        print(f"Promoted existing user {result['email']} to admin (id: {result['user_id']})")
    elif result["status"] == "already_admin":
        print(f"No changes needed: {result['email']} is already an admin.")


if __name__ == "__main__":
    main()
