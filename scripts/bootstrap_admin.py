#!/usr/bin/env python3
"""Create or promote an administrator in the JSON database.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password Secret123 \
        --name "Site Admin" --role readonly-admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for a newly created admin
    DB_PATH: JSON database file (default ./db/db.json)
    JWT_SECRET: required by the runtime, at least 32 characters
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str, password: str | None, name: str, role: str, dry_run: bool = False
) -> dict:
    """Create the account with ``role`` or add ``role`` to an existing one.

    Returns:
        dict with user_id, email and status ('created', 'promoted', 'unchanged' or 'dry_run')
    """
    # imported late so the environment is settled before settings load
    from micropost.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.users.find_by_email(email)

    if existing:
        if existing.has_role(role):
            print(f"User {email} already holds {role} (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would grant {role} to {email}")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.users.update_roles(existing.id, [*existing.roles, role])
        print(f"Granted {role} to {email} (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if not password:
        raise ValueError("a password is required to create a new user")
    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.local_auth.register(name, email, password)
    runtime.users.update_roles(result.user.id, ["user", role])
    print(f"Created {role} user: {email} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": result.user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for the Micropost API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--role", choices=["admin", "readonly-admin"], default="admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    from micropost.service.errors import ServiceError

    try:
        asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.role, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message} {e.detail or ''}".rstrip())
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
