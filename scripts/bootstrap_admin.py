#!/usr/bin/env python3
"""Create or promote a HomeOps platform admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=hunter2hunter2 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password hunter2hunter2 --role admin

The admin ends up owning an account named "main", and the default
subscription products are seeded if the catalog is empty.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for a newly created admin
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MAIN_ACCOUNT_NAME = "main"
ADMIN_ROLES = ("super_admin", "admin")


def bootstrap_admin(
    runtime, email: str, password: str, role: str = "super_admin", dry_run: bool = False
) -> dict:
    """Ensure ``email`` is a platform admin who owns a "main" account.

    Returns:
        dict with user_id, email, account_id and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    existing = runtime.identity.by_email(email)

    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} {role} {email} and ensure a '{MAIN_ACCOUNT_NAME}' account")
        return {
            "user_id": existing.id if existing else None,
            "email": email,
            "account_id": None,
            "status": "dry_run",
        }

    runtime.tenants.seed_default_products()

    if existing is None:
        user = runtime.identity.register(email, password, display_name="Admin", role=role)
        status = "created"
    elif existing.role != role:
        user = runtime.identity.set_role(existing.id, role)
        status = "promoted"
    else:
        user = existing
        status = "already_admin"

    owned = [
        a
        for a in runtime.tenants.accounts_for_user(user.id)
        if a.name == MAIN_ACCOUNT_NAME and a.owner_user_id == user.id
    ]
    if owned:
        account = owned[0]
    else:
        account = runtime.tenants.create_account(MAIN_ACCOUNT_NAME, user.id)
        runtime.tenants.seed_default_subscription(account.id, user.role)

    print(f"{status}: {email} (id: {user.id}, role: {user.role}, account: {account.id})")
    return {"user_id": user.id, "email": email, "account_id": account.id, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform admin for HomeOps",
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
    parser.add_argument("--role", choices=ADMIN_ROLES, default="super_admin")
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
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from homeops.service.errors import ServiceError
    from homeops.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if not args.password and runtime.identity.by_email(args.email) is None:
            print("Error: --password or ADMIN_PASSWORD is required to create a new admin")
            sys.exit(1)
        bootstrap_admin(runtime, args.email, args.password, args.role, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
