#!/usr/bin/env python3
"""Bootstrap a SuperAdmin account for initial setup.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the SuperAdmin user
    ADMIN_PASSWORD: Password for the SuperAdmin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create (or promote) a confirmed user holding the SuperAdmin role.

    Returns:
        dict with user_id, email, and status
    """
    from authcore.service.runtime import get_runtime
    from authcore.storage.models import SystemRoles

    runtime = get_runtime()
    store = runtime.store

    role = store.get_role_by_name(SystemRoles.SUPER_ADMIN)
    user = store.get_user_by_email(email)

    if user and role and SystemRoles.SUPER_ADMIN in runtime.rbac.get_user_roles(user.id):
        print(f"User {email} already holds {SystemRoles.SUPER_ADMIN} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "already_admin"}

    if dry_run:
        action = "promote existing user" if user else "create user"
        print(f"[DRY RUN] Would {action} {email} as {SystemRoles.SUPER_ADMIN}")
        return {"user_id": user.id if user else None, "email": email, "status": "dry_run"}

    if role is None:
        role = store.create_role(
            SystemRoles.SUPER_ADMIN, description="Department-independent administrator"
        )

    status = "promoted"
    if user is None:
        user = await runtime.auth.register(email, password, "Super", "Admin")
        status = "created"
    store.mark_email_confirmed(user.id)
    store.assign_role(user.id, role.id, assigned_by_email="bootstrap")

    print(f"{status.capitalize()} {SystemRoles.SUPER_ADMIN}: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SuperAdmin user",
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
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
