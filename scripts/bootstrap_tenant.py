#!/usr/bin/env python3
"""Bootstrap an approved tenant and its first tenant admin.

Usage:
    # Using environment variables:
    TENANT_NAME=acme ADMIN_EMAIL=admin@acme.test ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --tenant-name acme \
        --email admin@acme.test --password SecurePassword123!

Environment Variables:
    TENANT_NAME: Display name for the tenant
    TENANT_ID: Tenant id to use (optional, generated when not set)
    ADMIN_EMAIL: Email for the tenant admin
    ADMIN_PASSWORD: Password for the tenant admin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_tenant(
    tenant_name: str,
    email: str,
    password: str,
    *,
    tenant_id: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create (or approve) a tenant and create or promote its admin.

    Returns:
        dict with tenant_id, user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from docvault.service.runtime import get_runtime
    from docvault.storage.models import ApprovalStatus, Role, TenantStatus

    runtime = get_runtime()

    tenant = runtime.store.get_tenant(tenant_id) if tenant_id else None
    if dry_run:
        action = "approve existing" if tenant else "create"
        print(f"[DRY RUN] Would {action} tenant {tenant_name!r} and admin {email}")
        return {"tenant_id": tenant_id, "user_id": None, "email": email, "status": "dry_run"}

    if tenant is None:
        tenant = runtime.store.create_tenant(
            tenant_name,
            tenant_id=tenant_id,
            status=TenantStatus.ACTIVE,
            approval_status=ApprovalStatus.APPROVED,
        )
        print(f"Created tenant {tenant_name!r} (id: {tenant.id})")
    elif not tenant.can_sign_in:
        runtime.store.update_tenant_status(
            tenant.id, status=TenantStatus.ACTIVE, approval_status=ApprovalStatus.APPROVED
        )
        print(f"Approved existing tenant {tenant.id}")

    existing = runtime.store.find_users_by_email(email, tenant.id)
    if existing:
        user = existing[0]
        if user.role in Role.ADMIN_ROLES:
            print(f"User {email} already administers tenant {tenant.id}")
            return {
                "tenant_id": tenant.id,
                "user_id": user.id,
                "email": email,
                "status": "already_admin",
            }
        runtime.store.update_user_role(user.id, Role.TENANT_ADMIN)
        print(f"Promoted existing user {email} to tenant admin (id: {user.id})")
        return {"tenant_id": tenant.id, "user_id": user.id, "email": email, "status": "promoted"}

    user = runtime.store.create_user(email, tenant_id=tenant.id, role=Role.TENANT_ADMIN)
    await runtime.sessions.set_password(user.id, password)
    print(f"Created tenant admin: {email} (id: {user.id})")
    return {"tenant_id": tenant.id, "user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant and its admin for DocVault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--tenant-name",
        default=os.environ.get("TENANT_NAME"),
        help="Tenant display name (or set TENANT_NAME env var)",
    )
    parser.add_argument(
        "--tenant-id",
        default=os.environ.get("TENANT_ID"),
        help="Tenant id (or set TENANT_ID env var; generated when omitted)",
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

    for value, flag, env in (
        (args.tenant_name, "--tenant-name", "TENANT_NAME"),
        (args.email, "--email", "ADMIN_EMAIL"),
        (args.password, "--password", "ADMIN_PASSWORD"),
    ):
        if not value:
            print(f"Error: {flag} or {env} environment variable required")
            sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/docvault-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("STORAGE_BACKEND", "local")
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_tenant(
                args.tenant_name,
                args.email,
                args.password,
                tenant_id=args.tenant_id,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant admin created successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to tenant admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user already administers this tenant.")


if __name__ == "__main__":
    main()
