#!/usr/bin/env python3
"""Create a user, optionally with a PIN, for local testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=user@example.com BOOTSTRAP_PASSWORD=SecurePassword123 python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email user@example.com --password SecurePassword123 --pin 4821

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (at least 8 characters)
    BOOTSTRAP_PIN: Optional 4-digit PIN to configure
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


async def bootstrap_user(
    email: str, password: str, pin: Optional[str] = None, dry_run: bool = False
) -> dict:
    """Create a user, or configure the PIN of an existing one.

    Returns:
        dict with user_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here so the environment is settled before settings load
    from pinguard.service.biometric import SetupPinRequest
    from pinguard.service.results import Err
    from pinguard.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(normalized)

    if dry_run:
        action = "configure PIN for" if existing_user else "create"
        print(f"[DRY RUN] Would {action} user: {normalized}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": normalized,
            "status": "dry_run",
        }

    if existing_user:
        user_id = existing_user.id
        status = "exists"
        print(f"User {normalized} already exists (id: {user_id})")
    else:
        user, _, _ = await runtime.auth.signup(normalized, password)
        user_id = user.id
        status = "created"
        print(f"Created user: {normalized} (id: {user_id})")

    result = {"user_id": user_id, "email": normalized, "status": status}
    if pin is not None:
        outcome = await runtime.biometric.setup_pin(SetupPinRequest(user_id=user_id, pin=pin))
        if isinstance(outcome, Err):
            raise RuntimeError(f"PIN setup failed: {outcome.error.message}")
        result["pin_created_at"] = outcome.value.pin_created_at.isoformat()
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a PinGuard user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--pin",
        default=os.environ.get("BOOTSTRAP_PIN"),
        help="Optional 4-digit PIN (or set BOOTSTRAP_PIN env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password or len(args.password) < 8:
        print("Error: --password (at least 8 characters) or BOOTSTRAP_PASSWORD required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/pinguard-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_user(args.email, args.password, args.pin, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
    print(f"  Email: {result['email']}")
    print(f"  User ID: {result['user_id']}")
    if result.get("pin_created_at"):
        print(f"  PIN configured at: {result['pin_created_at']}")


if __name__ == "__main__":
    main()
