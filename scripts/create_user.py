#!/usr/bin/env python3
"""Create a local user in the persisted memory store.

Usage:
    # Using environment variables:
    NEW_USER_EMAIL=alice@example.com NEW_USER_PASSWORD=correct-horse python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email alice@example.com --username alice --password correct-horse

Environment Variables:
    NEW_USER_EMAIL: Email for the new user
    NEW_USER_PASSWORD: Password for the new user
    STATE_DIR: Directory holding the token secret and persisted store state
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str,
    password: str,
    username: str | None = None,
    *,
    confirmed: bool = False,
    dry_run: bool = False,
) -> dict:
    """Register a user through the gateway so every policy check applies.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authgate.config import Settings
    from authgate.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        existing = await runtime.store.get_user_by_email(email)
        if existing:
            print(f"User {email} already exists (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        result = await runtime.gateway.register(email, password, password, username)
        if confirmed:
            await runtime.store.update_user(result.user.id, email_confirmed=True)
        print(f"Created user: {email} (id: {result.user.id})")
        return {"user_id": result.user.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a local AuthGate user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("NEW_USER_EMAIL"),
        help="User email (or set NEW_USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_USER_PASSWORD"),
        help="User password (or set NEW_USER_PASSWORD env var)",
    )
    parser.add_argument("--username", default=None, help="Optional username")
    parser.add_argument(
        "--confirmed",
        action="store_true",
        help="Mark the email address as already confirmed",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or NEW_USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or NEW_USER_PASSWORD environment variable required")
        sys.exit(1)

    # The memory store only outlives this process when persisted
    os.environ["PERSIST_MEMORY_STORE"] = "true"

    from authgate.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_user(
                args.email,
                args.password,
                args.username,
                confirmed=args.confirmed,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
