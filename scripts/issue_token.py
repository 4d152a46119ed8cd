#!/usr/bin/env python3
"""Mint a bearer token for a local identity, for development and smoke tests.

The token is signed with the same JWT_SECRET (and JWT_ISSUER / JWT_AUDIENCE,
when set) the API verifies with, so it is accepted exactly like a token from
the identity provider.

Usage:
    JWT_SECRET=... python scripts/issue_token.py --identity idp_123 --email dev@example.com

    # Also create the tenant account right away:
    python scripts/issue_token.py --identity idp_123 --email dev@example.com --register

Environment Variables:
    JWT_SECRET: Shared signing secret (required)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def issue_token(
    identity: str,
    email: Optional[str],
    name: Optional[str],
    ttl_seconds: int,
    register: bool = False,
) -> dict:
    """Mint a token and optionally create the tenant account it maps to.

    Returns:
        dict with access_token, identity and (when registered) user_id
    """
    # Import here to avoid loading config before env vars are set
    from ethosync.service.runtime import get_runtime

    runtime = get_runtime()
    token = runtime.auth.issue_access_token(
        identity, email=email, name=name, ttl_seconds=ttl_seconds
    )
    result = {"access_token": token, "identity": identity, "user_id": None}
    if register:
        user = runtime.auth.authenticate(f"Bearer {token}")
        result["user_id"] = user.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Issue a development bearer token for Ethosync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--identity", required=True, help="Identity provider subject id")
    parser.add_argument("--email", default=None, help="Email claim")
    parser.add_argument("--name", default=None, help="Display name claim")
    parser.add_argument(
        "--ttl",
        type=int,
        default=3600,
        help="Token lifetime in seconds (default: 3600)",
    )
    parser.add_argument(
        "--register",
        action="store_true",
        help="Create the tenant account for this identity",
    )

    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET environment variable required")
        sys.exit(1)

    if args.ttl <= 0:
        print("Error: --ttl must be positive")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/ethosync-dev"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = issue_token(args.identity, args.email, args.name, args.ttl, args.register)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["user_id"]:
        print(f"Tenant account: {result['user_id']}")
    print(result["access_token"])


if __name__ == "__main__":
    main()
