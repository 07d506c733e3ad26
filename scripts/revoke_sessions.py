#!/usr/bin/env python3
"""Revoke every session of a user (account compromise, offboarding).

Usage:
    # Using environment variables:
    REVOKE_USER_ID=<uuid> python scripts/revoke_sessions.py

    # Or with command line args:
    python scripts/revoke_sessions.py --user-id <uuid> --reason "password reset" --ip 10.0.0.5

Environment Variables:
    REVOKE_USER_ID: User whose refresh tokens should be revoked
    DATABASE_URL: PostgreSQL connection string (required unless USE_MEMORY_STORE=true)
    SHARED_FS_ROOT: Directory holding the in-memory store state when USE_MEMORY_STORE=true
    REDIS_URL: Redis used for the access-token revocation marker
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


async def revoke_sessions(
    user_id: str, reason: str, ip_address: str | None = None, dry_run: bool = False
) -> dict:
    """Revoke all refresh tokens of ``user_id``.

    Returns:
        dict with user_id, revoked count and status ('revoked', 'dry_run' or 'failed')
    """
    # Import here to avoid loading config before env vars are set
    from tessera.service.runtime import get_runtime
    from tessera.storage.models import RequestContext, utcnow

    runtime = get_runtime()
    try:
        if dry_run:
            active = await asyncio.to_thread(
                runtime.store.list_active_refresh_tokens, user_id, utcnow()
            )
            print(f"[DRY RUN] Would revoke {len(active)} active refresh token(s) for {user_id}")
            return {"user_id": user_id, "revoked": len(active), "status": "dry_run"}

        result = await runtime.engine.revoke_all_for_user(
            user_id, RequestContext(ip_address=ip_address), reason=reason
        )
        if not result.ok:
            return {
                "user_id": user_id,
                "revoked": 0,
                "status": "failed",
                "error": result.error.value if result.error else result.message,
            }
        return {"user_id": user_id, "revoked": result.revoked_count, "status": "revoked"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke all sessions of a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("REVOKE_USER_ID"),
        help="User id (or set REVOKE_USER_ID env var)",
    )
    parser.add_argument(
        "--reason",
        default="revoked by administrator",
        help="Reason recorded on every revoked token",
    )
    parser.add_argument("--ip", default=None, help="Operator IP recorded as revoked_by_ip")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or REVOKE_USER_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and os.environ.get("USE_MEMORY_STORE", "").lower() != "true":
        print("Error: DATABASE_URL is required unless USE_MEMORY_STORE=true")
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            revoke_sessions(args.user_id, args.reason, args.ip, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "revoked":
        print(f"Revoked {result['revoked']} refresh token(s) for {result['user_id']}")
    elif result["status"] == "failed":
        print(f"Error: revocation failed ({result['error']})")
        sys.exit(1)


if __name__ == "__main__":
    main()
