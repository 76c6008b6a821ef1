#!/usr/bin/env python3
"""Log an identity out of every device by revoking all its refresh tokens.

Usage:
    # Using environment variables:
    TARGET_EMAIL=someone@example.com python scripts/revoke_sessions.py

    # Or with command line args:
    python scripts/revoke_sessions.py --email someone@example.com --dry-run

Environment Variables:
    TARGET_EMAIL: Email of the identity to log out
    DATABASE_URL: PostgreSQL connection string (required unless USE_MEMORY_STORE=true)

Access tokens already handed out stay valid until they expire.
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


async def revoke_sessions(email: str, dry_run: bool = False) -> dict:
    """Revoke every active refresh token of the identity registered to ``email``.

    Returns:
        dict with identity_id, pseudonym, revoked count and status
        ('revoked', 'dry_run' or 'not_found')
    """
    # Import here to avoid loading config before env vars are set
    from moodcircle.service.otp import normalize_email
    from moodcircle.service.runtime import get_runtime
    from moodcircle.storage.models import utcnow

    runtime = get_runtime()
    normalized = normalize_email(email)
    identity = runtime.store.get_identity_by_email(normalized)
    if identity is None:
        print(f"No identity registered for {normalized}")
        return {"identity_id": None, "revoked": 0, "status": "not_found"}

    if dry_run:
        active = runtime.store.count_active_refresh_tokens(identity.id, now=utcnow())
        print(f"[DRY RUN] Would revoke {active} active refresh token(s) for {identity.pseudonym}")
        return {
            "identity_id": identity.id,
            "pseudonym": identity.pseudonym,
            "revoked": active,
            "status": "dry_run",
        }

    revoked = await runtime.auth.logout_all(identity.id)
    print(f"Revoked {revoked} refresh token(s) for {identity.pseudonym} (id: {identity.id})")
    return {
        "identity_id": identity.id,
        "pseudonym": identity.pseudonym,
        "revoked": revoked,
        "status": "revoked",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Log a MoodCircle identity out everywhere",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("TARGET_EMAIL"),
        help="Identity email (or set TARGET_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or TARGET_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: DATABASE_URL is required (or USE_MEMORY_STORE=true for a local state dir)")
        sys.exit(1)

    from moodcircle.service.errors import ServiceError
    from moodcircle.storage.errors import StorageUnavailable

    try:
        result = asyncio.run(revoke_sessions(args.email, args.dry_run))
    except (ServiceError, StorageUnavailable) as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "not_found":
        sys.exit(2)


if __name__ == "__main__":
    main()
