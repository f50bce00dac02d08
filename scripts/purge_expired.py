#!/usr/bin/env python3
"""Run one cleanup sweep outside the API process.

Removes registration sessions whose window has lapsed and refresh tokens past
their expiry. Useful from cron when the in-process scheduler is disabled
(CLEANUP_ENABLED=false) or when several API replicas should not all sweep.

Usage:
    DATABASE_URL=postgresql://... REDIS_URL=redis://... python scripts/purge_expired.py

    # Against a local in-memory setup:
    python scripts/purge_expired.py --memory
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


async def purge() -> dict:
    # Import here to avoid loading config before env vars are set
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        report = await runtime.cleanup.sweep_once()
    finally:
        await runtime.close()
    return {
        "registrations_deleted": report.registrations_deleted,
        "refresh_tokens_deleted": report.refresh_tokens_deleted,
        "errors": report.errors,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired registration sessions and refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-memory directory and allow running without Redis",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print debug logs to the console instead of JSON lines",
    )
    args = parser.parse_args()

    if args.verbose:
        from authflow.logging import configure_logging

        configure_logging(log_level="DEBUG", development_mode=True)

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authflow")

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(purge())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Registrations deleted:  {result['registrations_deleted']}")
    print(f"Refresh tokens deleted: {result['refresh_tokens_deleted']}")
    if result["errors"]:
        print(f"Errors: {result['errors']} (see logs)")
        sys.exit(2)


if __name__ == "__main__":
    main()
