#!/usr/bin/env python3
"""Delete expired sessions once, outside the server's background sweeper.

Usage:
    # Against the configured database:
    DATABASE_URL=postgresql://... python scripts/sweep_sessions.py

    # Report how many rows would go without deleting anything:
    python scripts/sweep_sessions.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Sweep the file-backed memory store under SHARED_FS_ROOT instead
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(dry_run: bool = False) -> dict:
    """Run one sweep and return a small report."""
    # Import here to avoid loading config before env vars are set
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if dry_run:
            expired = await runtime.sessions.count_expired()
            print(f"[DRY RUN] Would delete {expired} expired session(s)")
            return {"status": "dry_run", "expired": expired}

        removed = await runtime.sessions.sweep_expired()
        print(f"Deleted {removed} expired session(s)")
        return {"status": "swept", "removed": removed}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Delete expired sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count expired sessions without deleting them",
    )
    args = parser.parse_args()

    try:
        asyncio.run(sweep(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
