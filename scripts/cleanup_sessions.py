#!/usr/bin/env python3
"""Purge expired and duplicate sessions.

Usage:
    # Remove sessions whose lifetime has passed (and their children):
    python scripts/cleanup_sessions.py --expired

    # Keep only the newest session per (identity, scope):
    python scripts/cleanup_sessions.py --duplicates --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    ENCRYPTION_KEY: Identity token key, required to detect duplicates
    SHARED_FS_ROOT: Directory for the memory store state and generated keys
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run_cleanup(expired: bool, duplicates: bool, dry_run: bool = False) -> dict:
    """Run the requested cleanup jobs and return a summary."""
    # Import here to avoid loading config before env vars are set
    from sessionvault.logging import set_correlation_id
    from sessionvault.service.runtime import get_runtime

    # One correlation id ties together every log line of this run.
    correlation_id = set_correlation_id()
    runtime = get_runtime()
    summary: dict = {"correlation_id": correlation_id}
    print(f"Cleanup run {correlation_id}")
    try:
        if expired:
            if dry_run:
                print("[DRY RUN] Would purge expired sessions")
                summary["expired"] = None
            else:
                summary["expired"] = runtime.maintenance.purge_expired()
                print(f"Purged {summary['expired']} expired session(s)")
        if duplicates:
            report = runtime.maintenance.purge_duplicates(dry_run=dry_run)
            summary["duplicates"] = report.as_dict()
            prefix = "[DRY RUN] Would delete" if dry_run else "Deleted"
            print(
                f"{prefix} {len(report.duplicates)} duplicate session(s) "
                f"({report.scanned} scanned, {report.unique} unique, {report.skipped} skipped)"
            )
    finally:
        runtime.close()
    return summary


def main():
    parser = argparse.ArgumentParser(
        description="Clean up stored sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--expired",
        action="store_true",
        help="Delete sessions past their expiry time",
    )
    parser.add_argument(
        "--duplicates",
        action="store_true",
        help="Delete all but the newest session per identity and scope",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not (args.expired or args.duplicates):
        print("Error: choose at least one of --expired or --duplicates")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        run_cleanup(args.expired, args.duplicates, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
