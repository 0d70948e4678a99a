#!/usr/bin/env python3
"""
Blob store / attachment table consistency sweep.

Run: python scripts/sweep_orphans.py [--dry-run] [--grace-minutes 30]

Lists blobs with no attachment row (orphans) and rows whose blob is gone
(dangling), deletes orphans older than the grace period unless --dry-run
is given, and prints a human-readable summary.

Exit codes:
  0 - Consistent (no orphans left, no dangling rows)
  1 - Issues found
  2 - Sweep failed (database or blob store error)
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

try:
    from app import database
    from app.services.orphan_sweep import OrphanSweepService
    from app.services.storage import get_blob_store
except ImportError as e:
    print(f"ERROR: Failed to import required modules: {e}")
    print("Make sure you're running from the project root and dependencies are installed.")
    sys.exit(2)


def format_summary(summary: dict) -> str:
    """
    Format sweep summary as human-readable text

    Args:
        summary: Summary dict from OrphanSweepService.run_sweep

    Returns:
        Formatted report string
    """
    lines = []
    lines.append("=" * 80)
    lines.append("BLOB STORE ORPHAN SWEEP" + (" (DRY RUN)" if summary["dry_run"] else ""))
    lines.append("=" * 80)
    lines.append(f"Run ID:                    {summary['run_id']}")
    lines.append(f"Blobs Checked:             {summary['blobs_checked']}")
    lines.append(f"Orphaned Blobs Found:      {summary['orphans_found']}")
    lines.append(f"Orphaned Blobs Deleted:    {summary['orphans_deleted']}")
    lines.append(f"Failed Deletes:            {summary['failed_deletes']}")
    lines.append(f"Dangling Attachment Rows:  {summary['dangling_rows']}")
    lines.append("=" * 80)
    return "\n".join(lines)


def main():
    """Sweep script entry point"""
    parser = argparse.ArgumentParser(
        description="Find and delete blobs that no attachment row references"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report orphans without deleting them"
    )
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=None,
        help="Only delete orphans older than this (default: ORPHAN_GRACE_MINUTES)"
    )
    args = parser.parse_args()

    try:
        database.init_db()
        if database.SessionLocal is None:
            print("ERROR: Database not configured. Set DATABASE_URL environment variable.")
            sys.exit(2)
    except Exception as e:
        print(f"ERROR: Failed to connect to database: {e}")
        sys.exit(2)

    try:
        sweep_service = OrphanSweepService(
            database.SessionLocal,
            get_blob_store(),
            grace_minutes=args.grace_minutes,
        )
        summary = sweep_service.run_sweep(dry_run=args.dry_run)
    except Exception as e:
        print(f"ERROR: Sweep failed: {e}")
        sys.exit(2)

    print(format_summary(summary))

    remaining = summary["orphans_found"] - summary["orphans_deleted"]
    sys.exit(0 if remaining == 0 and summary["dangling_rows"] == 0 else 1)


if __name__ == "__main__":
    main()
