#!/usr/bin/env python3
"""
SQP Cleanup Script

Deletes activity logs, finished pull jobs and completed download records
older than the retention window in every tenant.

Usage:
    python -m sqp_pull.cleanup_logs         # LOG_RETENTION_DAYS (default 30)
    python -m sqp_pull.cleanup_logs --days 90
"""

import sys
import argparse
import logging
from collections import Counter

from sqp_pull.config import load_settings
from sqp_pull.utils import db
from sqp_pull.utils.engine import PullEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Delete old SQP activity logs, jobs and download records"
    )
    parser.add_argument("--days", type=int, help="Retention in days (default: LOG_RETENTION_DAYS)")
    args = parser.parse_args()

    settings = load_settings()
    retention_days = args.days if args.days is not None else settings.log_retention_days
    if retention_days < 1:
        parser.error("--days must be at least 1")

    print(f"\nSQP Cleanup")
    print(f"Retention: {retention_days} days")
    print(f"{'='*60}")

    engine = PullEngine.from_settings(settings)
    totals = Counter()
    failed = 0

    for tenant in engine.list_tenants():
        try:
            with engine.tenant_scope(tenant) as ctx:
                counts = db.cleanup_old_records(ctx, retention_days)
        except Exception as e:
            logger.error(f"Cleanup failed for tenant {tenant.id}: {e}")
            failed += 1
            continue

        totals.update(counts)
        print(f"  [{tenant.id}] " + ", ".join(f"{table}: {n}" for table, n in counts.items()))

    print(f"\n{'='*60}")
    print("CLEANUP SUMMARY")
    print(f"{'='*60}")
    for table, n in totals.items():
        print(f"  {table}: {n} deleted")
    print(f"Tenants failed: {failed}")

    if failed > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
