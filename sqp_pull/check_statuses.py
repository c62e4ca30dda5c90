#!/usr/bin/env python3
"""
SQP Pending Status Check Script

Advances every recently active pull unit that already has a report id:
polls its status and, once ready, downloads and imports it.

Usage:
    python -m sqp_pull.check_statuses
    python -m sqp_pull.check_statuses --tenant 42    # Single tenant
"""

import sys
import time
import argparse
import logging

from sqp_pull.config import load_settings
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.stuck_jobs import check_pending, result_status

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Check pending SQP report statuses and import finished reports"
    )
    parser.add_argument("--tenant", type=str, help="Only check this tenant id")
    args = parser.parse_args()

    engine = PullEngine.from_settings(load_settings())
    tenants = [t for t in engine.list_tenants() if not args.tenant or t.id == args.tenant]

    print(f"\nSQP Pending Status Check")
    print(f"Tenants: {len(tenants)}")
    print(f"{'='*60}")

    all_results = []
    start_time = time.time()

    for tenant in tenants:
        try:
            with engine.tenant_scope(tenant) as ctx:
                results = check_pending(engine, ctx)
        except Exception as e:
            logger.error(f"Tenant {tenant.id} failed: {e}")
            all_results.append({"tenant": tenant.id, "status": "error", "error": str(e)})
            continue

        for r in results:
            r["status"] = result_status(r)
            print(f"  [{tenant.id}] job {r['job_id']} {r['period_type']} {r['range']}: {r['outcome']}")
        all_results.extend(results)

    duration = time.time() - start_time
    engine.alerts.send_summary("check_statuses", all_results, duration)

    completed = sum(1 for r in all_results if r["status"] == "completed")
    failed = sum(1 for r in all_results if r["status"] in ("failed", "error"))

    print(f"\n{'='*60}")
    print("STATUS CHECK SUMMARY")
    print(f"{'='*60}")
    print(f"Units checked: {len(all_results)} | Completed: {completed} | Failed: {failed}")
    print(f"Duration: {duration:.1f}s")

    if failed > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
