#!/usr/bin/env python3
"""
SQP Stuck Job Recovery Script

Finds pull units whose phase has not moved for longer than the grace
window and re-enters them at the Poll phase. Units that never got a report
id are closed out so the next scheduling cycle can request them again.

Usage:
    python -m sqp_pull.retry_stuck              # Default grace window (STUCK_GRACE_HOURS)
    python -m sqp_pull.retry_stuck --grace-hours 2       # Shorter window
    python -m sqp_pull.retry_stuck --rearm      # Also retry units that used up their retries
    python -m sqp_pull.retry_stuck --dry-run    # List stuck units only
"""

import sys
import time
import argparse
import logging
from datetime import timedelta

from sqp_pull.config import load_settings
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.stuck_jobs import find_stuck_units, recover_stuck_units, result_status

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Retry stuck SQP pull jobs from the Poll phase"
    )
    parser.add_argument(
        "--grace-hours",
        type=float,
        help="Hours without progress before a unit counts as stuck (default: STUCK_GRACE_HOURS)"
    )
    parser.add_argument(
        "--rearm",
        action="store_true",
        help="Reset the retry count of exhausted units and retry them as well"
    )
    parser.add_argument("--tenant", type=str, help="Only process this tenant id")
    parser.add_argument("--dry-run", action="store_true", help="List stuck units without retrying")
    args = parser.parse_args()

    settings = load_settings()
    grace = timedelta(hours=args.grace_hours if args.grace_hours is not None else settings.stuck_grace_hours)

    engine = PullEngine.from_settings(settings)
    tenants = [t for t in engine.list_tenants() if not args.tenant or t.id == args.tenant]

    print(f"\nSQP Stuck Job Recovery")
    print(f"Grace window: {grace.total_seconds() / 3600:.1f}h | Re-arm: {args.rearm}")
    print(f"Tenants: {len(tenants)}")
    print(f"{'='*60}")

    all_results = []
    start_time = time.time()

    for tenant in tenants:
        try:
            with engine.tenant_scope(tenant) as ctx:
                if args.dry_run:
                    for unit in find_stuck_units(ctx, grace=grace, include_exhausted=args.rearm):
                        print(f"  [{tenant.id}] job {unit.job.id} {unit.period_type.value} "
                              f"{unit.range_key or '-'}: {unit.entry.action} ({unit.entry.status.value}, "
                              f"retries {unit.entry.retry_count}, report {unit.report_id or '-'})")
                    continue
                results = recover_stuck_units(engine, ctx, grace=grace, rearm=args.rearm)
        except Exception as e:
            logger.error(f"Tenant {tenant.id} failed: {e}")
            all_results.append({"tenant": tenant.id, "status": "error", "error": str(e)})
            continue

        for r in results:
            r["status"] = result_status(r)
            print(f"  [{tenant.id}] job {r['job_id']} {r['period_type']} {r['range'] or '-'}: {r['outcome']}")
        all_results.extend(results)

    if args.dry_run:
        print("\n[DRY RUN] No units retried.")
        return

    duration = time.time() - start_time
    engine.alerts.send_summary("retry_stuck", all_results, duration)

    recovered = sum(1 for r in all_results if r["status"] == "completed")
    failed = sum(1 for r in all_results if r["status"] in ("failed", "error"))

    print(f"\n{'='*60}")
    print("RECOVERY SUMMARY")
    print(f"{'='*60}")
    print(f"Units retried: {len(all_results)} | Recovered: {recovered} | Failed: {failed}")
    print(f"Duration: {duration:.1f}s")

    if failed > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
