#!/usr/bin/env python3
"""
SQP Scheduling Cycle Script

Runs one scheduling cycle: picks the next tenant with work, pulls every due
period type (WEEK / MONTH / QUARTER) for the first seller with due ASINs,
and stops. Meant to run on a short cron interval.

Usage:
    python -m sqp_pull.run_cycle            # One cycle
    python -m sqp_pull.run_cycle --period-type WEEK  # Only pull weekly reports this run
"""

import sys
import time
import argparse
import logging

from sqp_pull.config import DEFAULT_PERIOD_TYPES, load_settings
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.scheduler import MEMORY_HIGH, run_cycle

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Run one SQP report pull cycle"
    )
    parser.add_argument(
        "--period-type",
        type=str,
        choices=DEFAULT_PERIOD_TYPES,
        action="append",
        help="Restrict the run to a period type (repeatable). Default: REPORT_PERIOD_TYPES"
    )
    args = parser.parse_args()

    settings = load_settings()
    if args.period_type:
        settings.period_types = args.period_type

    print(f"\nSQP Pull Cycle")
    print(f"Period types: {', '.join(settings.period_types)}")
    print(f"{'='*60}")

    engine = PullEngine.from_settings(settings)
    start_time = time.time()
    summary = run_cycle(engine)
    duration = time.time() - start_time

    results = list(summary["errors"])
    if summary["result"]:
        results.append(summary["result"])
    engine.alerts.send_summary("run_cycle", results, duration)

    print(f"\n{'='*60}")
    print("CYCLE SUMMARY")
    print(f"{'='*60}")
    print(f"Outcome: {summary['outcome']}")

    result = summary["result"]
    if result:
        print(f"Tenant: {result['tenant']} | Seller: {result['seller']} | Job: {result['job_id']}")
        print(f"Overall status: {result['overall_status']}")
        for item in result["tuples"]:
            line = f"  {item['period_type']:8} {item['range']}: {item['outcome']}"
            if item["rows"]:
                line += f" ({item['rows']} rows)"
            if item["error"]:
                line += f" - {item['error']}"
            print(line)
    elif summary["outcome"] == MEMORY_HIGH:
        print("Memory usage above limit, no work started")
    else:
        print("Nothing due")

    for error in summary["errors"]:
        print(f"  Tenant {error['tenant']} error: {error['error']}")
    print(f"Duration: {duration:.1f}s")

    if summary["errors"] or (result and result["status"] == "failed"):
        sys.exit(1)


if __name__ == "__main__":
    main()
