#!/usr/bin/env python3
"""
SQP Eligibility Reset Script

Clears the per-type pull bookkeeping of every active ASIN when a new
reporting period becomes available, so the scheduling loop picks the ASINs
up again.

Reset days:
- WEEK: every Tuesday
- MONTH: the 3rd of each month
- QUARTER: the 20th of January, April, July and October

Usage:
    python -m sqp_pull.reset_eligibility                    # Reset whatever is due today
    python -m sqp_pull.reset_eligibility --period-type MONTH --force # Reset MONTH regardless of date
"""

import sys
import argparse
import logging
from datetime import date

from sqp_pull.config import DEFAULT_PERIOD_TYPES, load_settings
from sqp_pull.utils.eligibility import is_new_period, reset_eligibility
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.models import PeriodType

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Reset SQP ASIN eligibility at the start of a new period"
    )
    parser.add_argument(
        "--period-type",
        type=str,
        choices=DEFAULT_PERIOD_TYPES,
        action="append",
        help="Period type to reset (repeatable). Default: all configured types"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Reset even if today is not the period's reset day"
    )
    parser.add_argument("--date", type=str, help="Treat this date (YYYY-MM-DD) as today")
    args = parser.parse_args()

    settings = load_settings()
    today = date.fromisoformat(args.date) if args.date else date.today()
    requested = [PeriodType(p) for p in (args.period_type or settings.period_types)]
    due = [p for p in requested if args.force or is_new_period(p, today)]

    print(f"\nSQP Eligibility Reset")
    print(f"Date: {today} | Requested: {', '.join(p.value for p in requested)}")
    print(f"Resetting: {', '.join(p.value for p in due) or 'nothing due today'}")
    print(f"{'='*60}")

    if not due:
        return

    engine = PullEngine.from_settings(settings)
    failed = 0

    for tenant in engine.list_tenants():
        try:
            with engine.tenant_scope(tenant) as ctx:
                for period_type in due:
                    count = reset_eligibility(ctx, period_type)
                    print(f"  [{tenant.id}] {period_type.value}: {count} ASIN(s) reset")
        except Exception as e:
            logger.error(f"Tenant {tenant.id} failed: {e}")
            failed += 1

    print(f"\n{'='*60}")
    print(f"Reset complete. Tenants failed: {failed}")

    if failed > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
