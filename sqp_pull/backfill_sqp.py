#!/usr/bin/env python3
"""
SQP Historical Backfill Script

Requests the historical WEEK / MONTH / QUARTER periods a seller is missing
from the metrics table.

Strategy:
- Window from --start/--end, else from the per-ASIN backfill dates
- Process latest periods first (most valuable)
- Skip ranges already present in sqp_metrics
- Cap the number of ranges per run with --max-ranges

Usage:
    python -m sqp_pull.backfill_sqp                         # All sellers, all tenants
    python -m sqp_pull.backfill_sqp --seller A1B2C3D4E5     # Single seller
    python -m sqp_pull.backfill_sqp --start 2024-01-01 --end 2024-06-30
    python -m sqp_pull.backfill_sqp --max-ranges 4          # At most 4 ranges per seller
    python -m sqp_pull.backfill_sqp --dry-run               # Show plan
"""

import sys
import time
import argparse
import logging
from collections import Counter
from datetime import date

from sqp_pull.config import load_settings
from sqp_pull.utils import db
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.gap_resolver import MEMORY_HIGH, backfill_seller

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Backfill missing historical SQP periods from Amazon SP-API"
    )
    parser.add_argument("--seller", type=str, help="Amazon seller id (or internal id). Omit for all sellers.")
    parser.add_argument("--tenant", type=str, help="Only process this tenant id")
    parser.add_argument("--start", type=str, help="Backfill start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="Backfill end date (YYYY-MM-DD). Default: today")
    parser.add_argument(
        "--max-ranges",
        type=int,
        help="Max missing ranges to request per seller this run (default: all)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Show plan without executing")
    args = parser.parse_args()

    start = date.fromisoformat(args.start) if args.start else None
    end = date.fromisoformat(args.end) if args.end else None

    engine = PullEngine.from_settings(load_settings())
    tenants = [t for t in engine.list_tenants() if not args.tenant or t.id == args.tenant]

    print(f"\nSQP Historical Backfill")
    print(f"Window: {start or 'per ASIN'} to {end or 'per ASIN'}")
    print(f"Period types: {', '.join(engine.settings.period_types)}")
    print(f"Max ranges per seller: {args.max_ranges or 'all'}")
    print(f"{'='*60}")

    all_results = []
    start_time = time.time()

    for tenant in tenants:
        if any(r["status"] == MEMORY_HIGH for r in all_results):
            logger.warning("Memory usage high, stopping backfill")
            break
        try:
            with engine.tenant_scope(tenant) as ctx:
                if args.seller:
                    seller = db.get_seller(ctx, args.seller)
                    sellers = [seller] if seller else []
                else:
                    sellers = db.get_active_sellers(ctx)

                for seller in sellers:
                    print(f"\nSeller {seller.amazon_seller_id} (tenant {tenant.id})")
                    try:
                        result = backfill_seller(
                            engine, ctx, seller,
                            start=start, end=end,
                            max_ranges=args.max_ranges,
                            dry_run=args.dry_run
                        )
                    except Exception as e:
                        logger.error(f"Backfill failed for {seller.amazon_seller_id}: {e}")
                        result = {"tenant": tenant.id, "seller": seller.amazon_seller_id,
                                  "status": "error", "error": str(e)}

                    all_results.append(result)
                    line = f"  Status: {result['status']}"
                    if "window" in result:
                        line += f" | window {result['window']}, {result['missing']} missing"
                    print(line)
                    if args.dry_run:
                        for item in result.get("ranges", []):
                            print(f"    {item['period_type']:8} {item['range']}")

                    if result["status"] == MEMORY_HIGH:
                        break
        except Exception as e:
            logger.error(f"Tenant {tenant.id} failed: {e}")
            all_results.append({"tenant": tenant.id, "status": "error", "error": str(e)})

    if args.dry_run:
        print("\n[DRY RUN] Would request the above ranges. Exiting.")
        return

    # Summary
    duration = time.time() - start_time
    for r in all_results:
        if r.get("overall_status") == "FAILED":
            r["status"] = "failed"
    engine.alerts.send_summary("backfill", all_results, duration)

    counts = Counter(r["status"] for r in all_results)
    total_rows = sum(
        item.get("rows", 0) for r in all_results for item in r.get("ranges", [])
    )

    print(f"\n{'='*60}")
    print("BACKFILL SUMMARY")
    print(f"{'='*60}")
    print(f"Sellers: {len(all_results)}")
    print(" | ".join(f"{status}: {count}" for status, count in sorted(counts.items())))
    print(f"Total rows: {total_rows}")
    print(f"Duration: {duration/60:.1f} minutes")

    if counts["failed"] or counts["error"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
