#!/usr/bin/env python3
"""
SQP ASIN Sync Script

Registers seller ASINs in the eligibility table so the scheduling loop can
pick them up. ASINs already registered keep their pull history.

ASIN source (first match wins):
- --asins: comma separated list
- --file: one ASIN per line
- otherwise the seller's catalog table

Usage:
    python -m sqp_pull.sync_asins                           # All sellers, all tenants, from catalog
    python -m sqp_pull.sync_asins --seller A1B2C3D4E5       # Single seller
    python -m sqp_pull.sync_asins --seller A1B2C3D4E5 --asins B0A,B0B
    python -m sqp_pull.sync_asins --seller A1B2C3D4E5 --file asins.txt
"""

import sys
import argparse
import logging

from sqp_pull.config import load_settings
from sqp_pull.utils import db
from sqp_pull.utils.eligibility import sync_seller_asins
from sqp_pull.utils.engine import PullEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def read_asins(args):
    if args.asins:
        return args.asins.split(",")
    if args.file:
        with open(args.file) as f:
            return [line for line in f.read().splitlines() if line.strip()]
    return None


def main():
    parser = argparse.ArgumentParser(
        description="Register seller ASINs for SQP scheduling"
    )
    parser.add_argument("--seller", type=str, help="Amazon seller id (or internal id). Omit for all sellers.")
    parser.add_argument("--tenant", type=str, help="Only process this tenant id")
    parser.add_argument("--asins", type=str, help="Comma separated ASINs (requires --seller)")
    parser.add_argument("--file", type=str, help="File with one ASIN per line (requires --seller)")
    args = parser.parse_args()

    if (args.asins or args.file) and not args.seller:
        parser.error("--asins and --file require --seller")

    asins = read_asins(args)
    engine = PullEngine.from_settings(load_settings())
    tenants = [t for t in engine.list_tenants() if not args.tenant or t.id == args.tenant]

    print(f"\nSQP ASIN Sync")
    print(f"Source: {'catalog' if asins is None else f'{len(asins)} ASIN(s) given'}")
    print(f"{'='*60}")

    total_synced = 0
    failed = 0

    for tenant in tenants:
        try:
            with engine.tenant_scope(tenant) as ctx:
                if args.seller:
                    sellers = [args.seller] if db.get_seller(ctx, args.seller) else []
                else:
                    sellers = [s.amazon_seller_id for s in db.get_active_sellers(ctx)]

                for seller_id in sellers:
                    try:
                        result = sync_seller_asins(ctx, seller_id, asins)
                    except Exception as e:
                        logger.error(f"ASIN sync failed for {seller_id}: {e}")
                        failed += 1
                        continue
                    total_synced += result["synced"]
                    print(f"  [{tenant.id}] {seller_id}: {result['synced']} new of {result['total']}")
        except Exception as e:
            logger.error(f"Tenant {tenant.id} failed: {e}")
            failed += 1

    print(f"\n{'='*60}")
    print(f"Sync complete. New ASINs: {total_synced} | Failures: {failed}")

    if failed > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
