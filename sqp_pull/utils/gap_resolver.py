"""
Backfill Gap Resolver
Works out which historical periods a seller is missing and feeds them to the
pull pipeline as one historical job.

Strategy:
- Window: explicit dates, else the min/max of the seller's per-ASIN backfill
  dates (no end date means today), else skip the seller
- Grid: every complete week, month and quarter inside the window
- Missing: grid minus the range keys already present in the metrics table
- Process latest periods first (most valuable), optionally capped per run
"""

import time
import logging
from datetime import date
from typing import Dict, List, Optional, Set, Tuple

from sqp_pull.utils import db
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.job_status import finalize_job
from sqp_pull.utils.models import (
    PERIOD_TYPES,
    DateRange,
    EligibilityRecord,
    PeriodState,
    PeriodType,
    PullJob,
    Seller,
)
from sqp_pull.utils.sqp_reports import batch_asins, enumerate_periods

logger = logging.getLogger(__name__)

# backfill_seller outcomes
NO_ASINS = "no_asins"
NO_WINDOW = "no_window"
NO_GAPS = "no_gaps"
PLANNED = "planned"
PROCESSED = "processed"
MEMORY_HIGH = "memory_high"


def resolve_window(
    explicit_start: Optional[date],
    explicit_end: Optional[date],
    records: List[EligibilityRecord],
    today: date
) -> Optional[DateRange]:
    """
    Pick the backfill window for a seller.

    Explicit dates win. Whatever is missing comes from the eligibility
    records: the earliest backfill_start_date and the latest
    backfill_end_date. A start without any end date runs to today.

    Returns:
        DateRange, or None when no start date can be determined
    """
    start = explicit_start
    end = explicit_end

    if start is None:
        starts = [r.backfill_start_date for r in records if r.backfill_start_date]
        if starts:
            start = min(starts)
    if end is None:
        ends = [r.backfill_end_date for r in records if r.backfill_end_date]
        if ends:
            end = max(ends)
        elif start is not None:
            end = today

    if start is None or end is None:
        return None
    end = min(end, today)
    if start > end:
        logger.warning(f"Backfill window start {start} is after end {end}")
        return None
    return DateRange(start, end)


def compute_period_grid(
    window: DateRange,
    period_types: Optional[List[PeriodType]] = None
) -> Dict[PeriodType, List[DateRange]]:
    """Complete periods of each type inside window, newest first."""
    period_types = [PeriodType(p) for p in (period_types or PERIOD_TYPES)]
    return {p: enumerate_periods(p, window.start, window.end) for p in period_types}


def find_missing_ranges(
    grid: Dict[PeriodType, List[DateRange]],
    existing: Dict[PeriodType, Set[str]]
) -> List[Tuple[PeriodType, DateRange]]:
    """
    Subtract existing range keys from the grid.

    Returns:
        (period type, range) pairs, newest period end first
    """
    missing = []
    for period_type, ranges in grid.items():
        have = existing.get(period_type, set())
        missing.extend((period_type, r) for r in ranges if r.key not in have)

    order = {p: i for i, p in enumerate(PERIOD_TYPES)}
    missing.sort(key=lambda item: (-item[1].end.toordinal(), order[item[0]]))
    return missing


def backfill_seller(
    engine: PullEngine,
    ctx: db.TenantContext,
    seller: Seller,
    start: Optional[date] = None,
    end: Optional[date] = None,
    max_ranges: Optional[int] = None,
    dry_run: bool = False,
    today: Optional[date] = None
) -> Dict:
    """
    Backfill the missing historical periods of one seller.

    Args:
        engine: Configured PullEngine
        ctx: Active tenant context
        seller: Seller to backfill
        start: Explicit window start
        end: Explicit window end
        max_ranges: Cap on ranges requested this run
        dry_run: Report the plan without creating a job
        today: Reference date (defaults to today)

    Returns:
        Result dict; 'status' is one of no_asins, no_window, no_gaps,
        planned (dry run), memory_high or processed
    """
    today = today or date.today()
    result = {"tenant": ctx.tenant_id, "seller": seller.amazon_seller_id, "ranges": []}

    records = db.get_eligibility_records(ctx, seller_id=seller.id)
    asins = [r.asin for r in records if r.is_active]
    if not asins:
        logger.info(f"Backfill: no eligible ASINs for {seller.amazon_seller_id}, skipping")
        result["status"] = NO_ASINS
        return result

    window = resolve_window(start, end, records, today)
    if window is None:
        logger.info(f"Backfill: no backfill window for {seller.amazon_seller_id}, skipping")
        result["status"] = NO_WINDOW
        return result

    grid = compute_period_grid(window, engine.period_types)
    existing = db.get_existing_range_keys(ctx, seller.id, window.start, window.end)
    missing = find_missing_ranges(grid, existing)

    result["window"] = window.key
    result["missing"] = len(missing)
    if not missing:
        logger.info(f"Backfill: no missing ranges for {seller.amazon_seller_id}")
        result["status"] = NO_GAPS
        return result

    if max_ranges:
        missing = missing[:max_ranges]
    result["ranges"] = [{"period_type": p.value, "range": r.key} for p, r in missing]

    if dry_run:
        result["status"] = PLANNED
        return result

    if engine.memory_gate.is_high():
        result["status"] = MEMORY_HIGH
        return result

    batch = batch_asins(asins[:engine.settings.max_asins_per_request])[0]
    job = db.create_job(ctx, PullJob(
        seller_id=seller.id,
        amazon_seller_id=seller.amazon_seller_id,
        asins=batch,
        is_historical=True,
        period_states={p: PeriodState() for p in PERIOD_TYPES if any(m[0] == p for m in missing)},
    ))
    result["job_id"] = job.id

    logger.info(
        f"Backfill: {len(missing)} missing range(s) for {seller.amazon_seller_id} "
        f"in {window.key}, job {job.id}"
    )

    pipeline = engine.pipeline_for(ctx, seller)
    for i, (period_type, date_range) in enumerate(missing):
        if i > 0 and engine.settings.request_delay_seconds > 0:
            time.sleep(engine.settings.request_delay_seconds)

        tuple_result = pipeline.run_tuple(job, period_type, date_range)
        result["ranges"][i]["outcome"] = tuple_result.outcome
        result["ranges"][i]["rows"] = tuple_result.imported_count
        print(f"  {period_type.value} {date_range.key}: {tuple_result.outcome}")

    result["overall_status"] = finalize_job(ctx, job).value
    result["status"] = PROCESSED
    return result
