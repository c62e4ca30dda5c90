"""
ASIN Eligibility
Registers the ASINs of a seller, decides which of them are due for which
period types, and resets the per-type bookkeeping when a new calendar
period begins.

A period type is due for an ASIN when its last pull:
- never happened (status is None)
- FAILED and started longer ago than the retry cool-down
- is still PENDING but started longer ago than the cool-down (abandoned)
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqp_pull.utils import db
from sqp_pull.utils.models import (
    EligibilityRecord,
    EligibilityStatus,
    PeriodType,
    utcnow,
)
from sqp_pull.utils.sqp_reports import batch_asins

logger = logging.getLogger(__name__)

# First day on which the previous period's report is reliably available
NEW_PERIOD_WEEKDAY = 1  # Tuesday
NEW_PERIOD_MONTH_DAY = 3
NEW_PERIOD_QUARTER_DAY = 20
QUARTER_START_MONTHS = (1, 4, 7, 10)


@dataclass
class DueBatch:
    """ASINs selected for one pull job and the period types they are due for."""
    asins: List[str] = field(default_factory=list)
    period_types: List[PeriodType] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.asins and self.period_types)


def is_type_due(
    record: EligibilityRecord,
    period_type: PeriodType,
    now: datetime,
    cooldown_days: int
) -> bool:
    status = record.last_status.get(period_type)
    if status is None:
        return True
    if status == EligibilityStatus.SUCCESS:
        return False

    started = record.last_started_at.get(period_type)
    if started is None:
        return True
    return started < now - timedelta(days=cooldown_days)


def due_types(
    record: EligibilityRecord,
    period_types: List[PeriodType],
    now: datetime,
    cooldown_days: int
) -> List[PeriodType]:
    return [p for p in period_types if is_type_due(record, PeriodType(p), now, cooldown_days)]


def select_due_batch(
    records: List[EligibilityRecord],
    period_types: List[PeriodType],
    now: Optional[datetime] = None,
    cooldown_days: int = 3,
    max_asins: int = 20
) -> DueBatch:
    """
    Pick the ASINs for the next pull job of a seller.

    Takes up to max_asins due ASINs, then keeps the first batch that fits the
    ASIN character limit. The job's period types are the union of the types
    due for the selected ASINs.

    Args:
        records: Active eligibility records of one seller
        period_types: Period types enabled for this run
        now: Reference time (defaults to current UTC time)
        cooldown_days: Minimum age of a FAILED or PENDING attempt before retrying
        max_asins: Cap on ASINs considered per job

    Returns:
        DueBatch (falsy when nothing is due)
    """
    now = now or utcnow()
    period_types = [PeriodType(p) for p in period_types]

    due: Dict[str, List[PeriodType]] = {}
    for record in records:
        if not record.is_active:
            continue
        types = due_types(record, period_types, now, cooldown_days)
        if types:
            due[record.asin] = types
        if len(due) >= max_asins:
            break

    if not due:
        return DueBatch()

    batches = batch_asins(list(due.keys()))
    asins = batches[0] if batches else []
    types = {p for asin in asins for p in due[asin]}
    return DueBatch(asins=asins, period_types=[p for p in period_types if p in types])


def is_new_period(period_type: PeriodType, today: date) -> bool:
    """
    True on the day eligibility for period_type should be reset.

    WEEK resets on Tuesday, MONTH on the 3rd, QUARTER on the 20th of
    January, April, July and October.
    """
    period_type = PeriodType(period_type)
    if period_type == PeriodType.WEEK:
        return today.weekday() == NEW_PERIOD_WEEKDAY
    if period_type == PeriodType.MONTH:
        return today.day == NEW_PERIOD_MONTH_DAY
    return today.month in QUARTER_START_MONTHS and today.day == NEW_PERIOD_QUARTER_DAY


def reset_eligibility(ctx: db.TenantContext, period_type: PeriodType) -> int:
    """
    Clear last status and timestamps of period_type on all active records.

    Returns:
        Number of records reset
    """
    count = db.reset_eligibility_for_period(ctx, period_type)
    logger.info(f"Reset {PeriodType(period_type).value} eligibility for {count} ASIN(s) in tenant {ctx.tenant_id}")
    return count


def normalize_asins(asins: Iterable[str]) -> List[str]:
    """Strip, upper-case and de-duplicate ASINs, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for asin in asins:
        asin = (asin or "").strip().upper()
        if asin:
            seen[asin] = None
    return list(seen)


def sync_seller_asins(
    ctx: db.TenantContext,
    seller_id: str,
    asins: Optional[Iterable[str]] = None
) -> Dict[str, int]:
    """
    Register a seller's ASINs for scheduling.

    ASINs without an eligibility row get a fresh active one. Existing rows,
    their status history included, are left alone.

    Args:
        ctx: Active tenant context
        seller_id: Amazon seller id or internal seller id
        asins: ASINs to register (defaults to the seller's catalog table)

    Returns:
        {"synced": newly inserted, "total": distinct ASINs offered}

    Raises:
        ValueError: If the seller does not exist in this tenant
    """
    seller = db.get_seller(ctx, seller_id)
    if seller is None:
        raise ValueError(f"Seller not found: {seller_id}")

    if asins is None:
        asins = db.get_catalog_asins(ctx, seller.id)
    asins = normalize_asins(asins)
    if not asins:
        logger.info(f"No ASINs to sync for {seller.amazon_seller_id}")
        return {"synced": 0, "total": 0}

    existing = db.get_existing_asins(ctx, seller.id, asins)
    new_asins = [a for a in asins if a not in existing]
    logger.info(
        f"{seller.amazon_seller_id}: {len(asins)} ASIN(s) offered, "
        f"{len(existing)} already registered, {len(new_asins)} new"
    )

    synced = db.insert_eligibility_records(ctx, seller.id, new_asins) if new_asins else 0
    return {"synced": synced, "total": len(asins)}
