"""
Scheduling Loop
One run of the orchestrator: pick the next tenant with work, pick the first
seller in it with due ASINs, pull every due period type for that seller and
stop.

Exactly one seller is processed per run. Tenants are visited priority first,
then least recently served; the served tenant's updated_at is bumped so the
next run moves on.
"""

import time
import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqp_pull.utils import db
from sqp_pull.utils.auth import MissingCredentialsError
from sqp_pull.utils.eligibility import DueBatch, select_due_batch
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.job_status import finalize_job
from sqp_pull.utils.models import (
    AggregateStatus,
    EligibilityStatus,
    PeriodState,
    PullJob,
    PullStatus,
    Seller,
    utcnow,
)
from sqp_pull.utils.sqp_reports import get_previous_complete_period

logger = logging.getLogger(__name__)

# Run outcomes
PROCESSED = "processed"
IDLE = "idle"
MEMORY_HIGH = "memory_high"

RESULT_STATUS = {
    AggregateStatus.SUCCESS: "completed",
    AggregateStatus.FAILED: "failed",
}


def tenant_is_busy(ctx: db.TenantContext, now: datetime, grace: timedelta) -> bool:
    """
    True if the tenant has a job with a PENDING period state that moved
    within the grace window (i.e. another run is still working on it).
    """
    cutoff = now - grace
    for job in db.get_unfinished_jobs(ctx):
        for state in job.period_states.values():
            if state.pull_status != PullStatus.PENDING:
                continue
            if state.updated_at is not None and state.updated_at >= cutoff:
                logger.info(f"Tenant {ctx.tenant_id} busy: job {job.id} is active")
                return True
    return False


def seller_has_credentials(engine: PullEngine, ctx: db.TenantContext, seller: Seller) -> bool:
    try:
        token = engine.credentials.get_valid_access_token(ctx, seller.amazon_seller_id)
    except MissingCredentialsError as e:
        logger.warning(f"Skipping seller {seller.amazon_seller_id}: {e}")
        return False
    except Exception as e:
        logger.warning(f"Skipping seller {seller.amazon_seller_id}: token refresh failed ({e})")
        return False

    if token.lost:
        logger.warning(f"Skipping seller {seller.amazon_seller_id}: authorization lost")
        return False
    return True


def find_due_seller(engine: PullEngine, ctx: db.TenantContext, now: datetime):
    """
    First active seller with credentials and due ASINs.

    Returns:
        (Seller, DueBatch) or (None, None)
    """
    settings = engine.settings
    for seller in db.get_active_sellers(ctx):
        records = db.get_eligibility_records(ctx, seller_id=seller.id)
        batch = select_due_batch(
            records,
            engine.period_types,
            now=now,
            cooldown_days=settings.retry_cooldown_days,
            max_asins=settings.max_asins_per_request,
        )
        if not batch:
            continue
        if not seller_has_credentials(engine, ctx, seller):
            continue
        return seller, batch
    return None, None


def process_seller(
    engine: PullEngine,
    ctx: db.TenantContext,
    seller: Seller,
    batch: DueBatch,
    now: Optional[datetime] = None,
    today: Optional[date] = None
) -> Dict:
    """
    Create a pull job for the batch and run the pipeline for each due type.

    Returns:
        Result dict with job id, overall status and per-type outcomes
    """
    now = now or utcnow()
    today = today or now.date()

    job = db.create_job(ctx, PullJob(
        seller_id=seller.id,
        amazon_seller_id=seller.amazon_seller_id,
        asins=batch.asins,
        period_states={p: PeriodState() for p in batch.period_types},
    ))

    for period_type in batch.period_types:
        db.update_eligibility_status(ctx, seller.id, batch.asins, period_type, EligibilityStatus.PENDING, now)

    print(f"\nSeller {seller.amazon_seller_id}: job {job.id}, {len(batch.asins)} ASINs, "
          f"types {', '.join(p.value for p in batch.period_types)}")

    pipeline = engine.pipeline_for(ctx, seller)
    tuples: List[Dict] = []

    for i, period_type in enumerate(batch.period_types):
        if i > 0 and engine.settings.request_delay_seconds > 0:
            time.sleep(engine.settings.request_delay_seconds)

        date_range = get_previous_complete_period(period_type, today)
        result = pipeline.run_tuple(job, period_type, date_range)

        status = EligibilityStatus.SUCCESS if result.ok else EligibilityStatus.FAILED
        db.update_eligibility_status(ctx, seller.id, batch.asins, period_type, status)

        tuples.append({
            "period_type": period_type.value,
            "range": date_range.key,
            "outcome": result.outcome,
            "rows": result.imported_count,
            "error": result.error,
        })
        print(f"  {period_type.value} {date_range.key}: {result.outcome}")

    overall = finalize_job(ctx, job)
    return {
        "tenant": ctx.tenant_id,
        "seller": seller.amazon_seller_id,
        "job_id": job.id,
        "overall_status": overall.value,
        "tuples": tuples,
        "status": RESULT_STATUS.get(overall, "partial"),
    }


def run_cycle(engine: PullEngine, now: Optional[datetime] = None) -> Dict:
    """
    Run one scheduling cycle.

    Args:
        engine: Configured PullEngine
        now: Reference time (defaults to current UTC time)

    Returns:
        Dict with 'outcome' (processed / idle / memory_high), the processed
        seller's result (if any) and per-tenant errors
    """
    now = now or utcnow()
    grace = timedelta(hours=engine.settings.stuck_grace_hours)
    summary = {"outcome": IDLE, "result": None, "errors": []}

    for tenant in engine.list_tenants():
        try:
            with engine.tenant_scope(tenant) as ctx:
                if tenant_is_busy(ctx, now, grace):
                    continue

                if engine.memory_gate.is_high():
                    logger.warning("Memory usage high, not starting new work this run")
                    summary["outcome"] = MEMORY_HIGH
                    return summary

                seller, batch = find_due_seller(engine, ctx, now)
                if seller is None:
                    logger.info(f"Tenant {tenant.id}: no seller with due ASINs")
                    continue

                summary["result"] = process_seller(engine, ctx, seller, batch, now=now)

            engine.touch_tenant(tenant.id)
            summary["outcome"] = PROCESSED
            return summary

        except Exception as e:
            logger.error(f"Tenant {tenant.id} failed: {e}")
            summary["errors"].append({"tenant": tenant.id, "status": "error", "error": str(e)})

    return summary
