"""
Stuck-Job Detector & Recovery
Finds pull units whose phase stopped advancing and pushes them forward
again from the Poll phase.

A unit is stuck when all of these hold:
- its job has not finished (overall status IN_PROGRESS)
- its period state is PENDING with a phase set, or RETRYABLE_ERROR
- the period state was last updated before the grace window, or before the
  job itself started
- its activity log entry is neither SUCCESS nor FATAL and has retries left

Request is never repeated for a unit: without a report id the unit is
closed out and its ASINs are left for a later scheduling cycle.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from sqp_pull.config import MAX_RETRIES
from sqp_pull.utils import db
from sqp_pull.utils.alerting import FailureNotice
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.job_status import finalize_job
from sqp_pull.utils.models import (
    ActivityLogEntry,
    EligibilityStatus,
    LogStatus,
    PeriodType,
    PullJob,
    PullStatus,
    utcnow,
)
from sqp_pull.utils.retry import EXHAUSTED, FATAL, SUCCESS, is_exhausted

logger = logging.getLogger(__name__)

ERROR = "error"

ACTION_STUCK = "Stuck Recovery"


@dataclass
class StuckUnit:
    job: PullJob
    period_type: PeriodType
    range_key: str
    entry: ActivityLogEntry

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.job.id, PeriodType(self.period_type).value, self.range_key)

    @property
    def report_id(self) -> Optional[str]:
        if self.entry.report_id:
            return self.entry.report_id
        if not self.job.is_historical:
            return self.job.state(self.period_type).report_id
        return None


# =============================================================================
# Detection
# =============================================================================

def _is_stale(job: PullJob, updated_at: Optional[datetime], cutoff: datetime) -> bool:
    if updated_at is None:
        return True
    if updated_at < cutoff:
        return True
    return job.started_at is not None and updated_at < job.started_at


def _open_entries(entries: List[ActivityLogEntry], include_exhausted: bool) -> List[ActivityLogEntry]:
    open_entries = []
    for entry in entries:
        if entry.status in (LogStatus.SUCCESS, LogStatus.FATAL):
            continue
        if is_exhausted(entry) and not include_exhausted:
            continue
        open_entries.append(entry)
    return open_entries


def _candidate_units(
    ctx: db.TenantContext,
    stale: bool,
    now: datetime,
    grace: timedelta,
    include_exhausted: bool = False,
    statuses: Tuple[PullStatus, ...] = (PullStatus.PENDING, PullStatus.RETRYABLE_ERROR)
) -> List[StuckUnit]:
    cutoff = now - grace
    units = []

    for job in db.get_unfinished_jobs(ctx):
        for period_type in job.period_types:
            state = job.state(period_type)
            if state.pull_status not in statuses:
                continue
            # A failed Request leaves no phase behind
            if state.phase_status is None and state.pull_status != PullStatus.RETRYABLE_ERROR:
                continue
            if _is_stale(job, state.updated_at, cutoff) != stale:
                continue

            entries = db.get_activity_logs(ctx, job.id, period_type)
            for entry in _open_entries(entries, include_exhausted):
                units.append(StuckUnit(job, period_type, entry.range_key, entry))

    return units


def find_stuck_units(
    ctx: db.TenantContext,
    now: Optional[datetime] = None,
    grace: timedelta = timedelta(hours=6),
    include_exhausted: bool = False
) -> List[StuckUnit]:
    """
    List the stuck units of a tenant.

    Args:
        ctx: Active tenant context
        now: Reference time (defaults to current UTC time)
        grace: How long a period state may sit unchanged before it counts as stuck
        include_exhausted: Also return units whose retries are used up

    Returns:
        StuckUnit list, oldest job first
    """
    return _candidate_units(ctx, True, now or utcnow(), grace, include_exhausted)


# =============================================================================
# Recovery
# =============================================================================

def _notify(engine: PullEngine, ctx: db.TenantContext, unit: StuckUnit, error: str, fatal: bool):
    engine.alerts.send_failure_notification(FailureNotice(
        job_id=unit.job.id,
        seller_id=unit.job.amazon_seller_id,
        period_type=PeriodType(unit.period_type).value,
        range_key=unit.range_key,
        error=error,
        retry_count=unit.entry.retry_count,
        fatal=fatal,
        action=ACTION_STUCK,
        tenant_id=ctx.tenant_id,
    ))


def _close_without_report(engine: PullEngine, ctx: db.TenantContext, unit: StuckUnit) -> str:
    """Close out a unit that never got a report id; a later cycle re-requests its ASINs."""
    error = "Stuck before a report was requested"
    db.upsert_activity_log(ctx, ActivityLogEntry(
        job_id=unit.job.id,
        period_type=unit.period_type,
        range_key=unit.range_key,
        action=ACTION_STUCK,
        status=LogStatus.RETRYABLE,
        message=error,
        retry_count=MAX_RETRIES,
    ))

    state = unit.job.state(unit.period_type)
    if not unit.job.is_historical:
        state.pull_status = PullStatus.RETRYABLE_ERROR
    state.last_error = error
    state.updated_at = utcnow()
    db.save_job(ctx, unit.job)

    db.update_eligibility_status(
        ctx, unit.job.seller_id, unit.job.asins, unit.period_type, EligibilityStatus.FAILED
    )
    _notify(engine, ctx, unit, error, fatal=False)
    return error


def _resume_unit(engine: PullEngine, ctx: db.TenantContext, unit: StuckUnit) -> Dict:
    """Re-enter one unit at Poll, re-aggregate, and notify if it is still not done."""
    result = {
        "tenant": ctx.tenant_id,
        "job_id": unit.job.id,
        "period_type": PeriodType(unit.period_type).value,
        "range": unit.range_key or unit.job.state(unit.period_type).range_key,
        "report_id": unit.report_id,
    }
    notified = False

    if not unit.report_id:
        result["error"] = _close_without_report(engine, ctx, unit)
        result["outcome"] = EXHAUSTED
        notified = True
    else:
        seller = db.get_seller(ctx, unit.job.seller_id)
        if seller is None:
            result["outcome"] = ERROR
            result["error"] = f"Seller {unit.job.seller_id} not found"
        else:
            pipeline = engine.pipeline_for(ctx, seller)
            try:
                tuple_result = pipeline.resume_tuple(unit.job, unit.period_type, unit.range_key)
                result["outcome"] = tuple_result.outcome
                result["error"] = tuple_result.error
                result["rows"] = tuple_result.imported_count
                notified = tuple_result.notified
            except Exception as e:
                logger.error(f"Recovery of job {unit.job.id} {result['period_type']} failed: {e}")
                result["outcome"] = ERROR
                result["error"] = str(e)

            if not unit.job.is_historical and result["outcome"] != ERROR:
                status = EligibilityStatus.SUCCESS if result["outcome"] == SUCCESS else EligibilityStatus.FAILED
                db.update_eligibility_status(ctx, unit.job.seller_id, unit.job.asins, unit.period_type, status)

    finalize_job(ctx, unit.job)

    if result["outcome"] != SUCCESS and not notified:
        fatal = result["outcome"] == FATAL
        state = unit.job.state(unit.period_type)
        if not unit.job.is_historical and not state.is_terminal:
            state.pull_status = PullStatus.FATAL if fatal else PullStatus.RETRYABLE_ERROR
            db.save_job(ctx, unit.job)
        _notify(engine, ctx, unit, result.get("error") or "Recovery did not complete", fatal)

    return result


def recover_stuck_units(
    engine: PullEngine,
    ctx: db.TenantContext,
    now: Optional[datetime] = None,
    grace: Optional[timedelta] = None,
    rearm: bool = False
) -> List[Dict]:
    """
    Find and recover the stuck units of a tenant.

    Each unit is attempted at most once per call. No new unit is started
    while memory usage is high.

    Args:
        engine: Configured PullEngine
        ctx: Active tenant context
        now: Reference time (defaults to current UTC time)
        grace: Stuck threshold (defaults to STUCK_GRACE_HOURS)
        rearm: Reset the retry count of exhausted units and retry them too

    Returns:
        One result dict per attempted unit
    """
    now = now or utcnow()
    grace = grace if grace is not None else timedelta(hours=engine.settings.stuck_grace_hours)

    units = find_stuck_units(ctx, now, grace, include_exhausted=rearm)
    if units:
        logger.info(f"Tenant {ctx.tenant_id}: {len(units)} stuck unit(s)")

    results = []
    attempted: Set[Tuple[str, str, str]] = set()

    for unit in units:
        if unit.key in attempted:
            continue
        if engine.memory_gate.is_high():
            logger.warning("Memory usage high, stopping stuck-job recovery")
            break
        attempted.add(unit.key)

        if rearm and is_exhausted(unit.entry):
            db.reset_retry_count(ctx, unit.job.id, unit.period_type, unit.range_key)
            unit.entry.retry_count = 0
            logger.info(f"Re-armed job {unit.job.id} {PeriodType(unit.period_type).value} {unit.range_key}")

        results.append(_resume_unit(engine, ctx, unit))

    return results


def check_pending(
    engine: PullEngine,
    ctx: db.TenantContext,
    now: Optional[datetime] = None,
    grace: Optional[timedelta] = None
) -> List[Dict]:
    """
    Advance every recently active PENDING unit that already has a report id.

    Stale units are left to recover_stuck_units().

    Returns:
        One result dict per resumed unit
    """
    now = now or utcnow()
    grace = grace if grace is not None else timedelta(hours=engine.settings.stuck_grace_hours)

    results = []
    for unit in _candidate_units(ctx, False, now, grace, statuses=(PullStatus.PENDING,)):
        if not unit.report_id:
            continue
        if engine.memory_gate.is_high():
            logger.warning("Memory usage high, stopping pending status checks")
            break
        results.append(_resume_unit(engine, ctx, unit))
    return results


def result_status(result: Dict) -> str:
    """Summary status of a recovery result: completed, failed or pending."""
    if result["outcome"] == SUCCESS:
        return "completed"
    if result.get("error"):
        return "failed"
    return "pending"
