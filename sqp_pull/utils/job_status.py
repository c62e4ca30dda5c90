"""
Job Status Aggregation
Derives period-type and overall job status from the activity log.

Each log entry is one (period type, range) unit and counts as:
- done:        status SUCCESS
- fatal:       status FATAL, or RETRYABLE with retries exhausted
- in progress: anything else
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List

from sqp_pull.utils import db
from sqp_pull.utils.models import (
    ActivityLogEntry,
    AggregateStatus,
    LogStatus,
    PeriodType,
    PullJob,
    PullStatus,
)
from sqp_pull.utils.retry import is_exhausted

logger = logging.getLogger(__name__)


@dataclass
class TypeAggregate:
    status: AggregateStatus
    escalates: bool = False
    done: int = 0
    fatal: int = 0
    in_progress: int = 0

    @property
    def total(self) -> int:
        return self.done + self.fatal + self.in_progress


def aggregate_period_type(done: int, fatal: int, in_progress: int, total: int) -> TypeAggregate:
    """
    Status of one period type from its unit counts.

    Rules, in order:
    - no units yet                      -> IN_PROGRESS
    - every unit done                   -> SUCCESS
    - every unit fatal                  -> FAILED
    - in progress next to done or fatal -> IN_PROGRESS, escalates the job to FAILED
    - done and fatal, none in progress  -> FAILED (partial success is not success)
    - only in progress                  -> IN_PROGRESS
    """
    counts = dict(done=done, fatal=fatal, in_progress=in_progress)

    if total == 0:
        return TypeAggregate(AggregateStatus.IN_PROGRESS, **counts)
    if done == total:
        return TypeAggregate(AggregateStatus.SUCCESS, **counts)
    if fatal == total:
        return TypeAggregate(AggregateStatus.FAILED, **counts)
    if in_progress > 0 and (done > 0 or fatal > 0):
        return TypeAggregate(AggregateStatus.IN_PROGRESS, escalates=True, **counts)
    if done > 0 and fatal > 0:
        return TypeAggregate(AggregateStatus.FAILED, **counts)
    return TypeAggregate(AggregateStatus.IN_PROGRESS, **counts)


def aggregate_overall(aggregates: Iterable[TypeAggregate]) -> AggregateStatus:
    """FAILED if any type failed or escalates, IN_PROGRESS while any type is open, else SUCCESS."""
    aggregates = list(aggregates)
    if any(a.status == AggregateStatus.FAILED or a.escalates for a in aggregates):
        return AggregateStatus.FAILED
    if any(a.status == AggregateStatus.IN_PROGRESS for a in aggregates):
        return AggregateStatus.IN_PROGRESS
    return AggregateStatus.SUCCESS


def classify_entry(entry: ActivityLogEntry) -> str:
    if entry.status == LogStatus.SUCCESS:
        return "done"
    if entry.status == LogStatus.FATAL or is_exhausted(entry):
        return "fatal"
    return "in_progress"


def analyze_entries(entries: List[ActivityLogEntry]) -> TypeAggregate:
    """Aggregate the log entries of a single period type."""
    counts = Counter(classify_entry(e) for e in entries)
    return aggregate_period_type(
        done=counts["done"],
        fatal=counts["fatal"],
        in_progress=counts["in_progress"],
        total=len(entries),
    )


def compute_job_status(job: PullJob, entries: List[ActivityLogEntry]) -> Dict[PeriodType, TypeAggregate]:
    by_type: Dict[PeriodType, List[ActivityLogEntry]] = {p: [] for p in job.period_types}
    for entry in entries:
        if entry.period_type in by_type:
            by_type[entry.period_type].append(entry)
    return {p: analyze_entries(items) for p, items in by_type.items()}


def finalize_job(ctx: db.TenantContext, job: PullJob) -> AggregateStatus:
    """
    Re-aggregate a job from its activity log and persist the result.

    Writes each period state's aggregate_status and the job's overall_status.

    Returns:
        The job's new overall status
    """
    entries = db.get_activity_logs(ctx, job.id)
    aggregates = compute_job_status(job, entries)

    for period_type, aggregate in aggregates.items():
        state = job.state(period_type)
        state.aggregate_status = aggregate.status

        # Historical jobs carry many ranges per type, so the tuple-level
        # pull status is derived here once every range has resolved
        if job.is_historical and aggregate.in_progress == 0 and aggregate.total > 0:
            if aggregate.status == AggregateStatus.SUCCESS:
                state.pull_status = PullStatus.SUCCESS
            elif aggregate.fatal > 0 and aggregate.done == 0:
                state.pull_status = PullStatus.FATAL
            else:
                state.pull_status = PullStatus.RETRYABLE_ERROR

    job.overall_status = aggregate_overall(aggregates.values())
    db.save_job(ctx, job)

    summary = ", ".join(
        f"{p.value}={a.status.value} ({a.done}/{a.total} done, {a.fatal} fatal)"
        for p, a in aggregates.items()
    )
    logger.info(f"Job {job.id} overall {job.overall_status.value}: {summary}")
    return job.overall_status
