"""
Bounded Retry Executor
Runs one pipeline phase for one (job, period type, range) unit with a fixed
retry budget, recording every attempt in the activity log.

Outcome classification:
- ReportFatalError                          -> FATAL, notify, no retry
- MissingCredentialsError / authorization lost -> skipped, logged with retry count 0
- CircuitOpenError / RateLimitExceeded      -> deferred to a later cycle, logged with retry count 0
- anything else                             -> transient, retried with backoff

After MAX_RETRIES retries (MAX_RETRIES + 1 attempts) a transient failure is
final: the unit is logged as exhausted and exactly one notification is sent.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from sqp_pull.config import MAX_RETRIES
from sqp_pull.utils import db
from sqp_pull.utils.alerting import AlertManager, FailureNotice
from sqp_pull.utils.auth import MissingCredentialsError, SellerAuthorizationLost
from sqp_pull.utils.models import ActivityLogEntry, LogStatus, PeriodType, PullJob
from sqp_pull.utils.resilience import CircuitOpenError, RateLimitExceeded, backoff_delay
from sqp_pull.utils.sqp_reports import ReportFatalError, ReportNotReadyError

logger = logging.getLogger(__name__)

SUCCESS = "success"
FATAL = "fatal"
EXHAUSTED = "exhausted"
DEFERRED = "deferred"
SKIPPED = "skipped"

DEFERRABLE_ERRORS = (CircuitOpenError, RateLimitExceeded)
CONFIGURATION_ERRORS = (MissingCredentialsError, SellerAuthorizationLost)


@dataclass
class WorkUnit:
    """One (job, period type, range) tuple moving through the pipeline."""
    job: PullJob
    period_type: PeriodType
    range_key: str = ""
    report_id: Optional[str] = None
    document_id: Optional[str] = None

    @property
    def label(self) -> str:
        suffix = f" {self.range_key}" if self.range_key else ""
        return f"job {self.job.id} {PeriodType(self.period_type).value}{suffix}"


@dataclass
class RetryResult:
    outcome: str
    value: Any = None
    error: Optional[BaseException] = None
    retry_count: int = 0
    notified: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


def is_exhausted(entry: Optional[ActivityLogEntry]) -> bool:
    """True when a logged unit used up its retries and is not re-armed."""
    return (
        entry is not None
        and entry.status == LogStatus.RETRYABLE
        and entry.retry_count >= MAX_RETRIES
    )


class RetryExecutor:
    """
    Executes an operation with bounded retries and activity logging.

    Usage:
        executor = RetryExecutor(alert_manager, base_delay=1, max_delay=10)
        result = executor.execute(ctx, unit, "Request Report", lambda attempt: ...)
    """

    def __init__(
        self,
        notifier: AlertManager,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        max_retries: int = MAX_RETRIES
    ):
        self.notifier = notifier
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries

    def execute(
        self,
        ctx: db.TenantContext,
        unit: WorkUnit,
        action: str,
        operation: Callable[[int], Any],
        success_status: LogStatus = LogStatus.PENDING,
        success_message: Union[str, Callable[[Any], str], None] = None
    ) -> RetryResult:
        """
        Run operation(attempt) until it succeeds or the retry budget is spent.

        Args:
            ctx: Active tenant context
            unit: The unit being worked on (report/document ids are copied into the log)
            action: Action name recorded in the activity log
            operation: Callable receiving the zero-based attempt number
            success_status: Log status written on success (PENDING for
                intermediate phases, SUCCESS for the final one)
            success_message: Log message on success, or a callable building it
                from the operation result

        Returns:
            RetryResult with the outcome and the operation's return value
        """
        existing = db.get_activity_log(ctx, unit.job.id, unit.period_type, unit.range_key)
        if is_exhausted(existing):
            logger.info(f"Skipping {action} for {unit.label}: max retries reached")
            return RetryResult(SKIPPED, retry_count=existing.retry_count)

        attempt = 0
        while True:
            started = time.time()
            self._log(ctx, unit, action, LogStatus.PENDING, f"{action} attempt {attempt + 1}", attempt)

            try:
                value = operation(attempt)
            except ReportFatalError as e:
                self._log(ctx, unit, action, LogStatus.FATAL, str(e), attempt, started)
                notified = self._notify(ctx, unit, action, e, attempt, fatal=True)
                return RetryResult(FATAL, error=e, retry_count=attempt, notified=notified)
            except CONFIGURATION_ERRORS as e:
                self._log(ctx, unit, action, LogStatus.RETRYABLE, f"Skipped: {e}", 0, started)
                logger.warning(f"{action} skipped for {unit.label}: {e}")
                return RetryResult(SKIPPED, error=e)
            except DEFERRABLE_ERRORS as e:
                self._log(ctx, unit, action, LogStatus.RETRYABLE, f"Deferred: {e}", 0, started)
                logger.warning(f"{action} deferred for {unit.label}: {e}")
                return RetryResult(DEFERRED, error=e)
            except Exception as e:
                if attempt >= self.max_retries:
                    message = f"Max retries reached: {e}"
                    self._log(ctx, unit, action, LogStatus.RETRYABLE, message, self.max_retries, started)
                    notified = self._notify(ctx, unit, action, e, self.max_retries, fatal=False)
                    return RetryResult(EXHAUSTED, error=e, retry_count=self.max_retries, notified=notified)

                if isinstance(e, ReportNotReadyError):
                    delay = e.delay
                else:
                    delay = backoff_delay(attempt, self.base_delay, self.max_delay)

                self._log(
                    ctx, unit, action, LogStatus.RETRYABLE,
                    f"{e} (will retry {attempt + 1}/{self.max_retries} in {delay:.0f}s)",
                    attempt, started
                )
                logger.warning(
                    f"{action} failed for {unit.label}: {e}. "
                    f"Retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)
                attempt += 1
                continue

            if callable(success_message):
                message = success_message(value)
            else:
                message = success_message or f"{action} succeeded"
            self._log(ctx, unit, action, success_status, message, attempt, started)
            return RetryResult(SUCCESS, value=value, retry_count=attempt)

    def _log(
        self,
        ctx: db.TenantContext,
        unit: WorkUnit,
        action: str,
        status: LogStatus,
        message: str,
        retry_count: int,
        started: Optional[float] = None
    ):
        db.upsert_activity_log(ctx, ActivityLogEntry(
            job_id=unit.job.id,
            period_type=unit.period_type,
            range_key=unit.range_key,
            action=action,
            status=status,
            message=message,
            report_id=unit.report_id,
            document_id=unit.document_id,
            retry_count=retry_count,
            execution_time=round(time.time() - started, 3) if started else None,
        ))

    def _notify(
        self,
        ctx: db.TenantContext,
        unit: WorkUnit,
        action: str,
        error: BaseException,
        retry_count: int,
        fatal: bool
    ) -> bool:
        notice = FailureNotice(
            job_id=unit.job.id,
            seller_id=unit.job.amazon_seller_id,
            period_type=PeriodType(unit.period_type).value,
            range_key=unit.range_key,
            error=str(error),
            retry_count=retry_count,
            fatal=fatal,
            action=action,
            tenant_id=ctx.tenant_id,
        )
        try:
            self.notifier.send_failure_notification(notice)
        except Exception as e:
            logger.warning(f"Failure notification for {unit.label} not sent: {e}")
            return False
        return True
