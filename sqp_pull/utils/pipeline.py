"""
Pull Pipeline Module
Drives one (seller, period type, date range) tuple through the four phases
of an SQP report pull: request -> poll -> download -> import.

Features:
- Every external call goes through the circuit breaker
- Rate-limit check before each external call sequence for a seller
- One forced token refresh + retry on 401/403
- Activity log written before each period-state transition
- Idempotent import: rows of a report are deleted before re-insert
- Re-entry at Poll for recovery (request is never repeated for a known report)
- A tuple deferred or skipped before its report was requested is closed so the job resolves
"""

import os
import json
import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqp_pull.config import MAX_RETRIES, Settings
from sqp_pull.utils import db
from sqp_pull.utils.api_client import SPAPIAuthError
from sqp_pull.utils.auth import CredentialProvider, SellerAuthorizationLost
from sqp_pull.utils.models import (
    ActivityLogEntry,
    DateRange,
    DownloadRecord,
    DownloadStatus,
    ImportStatus,
    LogStatus,
    PeriodType,
    PhaseStatus,
    PullJob,
    PullStatus,
    Seller,
    utcnow,
)
from sqp_pull.utils.resilience import CircuitBreaker, RateLimiter, backoff_delay
from sqp_pull.utils.retry import (
    DEFERRED,
    FATAL,
    SKIPPED,
    SUCCESS,
    RetryExecutor,
    RetryResult,
    WorkUnit,
)
from sqp_pull.utils.sqp_reports import (
    CANCELLED,
    READY,
    ReportFatalError,
    ReportNotReadyError,
    ReportRequest,
    ReportsAPI,
    decode_report,
    parse_sqp_records,
)
from sqp_pull.utils.sqp_reports import FATAL as REPORT_FATAL

logger = logging.getLogger(__name__)

ACTION_REQUEST = "Request Report"
ACTION_POLL = "Check Status"
ACTION_DOWNLOAD = "Download Report"
ACTION_IMPORT = "Import Report"


@dataclass
class TupleResult:
    """Outcome of one tuple run."""
    period_type: PeriodType
    range_key: str
    outcome: str
    report_id: Optional[str] = None
    imported_count: int = 0
    error: Optional[str] = None
    notified: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


class PullPipeline:
    """
    Four-phase pull for one seller inside one tenant context.

    Usage:
        pipeline = PullPipeline(ctx, seller, reports_api, credentials,
                                breaker, rate_limiter, executor, settings)
        result = pipeline.run_tuple(job, PeriodType.WEEK, date_range)
    """

    def __init__(
        self,
        ctx: db.TenantContext,
        seller: Seller,
        reports_api: ReportsAPI,
        credentials: CredentialProvider,
        breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        executor: RetryExecutor,
        settings: Settings
    ):
        self.ctx = ctx
        self.seller = seller
        self.reports_api = reports_api
        self.credentials = credentials
        self.breaker = breaker
        self.rate_limiter = rate_limiter
        self.executor = executor
        self.settings = settings

    # =========================================================================
    # Entry points
    # =========================================================================

    def run_tuple(self, job: PullJob, period_type: PeriodType, date_range: DateRange) -> TupleResult:
        """
        Run all four phases for one tuple.

        Args:
            job: The pull job (must already be persisted)
            period_type: WEEK, MONTH or QUARTER
            date_range: Reporting period to request

        Returns:
            TupleResult describing the final outcome
        """
        period_type = PeriodType(period_type)
        unit = WorkUnit(job, period_type, date_range.key if job.is_historical else "")
        state = job.state(period_type)
        if not job.is_historical:
            state.range_key = date_range.key

        logger.info(f"Pulling {self.seller.amazon_seller_id} {period_type.value} {date_range.key}")

        result = self._request(unit, date_range)
        if not result.ok:
            if result.outcome in (DEFERRED, SKIPPED) and result.error is not None:
                self._close_unrequested(unit, result)
            return self._fail(unit, result)

        if self.settings.initial_delay_seconds > 0:
            time.sleep(self.settings.initial_delay_seconds)

        return self._from_poll(unit, date_range, check_rate_limit=False)

    def resume_tuple(self, job: PullJob, period_type: PeriodType, range_key: str = "") -> TupleResult:
        """
        Re-enter a tuple at the Poll phase using its known report id.

        Request is not idempotent, so a unit without a report id is returned
        as skipped and left for the caller to handle.
        """
        period_type = PeriodType(period_type)
        state = job.state(period_type)
        entry = db.get_activity_log(self.ctx, job.id, period_type, range_key)

        report_id = (entry.report_id if entry else None) or (None if job.is_historical else state.report_id)
        unit = WorkUnit(job, period_type, range_key, report_id=report_id)
        if entry and entry.document_id:
            unit.document_id = entry.document_id

        if not report_id:
            return TupleResult(period_type, range_key, SKIPPED, error="No report id to resume from")

        key = range_key or state.range_key
        if not key:
            return TupleResult(period_type, range_key, SKIPPED, report_id=report_id,
                               error="No date range recorded for unit")

        logger.info(f"Resuming {unit.label} at {ACTION_POLL} (report {report_id})")
        return self._from_poll(unit, DateRange.from_key(key), check_rate_limit=True)

    def _from_poll(self, unit: WorkUnit, date_range: DateRange, check_rate_limit: bool) -> TupleResult:
        result = self._poll(unit, check_rate_limit)
        if not result.ok:
            return self._fail(unit, result)

        result = self._download(unit, date_range)
        if not result.ok:
            return self._fail(unit, result)

        report_data = result.value
        result = self._import(unit, date_range, report_data)
        if not result.ok:
            return self._fail(unit, result)

        return TupleResult(
            unit.period_type, unit.range_key, SUCCESS,
            report_id=unit.report_id, imported_count=result.value
        )

    # =========================================================================
    # Phases
    # =========================================================================

    def _request(self, unit: WorkUnit, date_range: DateRange) -> RetryResult:
        request = ReportRequest(
            marketplace_ids=self.seller.marketplace_ids,
            start_date=date_range.start,
            end_date=date_range.end,
            period_type=unit.period_type,
            asins=unit.job.asins,
        )

        def operation(attempt: int) -> str:
            self._check_rate_limit()
            report_id = self._call_api(self.reports_api.create_report, request)
            unit.report_id = report_id
            return report_id

        result = self.executor.execute(
            self.ctx, unit, ACTION_REQUEST, operation,
            success_message=lambda report_id: f"Report {report_id} requested"
        )
        if result.ok:
            now = utcnow()
            state = unit.job.state(unit.period_type)
            state.pull_status = PullStatus.PENDING
            state.report_id = unit.report_id
            state.document_id = None
            state.started_at = state.started_at or now
            state.set_phase(PhaseStatus.REQUESTING, now)
            db.save_job(self.ctx, unit.job)
        return result

    def _poll(self, unit: WorkUnit, check_rate_limit: bool) -> RetryResult:
        def operation(attempt: int) -> str:
            if check_rate_limit:
                self._check_rate_limit()
            status = self._call_api(self.reports_api.get_report_status, unit.report_id)

            if status.status == READY:
                unit.document_id = status.document_id
                return status.document_id
            if status.status in (REPORT_FATAL, CANCELLED):
                raise ReportFatalError(unit.report_id, status.status)

            delay = backoff_delay(attempt, self.settings.initial_delay_seconds, self.settings.poll_max_delay)
            raise ReportNotReadyError(unit.report_id, status.status, delay)

        result = self.executor.execute(
            self.ctx, unit, ACTION_POLL, operation,
            success_message=lambda document_id: f"Report ready, document {document_id}"
        )
        if result.ok:
            state = unit.job.state(unit.period_type)
            state.document_id = unit.document_id
            state.set_phase(PhaseStatus.POLLING, utcnow())
            db.save_job(self.ctx, unit.job)

            record = db.get_download_record(self.ctx, unit.report_id)
            if record is None or record.document_id != unit.document_id:
                db.save_download_record(self.ctx, DownloadRecord(
                    job_id=unit.job.id,
                    report_id=unit.report_id,
                    period_type=unit.period_type,
                    range_key=unit.range_key,
                    document_id=unit.document_id,
                    max_download_attempts=MAX_RETRIES + 1,
                ))
        return result

    def _download(self, unit: WorkUnit, date_range: DateRange) -> RetryResult:
        record = db.get_download_record(self.ctx, unit.report_id) or DownloadRecord(
            job_id=unit.job.id,
            report_id=unit.report_id,
            period_type=unit.period_type,
            range_key=unit.range_key,
            document_id=unit.document_id,
            max_download_attempts=MAX_RETRIES + 1,
        )

        def operation(attempt: int) -> Any:
            cached = self._load_artifact(record)
            if cached is not None:
                return cached

            record.status = DownloadStatus.DOWNLOADING
            record.download_attempts += 1
            db.save_download_record(self.ctx, record)

            try:
                document = self._call_api(self.reports_api.get_document, unit.document_id)
                content = self.breaker.call(self.reports_api.fetch_document_bytes, document)
                report_data = decode_report(content)
                path, size = self._save_artifact(unit, date_range, report_data)
            except Exception as e:
                record.status = DownloadStatus.FAILED
                record.last_error = str(e)
                db.save_download_record(self.ctx, record)
                raise

            record.status = DownloadStatus.COMPLETED
            record.file_path = path
            record.file_size = size
            record.last_error = None
            db.save_download_record(self.ctx, record)
            return report_data

        result = self.executor.execute(self.ctx, unit, ACTION_DOWNLOAD, operation)
        if result.ok:
            unit.job.state(unit.period_type).set_phase(PhaseStatus.DOWNLOADING, utcnow())
            db.save_job(self.ctx, unit.job)
        return result

    def _import(self, unit: WorkUnit, date_range: DateRange, report_data: Any, force: bool = False) -> RetryResult:
        record = db.get_download_record(self.ctx, unit.report_id)

        def operation(attempt: int) -> int:
            if record is not None and record.import_status == ImportStatus.SUCCESS and not force:
                logger.info(f"Report {unit.report_id} already imported ({record.imported_count} rows)")
                return record.imported_count
            return self.import_report(unit, date_range, report_data, record)

        result = self.executor.execute(
            self.ctx, unit, ACTION_IMPORT, operation,
            success_status=LogStatus.SUCCESS,
            success_message=lambda count: f"Imported {count} rows"
        )
        if result.ok:
            now = utcnow()
            state = unit.job.state(unit.period_type)
            state.set_phase(PhaseStatus.IMPORTING, now)
            state.last_error = None
            if not unit.job.is_historical:
                state.pull_status = PullStatus.SUCCESS
                state.ended_at = now
            db.save_job(self.ctx, unit.job)
            print(f"  Imported {result.value} rows for {unit.label}")
        return result

    def import_report(
        self,
        unit: WorkUnit,
        date_range: DateRange,
        report_data: Any,
        record: Optional[DownloadRecord] = None
    ) -> int:
        """
        Replace the metric rows of one report with freshly parsed ones.

        Returns:
            Number of rows inserted (0 for an empty report)
        """
        if record is not None:
            record.import_status = ImportStatus.PROCESSING
            record.import_attempts += 1
            db.save_download_record(self.ctx, record)

        parsed = parse_sqp_records(
            report_data,
            report_id=unit.report_id,
            seller_id=self.seller.id,
            amazon_seller_id=self.seller.amazon_seller_id,
            period_type=unit.period_type,
            date_range=date_range,
        )

        deleted = db.delete_metrics_for_report(self.ctx, unit.report_id)
        if deleted:
            logger.info(f"Removed {deleted} previously imported rows for report {unit.report_id}")

        try:
            inserted = db.insert_metrics(self.ctx, parsed.rows, self.settings.metrics_insert_chunk)
        except db.MetricsInsertError as e:
            if record is not None:
                record.import_status = ImportStatus.FAILED_PARTIAL if e.inserted else ImportStatus.FAILED
                record.last_error = str(e)
                db.save_download_record(self.ctx, record)
            raise

        if record is not None:
            record.import_status = ImportStatus.SUCCESS
            record.total_records = parsed.total_records
            record.imported_count = inserted
            record.failed_count = parsed.failed_count
            db.save_download_record(self.ctx, record)

        logger.info(
            f"Report {unit.report_id}: {parsed.total_records} records, {inserted} imported, "
            f"{parsed.discarded_count} without signal, {parsed.failed_count} malformed"
        )
        return inserted

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_rate_limit(self):
        self.rate_limiter.check_limit(self.seller.amazon_seller_id)

    def _token(self, force_refresh: bool = False) -> str:
        token = self.credentials.get_valid_access_token(
            self.ctx, self.seller.amazon_seller_id, force_refresh=force_refresh
        )
        if token.lost:
            raise SellerAuthorizationLost(self.seller.amazon_seller_id)
        return token.access_token

    def _call_api(self, func: Callable, *args):
        """Call a ReportsAPI method under the breaker, refreshing the token once on 401/403."""
        try:
            return self.breaker.call(func, self.seller, self._token(), *args)
        except SPAPIAuthError as e:
            logger.warning(f"{e} for {self.seller.amazon_seller_id}, forcing token refresh")
            return self.breaker.call(func, self.seller, self._token(force_refresh=True), *args)

    def _fail(self, unit: WorkUnit, result: RetryResult) -> TupleResult:
        """Record a failed phase on the period state (log is already written)."""
        state = unit.job.state(unit.period_type)
        error = str(result.error) if result.error else "Max retries reached"

        if not unit.job.is_historical:
            state.pull_status = PullStatus.FATAL if result.outcome == FATAL else PullStatus.RETRYABLE_ERROR
            if state.pull_status == PullStatus.FATAL:
                state.ended_at = utcnow()
        state.last_error = error
        state.updated_at = utcnow()
        db.save_job(self.ctx, unit.job)

        logger.error(f"{unit.label} ended {result.outcome}: {error}")
        return TupleResult(
            unit.period_type, unit.range_key, result.outcome,
            report_id=unit.report_id, error=error, notified=result.notified
        )

    def _close_unrequested(self, unit: WorkUnit, result: RetryResult):
        """
        Close a unit whose report was never requested.

        Without a report id there is nothing to resume, so the unit is closed
        and the job can resolve. The ASINs come back through eligibility
        (regular jobs) or the next backfill gap scan (historical jobs).
        """
        db.upsert_activity_log(self.ctx, ActivityLogEntry(
            job_id=unit.job.id,
            period_type=unit.period_type,
            range_key=unit.range_key,
            action=ACTION_REQUEST,
            status=LogStatus.FATAL,
            message=f"Not requested ({result.outcome}): {result.error}",
        ))
        unit.job.state(unit.period_type).ended_at = utcnow()
        logger.info(f"Closed {unit.label} without a report, left for a later cycle")

    def _artifact_path(self, unit: WorkUnit, date_range: DateRange) -> str:
        return os.path.join(
            self.settings.reports_dir,
            self.seller.amazon_seller_id,
            PeriodType(unit.period_type).value.lower(),
            date_range.start.isoformat(),
            f"{unit.report_id}.json",
        )

    def _save_artifact(self, unit: WorkUnit, date_range: DateRange, report_data: Any):
        path = self._artifact_path(unit, date_range)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report_data, f)
        return path, os.path.getsize(path)

    @staticmethod
    def _load_artifact(record: DownloadRecord) -> Optional[Any]:
        if record.status != DownloadStatus.COMPLETED or not record.file_path:
            return None
        if not os.path.exists(record.file_path):
            return None
        with open(record.file_path, "r", encoding="utf-8") as f:
            return json.load(f)
