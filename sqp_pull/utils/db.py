"""
Supabase Database Module
Tenant registry plus tenant-scoped storage for pull jobs, activity logs,
eligibility, download records and SQP metrics.

Every tenant owns its own Supabase project. Storage calls take an explicit
TenantContext, obtained from tenant_scope(), so records from two tenants can
never be read or written through the same handle.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Set

from supabase import Client, create_client

from sqp_pull.utils.models import (
    ActivityLogEntry,
    DownloadRecord,
    EligibilityRecord,
    EligibilityStatus,
    PeriodType,
    PullJob,
    Seller,
    Tenant,
    AggregateStatus,
    range_key,
    parse_date,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

# Table names
TENANTS_TABLE = "sqp_tenants"
SELLERS_TABLE = "sellers"
AUTHORIZATIONS_TABLE = "sp_api_authorizations"
JOBS_TABLE = "sqp_pull_jobs"
ACTIVITY_LOGS_TABLE = "sqp_activity_logs"
ELIGIBILITY_TABLE = "sqp_asin_eligibility"
DOWNLOADS_TABLE = "sqp_download_records"
METRICS_TABLE = "sqp_metrics"
CATALOG_TABLE = "seller_catalog_items"

# Supabase caps a single select at 1000 rows
PAGE_SIZE = 1000


class TenantContextError(RuntimeError):
    """Raised when storage is used outside an active tenant scope."""
    pass


# =============================================================================
# Clients & Tenant Context
# =============================================================================

def get_master_client(url: Optional[str], key: Optional[str]) -> Client:
    """
    Create the Supabase client for the master tenant registry.

    Raises:
        ValueError: If credentials are missing
    """
    if not url or not key:
        raise ValueError("Missing SUPABASE_URL or SUPABASE_SERVICE_KEY environment variables")
    return create_client(url, key)


class TenantContext:
    """
    Handle on one tenant's storage.

    Only valid inside the tenant_scope() block that created it.
    """

    def __init__(self, tenant: Tenant, client: Client):
        self.tenant = tenant
        self._client = client
        self._active = True

    @property
    def tenant_id(self) -> str:
        return self.tenant.id

    @property
    def is_active(self) -> bool:
        return self._active

    def table(self, name: str):
        if not self._active:
            raise TenantContextError(
                f"Storage context for tenant {self.tenant.id} is closed"
            )
        return self._client.table(name)

    def close(self):
        self._active = False

    def __repr__(self) -> str:
        state = "active" if self._active else "closed"
        return f"<TenantContext {self.tenant.id} ({state})>"


@contextmanager
def tenant_scope(
    tenant: Tenant,
    client_factory: Callable[[str, str], Client] = create_client
) -> Iterator[TenantContext]:
    """
    Open an isolated storage context for tenant.

    Usage:
        with tenant_scope(tenant) as ctx:
            jobs = get_unfinished_jobs(ctx)
    """
    if not tenant.supabase_url or not tenant.supabase_key:
        raise ValueError(f"Tenant {tenant.id} has no storage credentials configured")

    ctx = TenantContext(tenant, client_factory(tenant.supabase_url, tenant.supabase_key))
    logger.debug(f"Opened storage context for tenant {tenant.id}")
    try:
        yield ctx
    finally:
        ctx.close()
        logger.debug(f"Closed storage context for tenant {tenant.id}")


# =============================================================================
# Tenant Registry
# =============================================================================

def list_tenants(master: Client) -> List[Tenant]:
    """
    Active tenants in processing order: priority first, then least recently updated.
    """
    result = master.table(TENANTS_TABLE).select("*").eq("is_active", True).execute()
    tenants = [Tenant.from_row(row) for row in result.data or []]

    oldest = datetime.min.replace(tzinfo=utcnow().tzinfo)
    tenants.sort(key=lambda t: (not t.is_priority, t.updated_at or oldest))
    return tenants


def touch_tenant(master: Client, tenant_id: str):
    """Bump a tenant's updated_at so the round-robin moves on."""
    master.table(TENANTS_TABLE).update({
        "updated_at": to_iso(utcnow())
    }).eq("id", tenant_id).execute()


# =============================================================================
# Sellers & Authorizations
# =============================================================================

def get_active_sellers(ctx: TenantContext) -> List[Seller]:
    result = ctx.table(SELLERS_TABLE).select("*").eq("is_active", True).order("id").execute()
    return [Seller.from_row(row) for row in result.data or []]


def get_seller(ctx: TenantContext, seller_key: str) -> Optional[Seller]:
    """Look up a seller by internal id or Amazon seller id."""
    result = ctx.table(SELLERS_TABLE).select("*").eq("amazon_seller_id", seller_key).execute()
    if not result.data:
        result = ctx.table(SELLERS_TABLE).select("*").eq("id", seller_key).execute()
    return Seller.from_row(result.data[0]) if result.data else None


def get_authorization(ctx: TenantContext, amazon_seller_id: str) -> Optional[Dict]:
    result = ctx.table(AUTHORIZATIONS_TABLE).select("*").eq(
        "amazon_seller_id", amazon_seller_id
    ).execute()
    return result.data[0] if result.data else None


def mark_authorization_lost(ctx: TenantContext, amazon_seller_id: str, reason: str):
    ctx.table(AUTHORIZATIONS_TABLE).update({
        "is_lost": True,
        "lost_reason": reason,
        "updated_at": to_iso(utcnow())
    }).eq("amazon_seller_id", amazon_seller_id).execute()
    logger.warning(f"Marked SP-API authorization lost for {amazon_seller_id}: {reason}")


# =============================================================================
# Pull Jobs
# =============================================================================

def create_job(ctx: TenantContext, job: PullJob) -> PullJob:
    """Insert a new pull job and return it with its id populated."""
    now = utcnow()
    job.created_at = job.created_at or now
    job.started_at = job.started_at or now
    job.updated_at = now

    row = job.to_row()
    row.pop("id", None)
    result = ctx.table(JOBS_TABLE).insert(row).execute()
    job.id = str(result.data[0]["id"])
    logger.info(
        f"Created {'historical ' if job.is_historical else ''}pull job {job.id} "
        f"for seller {job.amazon_seller_id} ({len(job.asins)} ASINs)"
    )
    return job


def save_job(ctx: TenantContext, job: PullJob):
    """Persist a job's period states and overall status."""
    job.updated_at = utcnow()
    row = job.to_row()
    row.pop("id", None)
    row.pop("created_at", None)
    ctx.table(JOBS_TABLE).update(row).eq("id", job.id).execute()


def get_job(ctx: TenantContext, job_id: str) -> Optional[PullJob]:
    result = ctx.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
    return PullJob.from_row(result.data[0]) if result.data else None


def get_unfinished_jobs(ctx: TenantContext, limit: int = 200) -> List[PullJob]:
    """Jobs whose overall status has not resolved yet, oldest first."""
    result = ctx.table(JOBS_TABLE).select("*").eq(
        "overall_status", AggregateStatus.IN_PROGRESS.value
    ).order("started_at").limit(limit).execute()
    return [PullJob.from_row(row) for row in result.data or []]


# =============================================================================
# Activity Log
# =============================================================================

def upsert_activity_log(ctx: TenantContext, entry: ActivityLogEntry) -> ActivityLogEntry:
    """
    Write the latest state of a (job, period type, range) unit.

    Last write wins: the unique key is job_id + period_type + range_key.
    """
    entry.updated_at = utcnow()
    ctx.table(ACTIVITY_LOGS_TABLE).upsert(
        entry.to_row(),
        on_conflict="job_id,period_type,range_key"
    ).execute()
    return entry


def get_activity_log(
    ctx: TenantContext,
    job_id: str,
    period_type: PeriodType,
    range_key: str = ""
) -> Optional[ActivityLogEntry]:
    result = ctx.table(ACTIVITY_LOGS_TABLE).select("*").eq(
        "job_id", job_id
    ).eq(
        "period_type", PeriodType(period_type).value
    ).eq(
        "range_key", range_key
    ).execute()
    return ActivityLogEntry.from_row(result.data[0]) if result.data else None


def get_activity_logs(
    ctx: TenantContext,
    job_id: str,
    period_type: Optional[PeriodType] = None
) -> List[ActivityLogEntry]:
    query = ctx.table(ACTIVITY_LOGS_TABLE).select("*").eq("job_id", job_id)
    if period_type is not None:
        query = query.eq("period_type", PeriodType(period_type).value)
    result = query.execute()
    return [ActivityLogEntry.from_row(row) for row in result.data or []]


def reset_retry_count(ctx: TenantContext, job_id: str, period_type: PeriodType, range_key: str = ""):
    """Re-arm an exhausted unit for another round of automatic retries."""
    ctx.table(ACTIVITY_LOGS_TABLE).update({
        "retry_count": 0,
        "message": "Re-armed for retry",
        "updated_at": to_iso(utcnow())
    }).eq("job_id", job_id).eq(
        "period_type", PeriodType(period_type).value
    ).eq("range_key", range_key).execute()


# =============================================================================
# Eligibility
# =============================================================================

def get_eligibility_records(
    ctx: TenantContext,
    seller_id: Optional[str] = None,
    active_only: bool = True
) -> List[EligibilityRecord]:
    query = ctx.table(ELIGIBILITY_TABLE).select("*")
    if seller_id is not None:
        query = query.eq("seller_id", seller_id)
    if active_only:
        query = query.eq("is_active", True)
    result = query.order("asin").execute()
    return [EligibilityRecord.from_row(row) for row in result.data or []]


def _write_eligibility(ctx: TenantContext, records: List[EligibilityRecord]):
    if not records:
        return
    rows = []
    for record in records:
        row = {"seller_id": record.seller_id, "asin": record.asin}
        row.update(record.status_columns())
        rows.append(row)
    ctx.table(ELIGIBILITY_TABLE).upsert(rows, on_conflict="seller_id,asin").execute()


def update_eligibility_status(
    ctx: TenantContext,
    seller_id: str,
    asins: List[str],
    period_type: PeriodType,
    status: EligibilityStatus,
    now: Optional[datetime] = None
):
    """
    Record the start (PENDING) or end (SUCCESS / FAILED) of a pull for ASINs.

    Args:
        ctx: Active tenant context
        seller_id: Internal seller id
        asins: ASINs covered by the pull
        period_type: Period type being pulled
        status: New eligibility status
        now: Timestamp to record (defaults to current UTC time)
    """
    if not asins:
        return
    now = now or utcnow()
    period_type = PeriodType(period_type)

    result = ctx.table(ELIGIBILITY_TABLE).select("*").eq(
        "seller_id", seller_id
    ).in_("asin", list(asins)).execute()
    records = [EligibilityRecord.from_row(row) for row in result.data or []]

    for record in records:
        record.last_status[period_type] = status
        if status == EligibilityStatus.PENDING:
            record.last_started_at[period_type] = now
            record.last_ended_at[period_type] = None
        else:
            record.last_ended_at[period_type] = now

    _write_eligibility(ctx, records)


def reset_eligibility_for_period(ctx: TenantContext, period_type: PeriodType) -> int:
    """
    Clear last status and timestamps of one period type on every active record.

    Returns:
        Number of records reset
    """
    period_type = PeriodType(period_type)
    records = get_eligibility_records(ctx, active_only=True)

    changed = []
    for record in records:
        if (record.last_status.get(period_type) is None
                and record.last_started_at.get(period_type) is None):
            continue
        record.last_status[period_type] = None
        record.last_started_at[period_type] = None
        record.last_ended_at[period_type] = None
        changed.append(record)

    _write_eligibility(ctx, changed)
    return len(changed)


def get_existing_asins(ctx: TenantContext, seller_id: str, asins: List[str]) -> Set[str]:
    """ASINs from the given list that already have an eligibility row for the seller."""
    asins = list(asins)
    existing: Set[str] = set()
    for i in range(0, len(asins), PAGE_SIZE):
        result = ctx.table(ELIGIBILITY_TABLE).select("asin").eq(
            "seller_id", seller_id
        ).in_("asin", asins[i:i + PAGE_SIZE]).execute()
        existing.update(row["asin"] for row in result.data or [])
    return existing


def insert_eligibility_records(
    ctx: TenantContext,
    seller_id: str,
    asins: List[str],
    chunk_size: int = 500
) -> int:
    """
    Insert fresh eligibility rows (active, never pulled) for ASINs.

    Rows that already exist are left untouched.

    Returns:
        Number of rows sent for insert
    """
    rows = [
        {
            "seller_id": seller_id,
            "asin": asin,
            "is_active": True,
            "last_status": {},
            "last_started_at": {},
            "last_ended_at": {},
        }
        for asin in asins
    ]
    for i in range(0, len(rows), chunk_size):
        ctx.table(ELIGIBILITY_TABLE).upsert(
            rows[i:i + chunk_size], on_conflict="seller_id,asin", ignore_duplicates=True
        ).execute()
    return len(rows)


def get_catalog_asins(ctx: TenantContext, seller_id: str) -> List[str]:
    """Distinct ASINs listed in the seller's catalog table, in first-seen order."""
    asins: Dict[str, None] = {}
    offset = 0

    while True:
        result = ctx.table(CATALOG_TABLE).select("asin").eq(
            "seller_id", seller_id
        ).range(offset, offset + PAGE_SIZE - 1).execute()

        rows = result.data or []
        for row in rows:
            if row.get("asin"):
                asins[row["asin"]] = None

        if len(rows) < PAGE_SIZE:
            break
        offset += PAGE_SIZE

    return list(asins)


# =============================================================================
# Download Records
# =============================================================================

def get_download_record(ctx: TenantContext, report_id: str) -> Optional[DownloadRecord]:
    result = ctx.table(DOWNLOADS_TABLE).select("*").eq("report_id", report_id).execute()
    return DownloadRecord.from_row(result.data[0]) if result.data else None


def save_download_record(ctx: TenantContext, record: DownloadRecord) -> DownloadRecord:
    row = record.to_row()
    row.pop("id", None)
    result = ctx.table(DOWNLOADS_TABLE).upsert(row, on_conflict="report_id").execute()
    if result.data and result.data[0].get("id") is not None:
        record.id = str(result.data[0]["id"])
    return record


# =============================================================================
# SQP Metrics
# =============================================================================

def delete_metrics_for_report(ctx: TenantContext, report_id: str) -> int:
    """Remove previously imported rows of a report. Returns rows deleted."""
    result = ctx.table(METRICS_TABLE).delete().eq("report_id", report_id).execute()
    return len(result.data or [])


def insert_metrics(ctx: TenantContext, rows: List[Dict], chunk_size: int = 500) -> int:
    """
    Bulk insert metric rows in chunks.

    Returns:
        Number of rows inserted

    Raises:
        MetricsInsertError: If a chunk fails; carries the count already inserted
    """
    inserted = 0
    for i in range(0, len(rows), chunk_size):
        chunk = rows[i:i + chunk_size]
        try:
            ctx.table(METRICS_TABLE).insert(chunk).execute()
        except Exception as e:
            raise MetricsInsertError(
                f"Metrics insert failed after {inserted} rows: {e}",
                inserted=inserted
            ) from e
        inserted += len(chunk)
    return inserted


class MetricsInsertError(Exception):
    """A metrics chunk failed to insert."""
    def __init__(self, message: str, inserted: int = 0):
        super().__init__(message)
        self.inserted = inserted


def count_metrics_for_report(ctx: TenantContext, report_id: str) -> int:
    result = ctx.table(METRICS_TABLE).select("id").eq("report_id", report_id).execute()
    return len(result.data or [])


def get_existing_range_keys(
    ctx: TenantContext,
    seller_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None
) -> Dict[PeriodType, Set[str]]:
    """
    Range keys already present in the metrics table for a seller, per period type.

    With start / end only rows whose period lies inside that window are read.
    """
    existing: Dict[PeriodType, Set[str]] = {p: set() for p in PeriodType}
    offset = 0

    while True:
        query = ctx.table(METRICS_TABLE).select(
            "period_type,period_start,period_end"
        ).eq("seller_id", seller_id)
        if start is not None:
            query = query.gte("period_start", start.isoformat())
        if end is not None:
            query = query.lte("period_end", end.isoformat())
        result = query.order("period_start").range(offset, offset + PAGE_SIZE - 1).execute()

        rows = result.data or []
        for row in rows:
            start = parse_date(row.get("period_start"))
            end = parse_date(row.get("period_end"))
            if not start or not end or not row.get("period_type"):
                continue
            existing[PeriodType(row["period_type"])].add(range_key(start, end))

        if len(rows) < PAGE_SIZE:
            break
        offset += PAGE_SIZE

    return existing


# =============================================================================
# Cleanup
# =============================================================================

def delete_activity_logs_before(ctx: TenantContext, cutoff: datetime) -> int:
    result = ctx.table(ACTIVITY_LOGS_TABLE).delete().lt("updated_at", to_iso(cutoff)).execute()
    return len(result.data or [])


def delete_finished_jobs_before(ctx: TenantContext, cutoff: datetime) -> int:
    result = ctx.table(JOBS_TABLE).delete().neq(
        "overall_status", AggregateStatus.IN_PROGRESS.value
    ).lt("updated_at", to_iso(cutoff)).execute()
    return len(result.data or [])


def delete_download_records_before(ctx: TenantContext, cutoff: datetime) -> int:
    result = ctx.table(DOWNLOADS_TABLE).delete().eq(
        "status", "COMPLETED"
    ).lt("updated_at", to_iso(cutoff)).execute()
    return len(result.data or [])


def cleanup_old_records(ctx: TenantContext, retention_days: int = 30) -> Dict[str, int]:
    """
    Delete activity logs, finished jobs and completed download records older
    than retention_days.

    Returns:
        Rows deleted per table
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    counts = {
        ACTIVITY_LOGS_TABLE: delete_activity_logs_before(ctx, cutoff),
        JOBS_TABLE: delete_finished_jobs_before(ctx, cutoff),
        DOWNLOADS_TABLE: delete_download_records_before(ctx, cutoff),
    }
    logger.info(f"Tenant {ctx.tenant_id} cleanup before {cutoff.date()}: {counts}")
    return counts
