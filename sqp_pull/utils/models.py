"""
Job & Status Model
Record types shared by the pipeline, scheduler, stuck-job detector and backfill.

Features:
- PullJob with one PeriodState per period type (WEEK / MONTH / QUARTER)
- ActivityLogEntry keyed by (job, period type, range key)
- EligibilityRecord per (seller, ASIN) with per-type last outcome
- DownloadRecord with a separate import sub-status
- Row conversion helpers for the Supabase tables
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Status Enums
# =============================================================================

class PeriodType(str, Enum):
    WEEK = "WEEK"
    MONTH = "MONTH"
    QUARTER = "QUARTER"


PERIOD_TYPES = [PeriodType.WEEK, PeriodType.MONTH, PeriodType.QUARTER]


class PullStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    RETRYABLE_ERROR = "RETRYABLE_ERROR"
    FATAL = "FATAL"


class PhaseStatus(str, Enum):
    REQUESTING = "REQUESTING"
    POLLING = "POLLING"
    DOWNLOADING = "DOWNLOADING"
    IMPORTING = "IMPORTING"


class LogStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


class AggregateStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class EligibilityStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DownloadStatus(str, Enum):
    PENDING = "PENDING"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ImportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    FAILED_PARTIAL = "FAILED_PARTIAL"


# =============================================================================
# Time helpers
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# =============================================================================
# Date Range
# =============================================================================

@dataclass(frozen=True)
class DateRange:
    """An inclusive reporting period."""
    start: date
    end: date

    @property
    def key(self) -> str:
        """Canonical range key, e.g. '2024-01-07 to 2024-01-13'."""
        return range_key(self.start, self.end)

    @classmethod
    def from_key(cls, key: str) -> "DateRange":
        start, end = key.split(" to ")
        return cls(date.fromisoformat(start.strip()), date.fromisoformat(end.strip()))

    def __str__(self) -> str:
        return self.key


def range_key(start: date, end: date) -> str:
    return f"{start.isoformat()} to {end.isoformat()}"


# =============================================================================
# Tenant & Seller
# =============================================================================

@dataclass
class Tenant:
    id: str
    name: str
    supabase_url: str
    supabase_key: str
    is_priority: bool = False
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Tenant":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or str(row["id"]),
            supabase_url=row.get("supabase_url"),
            supabase_key=row.get("supabase_key"),
            is_priority=bool(row.get("is_priority")),
            is_active=row.get("is_active", True) is not False,
            updated_at=parse_iso(row.get("updated_at")),
        )


@dataclass
class Seller:
    id: str
    amazon_seller_id: str
    name: str = ""
    region: str = "NA"
    marketplace_ids: List[str] = field(default_factory=list)
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Seller":
        marketplace_ids = row.get("marketplace_ids") or []
        if isinstance(marketplace_ids, str):
            marketplace_ids = [m.strip() for m in marketplace_ids.split(",") if m.strip()]
        return cls(
            id=str(row["id"]),
            amazon_seller_id=row["amazon_seller_id"],
            name=row.get("name") or "",
            region=(row.get("region") or "NA").upper(),
            marketplace_ids=list(marketplace_ids),
            is_active=row.get("is_active", True) is not False,
        )


# =============================================================================
# Pull Job
# =============================================================================

@dataclass
class PeriodState:
    """Per period-type sub-state of a pull job."""
    pull_status: PullStatus = PullStatus.PENDING
    phase_status: Optional[PhaseStatus] = None
    report_id: Optional[str] = None
    document_id: Optional[str] = None
    range_key: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_error: Optional[str] = None
    aggregate_status: Optional[AggregateStatus] = None

    @property
    def is_terminal(self) -> bool:
        return self.pull_status in (PullStatus.SUCCESS, PullStatus.FATAL)

    def set_phase(self, phase: PhaseStatus, now: datetime):
        # Phase is frozen once the unit reaches SUCCESS or FATAL
        if not self.is_terminal:
            self.phase_status = phase
        self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pull_status": self.pull_status.value,
            "phase_status": self.phase_status.value if self.phase_status else None,
            "report_id": self.report_id,
            "document_id": self.document_id,
            "range_key": self.range_key,
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at),
            "updated_at": to_iso(self.updated_at),
            "last_error": self.last_error,
            "aggregate_status": self.aggregate_status.value if self.aggregate_status else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeriodState":
        phase = data.get("phase_status")
        aggregate = data.get("aggregate_status")
        return cls(
            pull_status=PullStatus(data.get("pull_status") or PullStatus.PENDING.value),
            phase_status=PhaseStatus(phase) if phase else None,
            report_id=data.get("report_id"),
            document_id=data.get("document_id"),
            range_key=data.get("range_key"),
            started_at=parse_iso(data.get("started_at")),
            ended_at=parse_iso(data.get("ended_at")),
            updated_at=parse_iso(data.get("updated_at")),
            last_error=data.get("last_error"),
            aggregate_status=AggregateStatus(aggregate) if aggregate else None,
        )


@dataclass
class PullJob:
    """One unit of orchestration work for a seller across its period types."""
    seller_id: str
    amazon_seller_id: str
    asins: List[str]
    period_states: Dict[PeriodType, PeriodState] = field(default_factory=dict)
    is_historical: bool = False
    overall_status: AggregateStatus = AggregateStatus.IN_PROGRESS
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def period_types(self) -> List[PeriodType]:
        return [p for p in PERIOD_TYPES if p in self.period_states]

    def state(self, period_type: PeriodType) -> PeriodState:
        return self.period_states.setdefault(PeriodType(period_type), PeriodState())

    def to_row(self) -> Dict[str, Any]:
        row = {
            "seller_id": self.seller_id,
            "amazon_seller_id": self.amazon_seller_id,
            "asins": list(self.asins),
            "is_historical": self.is_historical,
            "overall_status": self.overall_status.value,
            "period_states": {p.value: s.to_dict() for p, s in self.period_states.items()},
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "updated_at": to_iso(self.updated_at),
        }
        if self.id is not None:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PullJob":
        states = {
            PeriodType(k): PeriodState.from_dict(v or {})
            for k, v in (row.get("period_states") or {}).items()
        }
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            seller_id=str(row["seller_id"]),
            amazon_seller_id=row["amazon_seller_id"],
            asins=list(row.get("asins") or []),
            period_states=states,
            is_historical=bool(row.get("is_historical")),
            overall_status=AggregateStatus(row.get("overall_status") or AggregateStatus.IN_PROGRESS.value),
            created_at=parse_iso(row.get("created_at")),
            started_at=parse_iso(row.get("started_at")),
            updated_at=parse_iso(row.get("updated_at")),
        )


# =============================================================================
# Activity Log
# =============================================================================

@dataclass
class ActivityLogEntry:
    """Latest recorded action for one (job, period type, range) unit."""
    job_id: str
    period_type: PeriodType
    range_key: str = ""
    action: str = ""
    status: LogStatus = LogStatus.PENDING
    message: Optional[str] = None
    report_id: Optional[str] = None
    document_id: Optional[str] = None
    retry_count: int = 0
    execution_time: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "period_type": PeriodType(self.period_type).value,
            "range_key": self.range_key,
            "action": self.action,
            "status": self.status.value,
            "message": self.message,
            "report_id": self.report_id,
            "document_id": self.document_id,
            "retry_count": self.retry_count,
            "execution_time": self.execution_time,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ActivityLogEntry":
        return cls(
            job_id=str(row["job_id"]),
            period_type=PeriodType(row["period_type"]),
            range_key=row.get("range_key") or "",
            action=row.get("action") or "",
            status=LogStatus(row.get("status") or LogStatus.PENDING.value),
            message=row.get("message"),
            report_id=row.get("report_id"),
            document_id=row.get("document_id"),
            retry_count=int(row.get("retry_count") or 0),
            execution_time=row.get("execution_time"),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
        )


# =============================================================================
# Eligibility
# =============================================================================

@dataclass
class EligibilityRecord:
    """Per (seller, ASIN) bookkeeping of the last pull outcome per period type."""
    seller_id: str
    asin: str
    is_active: bool = True
    last_status: Dict[PeriodType, Optional[EligibilityStatus]] = field(default_factory=dict)
    last_started_at: Dict[PeriodType, Optional[datetime]] = field(default_factory=dict)
    last_ended_at: Dict[PeriodType, Optional[datetime]] = field(default_factory=dict)
    backfill_start_date: Optional[date] = None
    backfill_end_date: Optional[date] = None
    id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EligibilityRecord":
        status_map = row.get("last_status") or {}
        started_map = row.get("last_started_at") or {}
        ended_map = row.get("last_ended_at") or {}
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            seller_id=str(row["seller_id"]),
            asin=row["asin"],
            is_active=row.get("is_active", True) is not False,
            last_status={
                PeriodType(k): EligibilityStatus(v) if v else None
                for k, v in status_map.items()
            },
            last_started_at={PeriodType(k): parse_iso(v) for k, v in started_map.items()},
            last_ended_at={PeriodType(k): parse_iso(v) for k, v in ended_map.items()},
            backfill_start_date=parse_date(row.get("backfill_start_date")),
            backfill_end_date=parse_date(row.get("backfill_end_date")),
        )

    def status_columns(self) -> Dict[str, Any]:
        return {
            "last_status": {p.value: s.value if s else None for p, s in self.last_status.items()},
            "last_started_at": {p.value: to_iso(v) for p, v in self.last_started_at.items()},
            "last_ended_at": {p.value: to_iso(v) for p, v in self.last_ended_at.items()},
        }


# =============================================================================
# Download Record
# =============================================================================

@dataclass
class DownloadRecord:
    job_id: str
    report_id: str
    period_type: PeriodType
    range_key: str = ""
    document_id: Optional[str] = None
    status: DownloadStatus = DownloadStatus.PENDING
    download_attempts: int = 0
    max_download_attempts: int = 3
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    last_error: Optional[str] = None
    import_status: ImportStatus = ImportStatus.PENDING
    import_attempts: int = 0
    total_records: int = 0
    imported_count: int = 0
    failed_count: int = 0
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        row = {
            "job_id": self.job_id,
            "report_id": self.report_id,
            "period_type": PeriodType(self.period_type).value,
            "range_key": self.range_key,
            "document_id": self.document_id,
            "status": self.status.value,
            "download_attempts": self.download_attempts,
            "max_download_attempts": self.max_download_attempts,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "last_error": self.last_error,
            "import_status": self.import_status.value,
            "import_attempts": self.import_attempts,
            "total_records": self.total_records,
            "imported_count": self.imported_count,
            "failed_count": self.failed_count,
            "updated_at": to_iso(utcnow()),
        }
        if self.id is not None:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DownloadRecord":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            job_id=str(row["job_id"]),
            report_id=row["report_id"],
            period_type=PeriodType(row["period_type"]),
            range_key=row.get("range_key") or "",
            document_id=row.get("document_id"),
            status=DownloadStatus(row.get("status") or DownloadStatus.PENDING.value),
            download_attempts=int(row.get("download_attempts") or 0),
            max_download_attempts=int(row.get("max_download_attempts") or 3),
            file_path=row.get("file_path"),
            file_size=row.get("file_size"),
            last_error=row.get("last_error"),
            import_status=ImportStatus(row.get("import_status") or ImportStatus.PENDING.value),
            import_attempts=int(row.get("import_attempts") or 0),
            total_records=int(row.get("total_records") or 0),
            imported_count=int(row.get("imported_count") or 0),
            failed_count=int(row.get("failed_count") or 0),
        )
