"""
Pytest configuration and shared fixtures.

Storage runs against an in-memory stand-in for the supabase query builder,
and the reporting API and credential provider are replaced with scripted
fakes, so no test touches the network.
"""

import copy
import json
import time
import itertools
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from sqp_pull.config import Settings
from sqp_pull.utils import db
from sqp_pull.utils.alerting import AlertManager, FailureNotice
from sqp_pull.utils.auth import AccessToken, MissingCredentialsError
from sqp_pull.utils.engine import PullEngine
from sqp_pull.utils.models import PeriodState, PeriodType, PullJob, Seller, Tenant
from sqp_pull.utils.resilience import CircuitBreaker, MemoryGate, RateLimiter
from sqp_pull.utils.sqp_reports import READY, ReportDocument, ReportStatus


# =============================================================================
# In-memory Supabase
# =============================================================================

class FakeResult:
    def __init__(self, data: List[Dict]):
        self.data = data


class FakeQuery:
    """Chainable query over one in-memory table."""

    def __init__(self, store: "FakeSupabase", name: str, op: str, payload: Any = None,
                 on_conflict: str = None, columns: str = "*", ignore_duplicates: bool = False):
        self.store = store
        self.name = name
        self.op = op
        self.payload = payload
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        self.columns = columns
        self.filters = []
        self._order = None
        self._limit = None
        self._range = None

    # Filters
    def eq(self, col, value):
        self.filters.append(lambda r: r.get(col) == value)
        return self

    def neq(self, col, value):
        self.filters.append(lambda r: r.get(col) != value)
        return self

    def in_(self, col, values):
        values = list(values)
        self.filters.append(lambda r: r.get(col) in values)
        return self

    def lt(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) < value)
        return self

    def lte(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) <= value)
        return self

    def gt(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) > value)
        return self

    def gte(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) >= value)
        return self

    def is_(self, col, value):
        expected = None if value in (None, "null") else value
        self.filters.append(lambda r: r.get(col) is expected)
        return self

    # Modifiers
    def order(self, col, desc=False):
        self._order = (col, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def _matches(self, row) -> bool:
        return all(f(row) for f in self.filters)

    def _project(self, row) -> Dict:
        if self.columns in (None, "*"):
            return copy.deepcopy(row)
        return {c.strip(): copy.deepcopy(row.get(c.strip())) for c in self.columns.split(",")}

    def execute(self) -> FakeResult:
        rows = self.store.tables[self.name]

        if self.op == "select":
            selected = [r for r in rows if self._matches(r)]
            if self._order:
                col, desc = self._order
                selected.sort(key=lambda r: (r.get(col) is None, r.get(col) or ""), reverse=desc)
            if self._range:
                start, end = self._range
                selected = selected[start:end + 1]
            if self._limit is not None:
                selected = selected[:self._limit]
            self.store.read_ids[self.name].update(r.get("id") for r in selected)
            return FakeResult([self._project(r) for r in selected])

        if self.op == "insert":
            self.store.check_insert(self.name)
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.store.add_row(self.name, row) for row in payload]
            return FakeResult(copy.deepcopy(inserted))

        if self.op == "upsert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = [k.strip() for k in (self.on_conflict or "id").split(",")]
            written = []
            for row in payload:
                existing = next(
                    (r for r in rows if all(r.get(k) == row.get(k) for k in keys)), None
                )
                if existing is not None and self.ignore_duplicates:
                    continue
                if existing is not None:
                    existing.update(copy.deepcopy(row))
                    written.append(existing)
                else:
                    written.append(self.store.add_row(self.name, row))
            return FakeResult(copy.deepcopy(written))

        if self.op == "update":
            updated = []
            for r in rows:
                if self._matches(r):
                    r.update(copy.deepcopy(self.payload))
                    updated.append(r)
            return FakeResult(copy.deepcopy(updated))

        if self.op == "delete":
            deleted = [r for r in rows if self._matches(r)]
            self.store.tables[self.name] = [r for r in rows if not self._matches(r)]
            return FakeResult(copy.deepcopy(deleted))

        raise ValueError(f"Unsupported op {self.op}")


class FakeTable:
    def __init__(self, store: "FakeSupabase", name: str):
        self.store = store
        self.name = name

    def select(self, columns="*"):
        return FakeQuery(self.store, self.name, "select", columns=columns)

    def insert(self, payload):
        return FakeQuery(self.store, self.name, "insert", payload=payload)

    def upsert(self, payload, on_conflict=None, ignore_duplicates=False):
        return FakeQuery(self.store, self.name, "upsert", payload=payload,
                         on_conflict=on_conflict, ignore_duplicates=ignore_duplicates)

    def update(self, payload):
        return FakeQuery(self.store, self.name, "update", payload=payload)

    def delete(self):
        return FakeQuery(self.store, self.name, "delete")


class FakeSupabase:
    """Stand-in for supabase.Client covering the calls the storage layer makes."""

    def __init__(self):
        self.tables: Dict[str, List[Dict]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._insert_failures: Dict[str, int] = {}
        self.insert_calls: Dict[str, int] = defaultdict(int)
        # Ids of every row a select returned, per table
        self.read_ids: Dict[str, set] = defaultdict(set)

    def table(self, name: str) -> FakeTable:
        return FakeTable(self, name)

    def add_row(self, name: str, row: Dict) -> Dict:
        row = copy.deepcopy(row)
        if row.get("id") is None:
            row["id"] = str(next(self._ids))
        self.tables[name].append(row)
        return row

    def fail_inserts_after(self, name: str, successful_calls: int):
        """Make insert() on a table raise once successful_calls inserts went through."""
        self._insert_failures[name] = successful_calls

    def check_insert(self, name: str):
        self.insert_calls[name] += 1
        limit = self._insert_failures.get(name)
        if limit is not None and self.insert_calls[name] > limit:
            raise RuntimeError(f"insert into {name} failed")

    def rows(self, name: str) -> List[Dict]:
        return self.tables[name]


# =============================================================================
# Collaborator fakes
# =============================================================================

class RecordingAlertManager(AlertManager):
    """AlertManager that also keeps every failure notice it handled."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sent: List[FailureNotice] = []

    def send_failure_notification(self, notice: FailureNotice):
        self.sent.append(notice)
        super().send_failure_notification(notice)


class FakeReportsAPI:
    """
    Scripted reporting API.

    errors[method] holds exceptions raised (in order) before that method
    starts succeeding. statuses is a queue of ReportStatus values returned by
    get_report_status; once empty every poll reports READY.
    """

    def __init__(self):
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.statuses: List[ReportStatus] = []
        self.report_data: Any = []
        self.calls: List[tuple] = []
        self._report_ids = itertools.count(1)

    def _maybe_raise(self, method: str):
        if self.errors[method]:
            raise self.errors[method].pop(0)

    def create_report(self, seller, access_token, request):
        self.calls.append(("create_report", access_token, request))
        self._maybe_raise("create_report")
        return f"R{next(self._report_ids)}"

    def get_report_status(self, seller, access_token, report_id):
        self.calls.append(("get_report_status", access_token, report_id))
        self._maybe_raise("get_report_status")
        if self.statuses:
            return self.statuses.pop(0)
        return ReportStatus(status=READY, document_id=f"DOC-{report_id}", raw_status="DONE")

    def get_document(self, seller, access_token, document_id):
        self.calls.append(("get_document", access_token, document_id))
        self._maybe_raise("get_document")
        return ReportDocument(url=f"https://example.invalid/{document_id}", compression=None)

    def fetch_document_bytes(self, document):
        self.calls.append(("fetch_document_bytes", document.url))
        self._maybe_raise("fetch_document_bytes")
        if isinstance(self.report_data, bytes):
            return self.report_data
        return json.dumps(self.report_data).encode("utf-8")

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)


class FakeCredentials:
    def __init__(self):
        self.lost = set()
        self.missing = set()
        self.calls: List[tuple] = []

    def get_valid_access_token(self, ctx, amazon_seller_id, force_refresh=False):
        self.calls.append((amazon_seller_id, force_refresh))
        if amazon_seller_id in self.missing:
            raise MissingCredentialsError(f"Missing required credentials: refresh token for {amazon_seller_id}")
        if amazon_seller_id in self.lost:
            return AccessToken(None, lost=True)
        return AccessToken("fresh-token" if force_refresh else "cached-token")


# =============================================================================
# Fixtures
# =============================================================================

SELLER_ID = "s1"
AMAZON_SELLER_ID = "A1SELLER"
TENANT_URL = "https://tenant-one.supabase.co"


def sqp_record(asin: str, query: str, impressions: int = 10, clicks: int = 2,
               start: str = "2024-01-07", end: str = "2024-01-13") -> Dict:
    return {
        "startDate": start,
        "endDate": end,
        "asin": asin,
        "searchQueryData": {"searchQuery": query, "searchQueryScore": 1, "searchQueryVolume": 500},
        "impressionData": {"totalQueryImpressionCount": 1000, "asinImpressionCount": impressions},
        "clickData": {"totalClickCount": 50, "asinClickCount": clicks},
        "cartAddData": {"totalCartAddCount": 5, "asinCartAddCount": 0},
        "purchaseData": {"totalPurchaseCount": 2, "asinPurchaseCount": 0},
    }


@pytest.fixture(autouse=True)
def sleeps(monkeypatch) -> List[float]:
    """Record every time.sleep() instead of sleeping."""
    recorded = []
    monkeypatch.setattr(time, "sleep", lambda seconds: recorded.append(seconds))
    return recorded


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with every delay set to zero."""
    return Settings(
        lwa_client_id="client-id",
        lwa_client_secret="client-secret",
        retry_base_delay=0,
        retry_max_delay=0,
        initial_delay_seconds=0,
        poll_max_delay=0,
        request_delay_seconds=0,
        reports_dir=str(tmp_path / "reports"),
        metrics_insert_chunk=2,
    )


@pytest.fixture
def master() -> FakeSupabase:
    client = FakeSupabase()
    client.add_row(db.TENANTS_TABLE, {
        "id": "t1",
        "name": "Tenant One",
        "supabase_url": TENANT_URL,
        "supabase_key": "service-key",
        "is_priority": False,
        "is_active": True,
        "updated_at": "2024-01-01T00:00:00+00:00",
    })
    return client


@pytest.fixture
def tenant_db() -> FakeSupabase:
    client = FakeSupabase()
    client.add_row(db.SELLERS_TABLE, {
        "id": SELLER_ID,
        "amazon_seller_id": AMAZON_SELLER_ID,
        "name": "Acme",
        "region": "NA",
        "marketplace_ids": ["USA"],
        "is_active": True,
    })
    for i in range(1, 4):
        client.add_row(db.ELIGIBILITY_TABLE, {
            "seller_id": SELLER_ID,
            "asin": f"B00000000{i}",
            "is_active": True,
        })
    return client


@pytest.fixture
def tenant(master) -> Tenant:
    return Tenant.from_row(master.rows(db.TENANTS_TABLE)[0])


@pytest.fixture
def ctx(tenant, tenant_db) -> db.TenantContext:
    return db.TenantContext(tenant, tenant_db)


@pytest.fixture
def seller(tenant_db) -> Seller:
    return Seller.from_row(tenant_db.rows(db.SELLERS_TABLE)[0])


@pytest.fixture
def reports_api() -> FakeReportsAPI:
    return FakeReportsAPI()


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def alerts() -> "RecordingAlertManager":
    """AlertManager without a Slack webhook; notices land in .sent."""
    return RecordingAlertManager(slack_webhook=None)


@pytest.fixture
def memory_usage() -> Dict[str, float]:
    """Mutable memory reading fed to the engine's MemoryGate."""
    return {"mb": 100.0}


@pytest.fixture
def engine(settings, master, tenant_db, reports_api, credentials, alerts, memory_usage) -> PullEngine:
    return PullEngine(
        settings,
        master=master,
        reports_api=reports_api,
        credentials=credentials,
        alerts=alerts,
        breaker=CircuitBreaker(threshold=5, timeout=60),
        rate_limiter=RateLimiter(max_requests=100, window_seconds=60),
        memory_gate=MemoryGate(500, usage_reader=lambda: memory_usage["mb"]),
        client_factory=lambda url, key: tenant_db,
    )


@pytest.fixture
def make_job(ctx):
    """Factory creating a persisted pull job."""
    def _make(period_types=(PeriodType.WEEK,), is_historical=False, asins=None) -> PullJob:
        job = PullJob(
            seller_id=SELLER_ID,
            amazon_seller_id=AMAZON_SELLER_ID,
            asins=list(asins or ["B000000001", "B000000002"]),
            period_states={PeriodType(p): PeriodState() for p in period_types},
            is_historical=is_historical,
        )
        return db.create_job(ctx, job)
    return _make


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
