"""
SP-API Search Query Performance (SQP) Reports Module

Handles report creation, status checks, document download, and parsing for
Brand Analytics search query performance reports.

Report constraints:
- ASIN parameter: space-separated, 200-character limit (~18 ASINs per batch)
- Time periods: WEEK (Sun-Sat), MONTH, QUARTER only - NO daily granularity
- Strict date alignment required (period boundaries)
- Brand-owned ASINs only
- JSON output, create/poll/download workflow
"""

import gzip
import json
import logging
import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqp_pull.config import ASIN_CHAR_LIMIT
from sqp_pull.utils.api_client import SPAPIClient
from sqp_pull.utils.models import DateRange, PeriodType, Seller

logger = logging.getLogger(__name__)

# Regional endpoints
ENDPOINTS = {
    "NA": "sellingpartnerapi-na.amazon.com",
    "EU": "sellingpartnerapi-eu.amazon.com",
    "FE": "sellingpartnerapi-fe.amazon.com",
    "UAE": "sellingpartnerapi-eu.amazon.com"   # UAE uses EU endpoint, different token
}

# Amazon Marketplace IDs by country code
MARKETPLACE_IDS = {
    "USA": "ATVPDKIKX0DER",
    "CA": "A2EUQ1WTGCTBG2",
    "MX": "A1AM78C64UM0Y8",
    "UK": "A1F83G8C2ARO7P",
    "DE": "A1PA6795UKMFR9",
    "FR": "A13V1IB3VIYZZH",
    "IT": "APJ6JRA9NG5V4",
    "ES": "A1RKKUPIHCS9HS",
    "UAE": "A2VIGQ35RCS4UG",
    "AU": "A39IBJ37TRP1C6",
    "JP": "A1VC38T7YXB528"
}

SQP_REPORT_TYPE = "GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT"

# Report processing statuses, normalized
QUEUED = "QUEUED"
IN_PROGRESS = "IN_PROGRESS"
READY = "READY"
FATAL = "FATAL"
CANCELLED = "CANCELLED"

_STATUS_MAP = {
    "IN_QUEUE": QUEUED,
    "IN_PROGRESS": IN_PROGRESS,
    "DONE": READY,
    "FATAL": FATAL,
    "CANCELLED": CANCELLED,
}


def get_endpoint(region: str) -> str:
    """Get the API endpoint for a region."""
    return ENDPOINTS.get((region or "NA").upper(), ENDPOINTS["NA"])


def resolve_marketplace_id(value: str) -> str:
    """Accept either a country code ('USA') or a raw Amazon marketplace id."""
    return MARKETPLACE_IDS.get(value.upper(), value)


# =============================================================================
# Custom Exceptions
# =============================================================================

class ReportNotReadyError(Exception):
    """Report is still queued or processing; poll again after delay seconds."""
    def __init__(self, report_id: str, status: str, delay: float):
        super().__init__(f"Report {report_id} not ready ({status}), next check in {delay:.0f}s")
        self.report_id = report_id
        self.status = status
        self.delay = delay


class ReportFatalError(Exception):
    """Report ended FATAL or CANCELLED on Amazon's side; never retried."""
    def __init__(self, report_id: str, status: str):
        super().__init__(f"Report {report_id} failed with status: {status}")
        self.report_id = report_id
        self.status = status


# =============================================================================
# Period Boundary Calculations
# =============================================================================

def get_week_boundaries(target_date: date) -> Tuple[date, date]:
    """
    Get the Amazon week boundaries (Sunday-Saturday) containing the given date.

    Returns:
        Tuple of (sunday_start, saturday_end)
    """
    # weekday(): Monday=0, Sunday=6
    days_since_sunday = (target_date.weekday() + 1) % 7
    sunday = target_date - timedelta(days=days_since_sunday)
    return sunday, sunday + timedelta(days=6)


def get_month_boundaries(target_date: date) -> Tuple[date, date]:
    first_day = target_date.replace(day=1)
    _, last_day_num = calendar.monthrange(target_date.year, target_date.month)
    return first_day, target_date.replace(day=last_day_num)


def get_quarter_boundaries(target_date: date) -> Tuple[date, date]:
    quarter = (target_date.month - 1) // 3
    first_month = quarter * 3 + 1
    last_month = first_month + 2
    _, last_day_num = calendar.monthrange(target_date.year, last_month)
    return date(target_date.year, first_month, 1), date(target_date.year, last_month, last_day_num)


def get_previous_complete_period(period_type: PeriodType, today: date) -> DateRange:
    """
    The most recent fully elapsed period of the given type.

    WEEK is the previous Sunday-Saturday week, MONTH the previous calendar
    month, QUARTER the previous calendar quarter.
    """
    period_type = PeriodType(period_type)

    if period_type == PeriodType.WEEK:
        sunday, _ = get_week_boundaries(today)
        start = sunday - timedelta(days=7)
        return DateRange(start, start + timedelta(days=6))

    if period_type == PeriodType.MONTH:
        first_of_current = today.replace(day=1)
        last_of_prev = first_of_current - timedelta(days=1)
        return DateRange(last_of_prev.replace(day=1), last_of_prev)

    first_of_quarter, _ = get_quarter_boundaries(today)
    last_of_prev = first_of_quarter - timedelta(days=1)
    return DateRange(*get_quarter_boundaries(last_of_prev))


def enumerate_weekly_periods(start_date: date, end_date: date) -> List[DateRange]:
    """
    Enumerate complete Sunday-Saturday weeks between start and end dates.

    Returns:
        List of DateRange, newest first
    """
    periods = []
    sunday, saturday = get_week_boundaries(start_date)
    if sunday < start_date:
        sunday += timedelta(days=7)
        saturday += timedelta(days=7)

    while saturday <= end_date:
        periods.append(DateRange(sunday, saturday))
        sunday += timedelta(days=7)
        saturday += timedelta(days=7)

    periods.reverse()
    return periods


def enumerate_monthly_periods(start_date: date, end_date: date) -> List[DateRange]:
    """Complete calendar months between start and end dates, newest first."""
    periods = []
    current = start_date.replace(day=1)

    while current <= end_date:
        first_day, last_day = get_month_boundaries(current)
        if first_day >= start_date and last_day <= end_date:
            periods.append(DateRange(first_day, last_day))
        if current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)

    periods.reverse()
    return periods


def enumerate_quarterly_periods(start_date: date, end_date: date) -> List[DateRange]:
    """Complete calendar quarters between start and end dates, newest first."""
    periods = []
    current, _ = get_quarter_boundaries(start_date)

    while current <= end_date:
        first_day, last_day = get_quarter_boundaries(current)
        if first_day >= start_date and last_day <= end_date:
            periods.append(DateRange(first_day, last_day))
        current = last_day + timedelta(days=1)

    periods.reverse()
    return periods


def enumerate_periods(period_type: PeriodType, start_date: date, end_date: date) -> List[DateRange]:
    period_type = PeriodType(period_type)
    if period_type == PeriodType.WEEK:
        return enumerate_weekly_periods(start_date, end_date)
    if period_type == PeriodType.MONTH:
        return enumerate_monthly_periods(start_date, end_date)
    return enumerate_quarterly_periods(start_date, end_date)


# =============================================================================
# ASIN Batching
# =============================================================================

def batch_asins(asin_list: List[str], char_limit: int = ASIN_CHAR_LIMIT) -> List[List[str]]:
    """
    Split ASIN list into batches that fit within the 200-character limit.

    "ASIN1 ASIN2" = 10 + 1 + 10 = 21 chars for 2 ASINs, so a batch holds
    at most ~18 standard ASINs.

    Args:
        asin_list: List of ASIN strings
        char_limit: Maximum character length for space-joined ASINs

    Returns:
        List of ASIN batches
    """
    batches = []
    current_batch = []
    current_length = 0

    for asin in asin_list:
        additional = len(asin) + (1 if current_batch else 0)

        if current_length + additional > char_limit:
            if current_batch:
                batches.append(current_batch)
            current_batch = [asin]
            current_length = len(asin)
        else:
            current_batch.append(asin)
            current_length += additional

    if current_batch:
        batches.append(current_batch)

    return batches


# =============================================================================
# Reports API
# =============================================================================

@dataclass
class ReportRequest:
    """Parameters of one createReport call."""
    marketplace_ids: List[str]
    start_date: date
    end_date: date
    period_type: PeriodType
    asins: List[str]
    report_kind: str = SQP_REPORT_TYPE
    options: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        asin_string = " ".join(self.asins)
        if len(asin_string) > ASIN_CHAR_LIMIT:
            raise ValueError(
                f"ASIN string exceeds {ASIN_CHAR_LIMIT}-char limit: "
                f"{len(asin_string)} chars ({len(self.asins)} ASINs)"
            )

        options = {"reportPeriod": PeriodType(self.period_type).value, "asin": asin_string}
        options.update(self.options)

        return {
            "reportType": self.report_kind,
            "marketplaceIds": [resolve_marketplace_id(m) for m in self.marketplace_ids],
            "dataStartTime": self.start_date.strftime("%Y-%m-%dT00:00:00Z"),
            "dataEndTime": self.end_date.strftime("%Y-%m-%dT23:59:59Z"),
            "reportOptions": options
        }


@dataclass
class ReportStatus:
    status: str
    document_id: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class ReportDocument:
    url: str
    compression: Optional[str] = None


class ReportsAPI:
    """
    Reporting API adapter over SPAPIClient.

    Usage:
        api = ReportsAPI(SPAPIClient())
        report_id = api.create_report(seller, token, request)
        status = api.get_report_status(seller, token, report_id)
    """

    def __init__(self, client: SPAPIClient):
        self.client = client

    def _base_url(self, seller: Seller) -> str:
        return f"https://{get_endpoint(seller.region)}/reports/2021-06-30"

    def create_report(self, seller: Seller, access_token: str, request: ReportRequest) -> str:
        """
        Submit a report request.

        Returns:
            Report ID string
        """
        payload = request.to_payload()
        response = self.client.post(
            f"{self._base_url(seller)}/reports",
            access_token=access_token,
            api_type="reports_create",
            json=payload,
            headers={"Content-Type": "application/json"}
        )
        report_id = str(response.json()["reportId"])

        logger.info(
            f"Created SQP report {report_id} for {seller.amazon_seller_id} "
            f"({len(request.asins)} ASINs, {PeriodType(request.period_type).value} {request.start_date})"
        )
        print(f"  Created SQP report {report_id} ({len(request.asins)} ASINs)")
        return report_id

    def get_report_status(self, seller: Seller, access_token: str, report_id: str) -> ReportStatus:
        response = self.client.get(
            f"{self._base_url(seller)}/reports/{report_id}",
            access_token=access_token,
            api_type="reports_get"
        )
        data = response.json()
        raw_status = data.get("processingStatus")
        status = _STATUS_MAP.get(raw_status, raw_status)
        return ReportStatus(status=status, document_id=data.get("reportDocumentId"), raw_status=raw_status)

    def get_document(self, seller: Seller, access_token: str, document_id: str) -> ReportDocument:
        response = self.client.get(
            f"{self._base_url(seller)}/documents/{document_id}",
            access_token=access_token,
            api_type="documents"
        )
        data = response.json()
        return ReportDocument(url=data["url"], compression=data.get("compressionAlgorithm"))

    def fetch_document_bytes(self, document: ReportDocument) -> bytes:
        """Download the document body (pre-signed S3 URL, no SP-API auth) and decompress."""
        response = self.client.session.get(document.url, timeout=self.client.timeout)
        response.raise_for_status()

        content = response.content
        if (document.compression or "").upper() == "GZIP":
            content = gzip.decompress(content)
        return content


# =============================================================================
# Parsing
# =============================================================================

def decode_report(content: bytes) -> Any:
    """Decode a downloaded report body; an empty body decodes to no records."""
    if not content or not content.strip():
        return []
    return json.loads(content.decode("utf-8"))


def extract_records(report_data: Any) -> List[Dict]:
    """Pull the record list out of the shapes the report comes in."""
    if isinstance(report_data, list):
        return report_data
    if isinstance(report_data, dict):
        for key in ("records", "dataByAsin"):
            records = report_data.get(key)
            if isinstance(records, list):
                return records
    return []


def _extract_currency(currency_amount: Optional[Dict]) -> Tuple[Optional[float], Optional[str]]:
    """Extract amount and currency code from a CurrencyAmount object."""
    if not currency_amount:
        return None, None
    return currency_amount.get("amount"), currency_amount.get("currencyCode")


@dataclass
class ParseResult:
    rows: List[Dict]
    total_records: int = 0
    failed_count: int = 0
    discarded_count: int = 0
    duplicate_count: int = 0


def parse_sqp_records(
    report_data: Any,
    report_id: str,
    seller_id: str,
    amazon_seller_id: str,
    period_type: PeriodType,
    date_range: DateRange
) -> ParseResult:
    """
    Parse an SQP report into flat metric rows.

    Each record is one ASIN + one search query:
    {
      "startDate": "2024-01-07", "endDate": "2024-01-13",
      "asin": "B00...",
      "searchQueryData": {"searchQuery": "...", "searchQueryScore": 5, "searchQueryVolume": 12345},
      "impressionData": {...}, "clickData": {...}, "cartAddData": {...}, "purchaseData": {...}
    }

    Records without an ASIN or search query count as failed. Records where
    impressions, clicks, cart adds and purchases are all zero are discarded.
    Only the first record of each (ASIN, query) pair is kept.

    Returns:
        ParseResult with rows ready for insert and the per-outcome counts
    """
    records = extract_records(report_data)
    result = ParseResult(rows=[], total_records=len(records))
    seen = set()

    for item in records:
        asin = item.get("asin") or item.get("childAsin")
        sqd = item.get("searchQueryData") or {}
        search_query = sqd.get("searchQuery")
        if not asin or not search_query:
            result.failed_count += 1
            continue

        imp = item.get("impressionData") or {}
        click = item.get("clickData") or {}
        cart = item.get("cartAddData") or {}
        purchase = item.get("purchaseData") or {}

        impressions = imp.get("asinImpressionCount") or 0
        clicks = click.get("asinClickCount") or 0
        cart_adds = cart.get("asinCartAddCount") or 0
        purchases = purchase.get("asinPurchaseCount") or 0
        if not (impressions or clicks or cart_adds or purchases):
            result.discarded_count += 1
            continue

        key = (asin, search_query)
        if key in seen:
            result.duplicate_count += 1
            continue
        seen.add(key)

        asin_click_price, currency = _extract_currency(click.get("asinMedianClickPrice"))
        asin_cart_price, _ = _extract_currency(cart.get("asinMedianCartAddPrice"))
        asin_purchase_price, _ = _extract_currency(purchase.get("asinMedianPurchasePrice"))

        result.rows.append({
            "report_id": report_id,
            "seller_id": seller_id,
            "amazon_seller_id": amazon_seller_id,
            "period_type": PeriodType(period_type).value,
            "period_start": item.get("startDate") or date_range.start.isoformat(),
            "period_end": item.get("endDate") or date_range.end.isoformat(),
            "asin": asin,
            "search_query": search_query,
            "search_query_score": sqd.get("searchQueryScore"),
            "search_query_volume": sqd.get("searchQueryVolume"),
            "currency_code": currency,

            # Impressions
            "total_query_impression_count": imp.get("totalQueryImpressionCount"),
            "asin_impression_count": impressions,
            "asin_impression_share": imp.get("asinImpressionShare"),

            # Clicks
            "total_click_count": click.get("totalClickCount"),
            "total_click_rate": click.get("totalClickRate"),
            "asin_click_count": clicks,
            "asin_click_share": click.get("asinClickShare"),
            "asin_click_median_price": asin_click_price,

            # Cart Adds
            "total_cart_add_count": cart.get("totalCartAddCount"),
            "total_cart_add_rate": cart.get("totalCartAddRate"),
            "asin_cart_add_count": cart_adds,
            "asin_cart_add_share": cart.get("asinCartAddShare"),
            "asin_cart_add_median_price": asin_cart_price,

            # Purchases
            "total_purchase_count": purchase.get("totalPurchaseCount"),
            "total_purchase_rate": purchase.get("totalPurchaseRate"),
            "asin_purchase_count": purchases,
            "asin_purchase_share": purchase.get("asinPurchaseShare"),
            "asin_purchase_median_price": asin_purchase_price,
        })

    return result
