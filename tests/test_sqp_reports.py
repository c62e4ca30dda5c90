"""
Tests for period math, ASIN batching, request payloads and report parsing.
"""

from datetime import date

import pytest

from conftest import sqp_record
from sqp_pull.utils.models import DateRange, PeriodType
from sqp_pull.utils.sqp_reports import (
    ReportRequest,
    batch_asins,
    decode_report,
    extract_records,
    get_previous_complete_period,
    get_week_boundaries,
    parse_sqp_records,
    resolve_marketplace_id,
)

WEEK = DateRange(date(2024, 1, 7), date(2024, 1, 13))


class TestPeriods:
    """Test period boundary calculations."""

    def test_week_is_sunday_to_saturday(self):
        assert get_week_boundaries(date(2024, 1, 10)) == (date(2024, 1, 7), date(2024, 1, 13))
        assert get_week_boundaries(date(2024, 1, 7)) == (date(2024, 1, 7), date(2024, 1, 13))

    @pytest.mark.parametrize("period_type,today,expected", [
        (PeriodType.WEEK, date(2024, 1, 16), "2024-01-07 to 2024-01-13"),
        (PeriodType.WEEK, date(2024, 1, 14), "2024-01-07 to 2024-01-13"),
        (PeriodType.MONTH, date(2024, 3, 3), "2024-02-01 to 2024-02-29"),
        (PeriodType.MONTH, date(2024, 1, 3), "2023-12-01 to 2023-12-31"),
        (PeriodType.QUARTER, date(2024, 4, 20), "2024-01-01 to 2024-03-31"),
        (PeriodType.QUARTER, date(2024, 1, 20), "2023-10-01 to 2023-12-31"),
    ])
    def test_previous_complete_period(self, period_type, today, expected):
        assert get_previous_complete_period(period_type, today).key == expected

    def test_range_key_round_trip(self):
        assert DateRange.from_key(WEEK.key) == WEEK


class TestBatchAsins:
    """Test splitting ASINs under the 200-character limit."""

    def test_single_batch(self):
        assert batch_asins(["B000000001", "B000000002"]) == [["B000000001", "B000000002"]]

    def test_splits_at_limit(self):
        asins = [f"B{i:09d}" for i in range(20)]
        batches = batch_asins(asins)
        assert [len(b) for b in batches] == [18, 2]
        assert all(len(" ".join(b)) <= 200 for b in batches)

    def test_empty(self):
        assert batch_asins([]) == []


class TestReportRequest:
    """Test createReport payloads."""

    def test_payload(self):
        request = ReportRequest(["USA"], WEEK.start, WEEK.end, PeriodType.WEEK, ["B000000001"])
        payload = request.to_payload()

        assert payload["marketplaceIds"] == ["ATVPDKIKX0DER"]
        assert payload["dataEndTime"] == "2024-01-13T23:59:59Z"
        assert payload["reportOptions"]["reportPeriod"] == "WEEK"

    def test_raw_marketplace_id_passes_through(self):
        assert resolve_marketplace_id("A1F83G8C2ARO7P") == "A1F83G8C2ARO7P"
        assert resolve_marketplace_id("uk") == "A1F83G8C2ARO7P"

    def test_too_many_asins(self):
        asins = [f"B{i:09d}" for i in range(20)]
        request = ReportRequest(["USA"], WEEK.start, WEEK.end, PeriodType.WEEK, asins)
        with pytest.raises(ValueError, match="200-char limit"):
            request.to_payload()


class TestParsing:
    """Test decoding and flattening SQP records."""

    def test_empty_body_is_no_records(self):
        assert decode_report(b"") == []
        assert decode_report(b"  \n") == []

    def test_extract_from_wrapped_shapes(self):
        records = [sqp_record("B000000001", "mug")]
        assert extract_records({"dataByAsin": records}) == records
        assert extract_records({"records": records}) == records
        assert extract_records({"reportSpecification": {}}) == []

    def test_parse_counts(self):
        data = [
            sqp_record("B000000001", "mug"),
            sqp_record("B000000001", "mug"),
            sqp_record("B000000002", "cup", impressions=0, clicks=0),
            {"asin": "B000000003"},
        ]

        result = parse_sqp_records(data, "R1", "s1", "A1SELLER", PeriodType.WEEK, WEEK)

        assert result.total_records == 4
        assert len(result.rows) == 1
        assert result.duplicate_count == 1
        assert result.discarded_count == 1
        assert result.failed_count == 1

    def test_row_fields(self):
        record = sqp_record("B000000001", "mug")
        record["clickData"]["asinMedianClickPrice"] = {"amount": 12.5, "currencyCode": "USD"}

        row = parse_sqp_records([record], "R1", "s1", "A1SELLER", PeriodType.WEEK, WEEK).rows[0]

        assert row["report_id"] == "R1"
        assert row["period_start"] == "2024-01-07"
        assert row["search_query_volume"] == 500
        assert row["asin_impression_count"] == 10
        assert row["asin_click_median_price"] == 12.5
        assert row["currency_code"] == "USD"

    def test_missing_dates_fall_back_to_range(self):
        record = sqp_record("B000000001", "mug")
        del record["startDate"], record["endDate"]

        row = parse_sqp_records([record], "R1", "s1", "A1SELLER", PeriodType.MONTH,
                                DateRange(date(2024, 1, 1), date(2024, 1, 31))).rows[0]

        assert (row["period_start"], row["period_end"]) == ("2024-01-01", "2024-01-31")
        assert row["period_type"] == "MONTH"
