"""
Tests for backfill window resolution, period grid and gap processing.
"""

from datetime import date

from conftest import SELLER_ID
from sqp_pull.utils import db
from sqp_pull.utils.gap_resolver import (
    MEMORY_HIGH,
    NO_ASINS,
    NO_GAPS,
    NO_WINDOW,
    PLANNED,
    PROCESSED,
    backfill_seller,
    compute_period_grid,
    find_missing_ranges,
    resolve_window,
)
from sqp_pull.utils.models import (
    AggregateStatus,
    DateRange,
    EligibilityRecord,
    LogStatus,
    PeriodType,
    PullStatus,
)

TODAY = date(2024, 2, 10)


def eligibility(start=None, end=None, asin="B000000001"):
    return EligibilityRecord(
        seller_id=SELLER_ID, asin=asin, backfill_start_date=start, backfill_end_date=end
    )


def add_metrics(tenant_db, start, end, period_type="WEEK"):
    return tenant_db.add_row(db.METRICS_TABLE, {
        "report_id": "OLD",
        "seller_id": SELLER_ID,
        "period_type": period_type,
        "period_start": start,
        "period_end": end,
        "asin": "B000000001",
        "search_query": "water bottle",
    })


class TestResolveWindow:
    """Test picking the backfill window."""

    def test_explicit_dates_win(self):
        records = [eligibility(date(2023, 1, 1), date(2023, 6, 30))]
        window = resolve_window(date(2024, 1, 1), date(2024, 1, 31), records, TODAY)
        assert window == DateRange(date(2024, 1, 1), date(2024, 1, 31))

    def test_from_records(self):
        records = [
            eligibility(date(2023, 3, 1), date(2023, 9, 30)),
            eligibility(date(2023, 1, 15), date(2023, 6, 30), asin="B000000002"),
        ]
        assert resolve_window(None, None, records, TODAY) == DateRange(date(2023, 1, 15), date(2023, 9, 30))

    def test_start_without_end_runs_to_today(self):
        records = [eligibility(date(2024, 1, 1))]
        assert resolve_window(None, None, records, TODAY) == DateRange(date(2024, 1, 1), TODAY)

    def test_explicit_start_with_record_end(self):
        records = [eligibility(None, date(2023, 12, 31))]
        window = resolve_window(date(2023, 10, 1), None, records, TODAY)
        assert window == DateRange(date(2023, 10, 1), date(2023, 12, 31))

    def test_end_clamped_to_today(self):
        window = resolve_window(date(2024, 1, 1), date(2025, 1, 1), [], TODAY)
        assert window.end == TODAY

    def test_no_start_means_no_window(self):
        assert resolve_window(None, None, [eligibility()], TODAY) is None

    def test_start_after_end(self):
        assert resolve_window(date(2024, 2, 1), date(2024, 1, 1), [], TODAY) is None


class TestPeriodGrid:
    """Test enumeration of complete periods and gap subtraction."""

    def test_grid_newest_first(self):
        grid = compute_period_grid(DateRange(date(2024, 1, 1), date(2024, 6, 30)))

        assert len(grid[PeriodType.MONTH]) == 6
        assert grid[PeriodType.MONTH][0] == DateRange(date(2024, 6, 1), date(2024, 6, 30))
        assert grid[PeriodType.QUARTER] == [
            DateRange(date(2024, 4, 1), date(2024, 6, 30)),
            DateRange(date(2024, 1, 1), date(2024, 3, 31)),
        ]
        # Sunday 2024-01-07 is the first complete week
        assert grid[PeriodType.WEEK][-1] == DateRange(date(2024, 1, 7), date(2024, 1, 13))

    def test_partial_periods_excluded(self):
        grid = compute_period_grid(DateRange(date(2024, 1, 10), date(2024, 2, 20)), [PeriodType.MONTH])
        assert grid == {PeriodType.MONTH: []}

    def test_missing_sorted_by_end_then_type(self):
        grid = compute_period_grid(DateRange(date(2024, 1, 1), date(2024, 3, 31)),
                                   [PeriodType.MONTH, PeriodType.QUARTER])
        existing = {PeriodType.MONTH: {"2024-02-01 to 2024-02-29"}}

        missing = [(p.value, r.key) for p, r in find_missing_ranges(grid, existing)]

        assert missing == [
            ("MONTH", "2024-03-01 to 2024-03-31"),
            ("QUARTER", "2024-01-01 to 2024-03-31"),
            ("MONTH", "2024-01-01 to 2024-01-31"),
        ]


class TestBackfillSeller:
    """Test the backfill run for one seller."""

    def test_only_missing_weeks_requested(self, engine, ctx, tenant_db, seller, reports_api):
        add_metrics(tenant_db, "2024-01-07", "2024-01-13")
        add_metrics(tenant_db, "2024-01-14", "2024-01-20")

        result = backfill_seller(engine, ctx, seller, start=date(2024, 1, 7), end=date(2024, 2, 3), today=TODAY)

        assert result["status"] == PROCESSED
        assert result["missing"] == 2
        assert [r["range"] for r in result["ranges"]] == [
            "2024-01-28 to 2024-02-03",
            "2024-01-21 to 2024-01-27",
        ]
        assert all(r["outcome"] == "success" for r in result["ranges"])
        assert reports_api.count("create_report") == 2
        requested = [c[2] for c in reports_api.calls if c[0] == "create_report"]
        assert [r.start_date for r in requested] == [date(2024, 1, 28), date(2024, 1, 21)]

        job = db.get_job(ctx, result["job_id"])
        assert job.is_historical
        assert job.period_types == [PeriodType.WEEK]
        assert job.overall_status == AggregateStatus.SUCCESS
        assert job.state(PeriodType.WEEK).pull_status == PullStatus.SUCCESS
        entry = db.get_activity_log(ctx, job.id, PeriodType.WEEK, "2024-01-21 to 2024-01-27")
        assert entry.status == LogStatus.SUCCESS
        assert result["overall_status"] == AggregateStatus.SUCCESS.value

    def test_max_ranges_takes_newest(self, engine, ctx, seller, reports_api):
        result = backfill_seller(engine, ctx, seller, start=date(2024, 1, 7), end=date(2024, 2, 3),
                                 max_ranges=1, today=TODAY)

        assert result["missing"] == 4
        assert [r["range"] for r in result["ranges"]] == ["2024-01-28 to 2024-02-03"]
        assert reports_api.count("create_report") == 1

    def test_dry_run_plans_only(self, engine, ctx, seller, reports_api):
        result = backfill_seller(engine, ctx, seller, start=date(2024, 1, 7), end=date(2024, 2, 3),
                                 dry_run=True, today=TODAY)

        assert result["status"] == PLANNED
        assert len(result["ranges"]) == 4
        assert "job_id" not in result
        assert reports_api.calls == []

    def test_window_from_eligibility_records(self, engine, ctx, tenant_db, seller):
        for row in tenant_db.rows(db.ELIGIBILITY_TABLE):
            row["backfill_start_date"] = "2024-01-21"

        result = backfill_seller(engine, ctx, seller, dry_run=True, today=TODAY)

        assert result["window"] == "2024-01-21 to 2024-02-10"
        assert [r["range"] for r in result["ranges"]] == [
            "2024-02-04 to 2024-02-10",
            "2024-01-28 to 2024-02-03",
            "2024-01-21 to 2024-01-27",
        ]

    def test_no_active_asins(self, engine, ctx, tenant_db, seller):
        for row in tenant_db.rows(db.ELIGIBILITY_TABLE):
            row["is_active"] = False
        assert backfill_seller(engine, ctx, seller, today=TODAY)["status"] == NO_ASINS

    def test_no_window(self, engine, ctx, seller):
        assert backfill_seller(engine, ctx, seller, today=TODAY)["status"] == NO_WINDOW

    def test_no_gaps(self, engine, ctx, tenant_db, seller, reports_api):
        add_metrics(tenant_db, "2024-01-07", "2024-01-13")

        result = backfill_seller(engine, ctx, seller, start=date(2024, 1, 7), end=date(2024, 1, 13), today=TODAY)

        assert result["status"] == NO_GAPS
        assert reports_api.calls == []

    def test_memory_high(self, engine, ctx, seller, memory_usage, reports_api):
        memory_usage["mb"] = 900.0
        result = backfill_seller(engine, ctx, seller, start=date(2024, 1, 7), end=date(2024, 2, 3), today=TODAY)
        assert result["status"] == MEMORY_HIGH
        assert reports_api.calls == []

    def test_metrics_outside_window_not_read(self, engine, ctx, tenant_db, seller):
        inside = add_metrics(tenant_db, "2024-01-07", "2024-01-13")
        before = add_metrics(tenant_db, "2023-06-04", "2023-06-10")
        after = add_metrics(tenant_db, "2024-01-28", "2024-02-03")

        result = backfill_seller(engine, ctx, seller, start=date(2024, 1, 7), end=date(2024, 1, 13), today=TODAY)

        assert result["status"] == NO_GAPS
        read = tenant_db.read_ids[db.METRICS_TABLE]
        assert inside["id"] in read
        assert before["id"] not in read
        assert after["id"] not in read
