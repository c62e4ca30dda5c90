"""
Tests for tenant scoping and the storage helpers.
"""

from datetime import date

import pytest

from conftest import SELLER_ID
from sqp_pull.utils import db
from sqp_pull.utils.models import (
    ActivityLogEntry,
    AggregateStatus,
    LogStatus,
    PeriodType,
    Tenant,
    range_key,
)

OLD = "2020-01-01T00:00:00+00:00"


class TestTenantScope:
    """Test isolated storage contexts."""

    def test_context_closes_after_block(self, tenant, tenant_db):
        opened = []

        def factory(url, key):
            opened.append((url, key))
            return tenant_db

        with db.tenant_scope(tenant, client_factory=factory) as ctx:
            assert ctx.is_active
            assert db.get_seller(ctx, SELLER_ID).amazon_seller_id == "A1SELLER"

        assert opened == [(tenant.supabase_url, "service-key")]
        assert not ctx.is_active
        with pytest.raises(db.TenantContextError):
            db.get_active_sellers(ctx)

    def test_context_closes_on_error(self, tenant, tenant_db):
        with pytest.raises(RuntimeError):
            with db.tenant_scope(tenant, client_factory=lambda u, k: tenant_db) as ctx:
                raise RuntimeError("boom")
        assert not ctx.is_active

    def test_missing_storage_credentials(self, tenant_db):
        tenant = Tenant(id="t9", name="Broken", supabase_url="", supabase_key="")
        with pytest.raises(ValueError, match="t9"):
            with db.tenant_scope(tenant, client_factory=lambda u, k: tenant_db):
                pass

    def test_master_client_requires_credentials(self):
        with pytest.raises(ValueError, match="SUPABASE_URL"):
            db.get_master_client(None, "key")


class TestTenantRegistry:
    """Test tenant ordering and round-robin bookkeeping."""

    def test_priority_then_least_recently_updated(self, master):
        master.add_row(db.TENANTS_TABLE, {
            "id": "t2", "supabase_url": "u", "supabase_key": "k",
            "is_priority": False, "is_active": True, "updated_at": OLD,
        })
        master.add_row(db.TENANTS_TABLE, {
            "id": "t3", "supabase_url": "u", "supabase_key": "k",
            "is_priority": True, "is_active": True, "updated_at": "2025-01-01T00:00:00+00:00",
        })
        master.add_row(db.TENANTS_TABLE, {
            "id": "t4", "supabase_url": "u", "supabase_key": "k",
            "is_priority": True, "is_active": False, "updated_at": OLD,
        })

        assert [t.id for t in db.list_tenants(master)] == ["t3", "t2", "t1"]

    def test_touch_moves_tenant_to_back(self, master):
        master.add_row(db.TENANTS_TABLE, {
            "id": "t2", "supabase_url": "u", "supabase_key": "k",
            "is_active": True, "updated_at": "2024-06-01T00:00:00+00:00",
        })

        db.touch_tenant(master, "t1")

        assert [t.id for t in db.list_tenants(master)] == ["t2", "t1"]


class TestActivityLog:
    """Test the per-unit activity log."""

    def test_upsert_keeps_one_row_per_unit(self, ctx, tenant_db):
        key = "2024-01-07 to 2024-01-13"
        db.upsert_activity_log(ctx, ActivityLogEntry(
            job_id="1", period_type=PeriodType.WEEK, range_key=key,
            action="request", status=LogStatus.PENDING,
        ))
        db.upsert_activity_log(ctx, ActivityLogEntry(
            job_id="1", period_type=PeriodType.WEEK, range_key=key,
            action="import", status=LogStatus.SUCCESS, report_id="R1",
        ))
        db.upsert_activity_log(ctx, ActivityLogEntry(
            job_id="1", period_type=PeriodType.MONTH, action="request",
        ))

        assert len(tenant_db.rows(db.ACTIVITY_LOGS_TABLE)) == 2
        entry = db.get_activity_log(ctx, "1", PeriodType.WEEK, key)
        assert entry.status == LogStatus.SUCCESS
        assert entry.report_id == "R1"
        assert len(db.get_activity_logs(ctx, "1", PeriodType.MONTH)) == 1

    def test_reset_retry_count(self, ctx):
        db.upsert_activity_log(ctx, ActivityLogEntry(
            job_id="1", period_type=PeriodType.WEEK, status=LogStatus.RETRYABLE, retry_count=3,
        ))

        db.reset_retry_count(ctx, "1", PeriodType.WEEK)

        entry = db.get_activity_log(ctx, "1", PeriodType.WEEK)
        assert entry.retry_count == 0
        assert entry.message == "Re-armed for retry"


class TestMetrics:
    """Test chunked metric inserts and existing-range lookups."""

    def test_insert_in_chunks(self, ctx, tenant_db):
        rows = [{"report_id": "R1", "n": i} for i in range(5)]

        assert db.insert_metrics(ctx, rows, chunk_size=2) == 5
        assert tenant_db.insert_calls[db.METRICS_TABLE] == 3
        assert db.count_metrics_for_report(ctx, "R1") == 5

    def test_failed_chunk_reports_rows_already_inserted(self, ctx, tenant_db):
        tenant_db.fail_inserts_after(db.METRICS_TABLE, 1)
        rows = [{"report_id": "R1", "n": i} for i in range(5)]

        with pytest.raises(db.MetricsInsertError) as exc_info:
            db.insert_metrics(ctx, rows, chunk_size=2)

        assert exc_info.value.inserted == 2

    def test_delete_for_report(self, ctx):
        db.insert_metrics(ctx, [{"report_id": "R1"}, {"report_id": "R2"}])
        assert db.delete_metrics_for_report(ctx, "R1") == 1
        assert db.count_metrics_for_report(ctx, "R2") == 1

    def test_existing_range_keys(self, ctx):
        db.insert_metrics(ctx, [
            {"seller_id": SELLER_ID, "period_type": "WEEK",
             "period_start": "2024-01-07", "period_end": "2024-01-13"},
            {"seller_id": SELLER_ID, "period_type": "WEEK",
             "period_start": "2024-01-07", "period_end": "2024-01-13"},
            {"seller_id": SELLER_ID, "period_type": "MONTH",
             "period_start": "2024-01-01", "period_end": "2024-01-31"},
            {"seller_id": "other", "period_type": "QUARTER",
             "period_start": "2024-01-01", "period_end": "2024-03-31"},
        ])

        existing = db.get_existing_range_keys(ctx, SELLER_ID)

        assert existing[PeriodType.WEEK] == {range_key(date(2024, 1, 7), date(2024, 1, 13))}
        assert existing[PeriodType.MONTH] == {"2024-01-01 to 2024-01-31"}
        assert existing[PeriodType.QUARTER] == set()

    def test_existing_range_keys_within_window(self, ctx):
        db.insert_metrics(ctx, [
            {"seller_id": SELLER_ID, "period_type": "WEEK",
             "period_start": "2023-12-31", "period_end": "2024-01-06"},
            {"seller_id": SELLER_ID, "period_type": "WEEK",
             "period_start": "2024-01-07", "period_end": "2024-01-13"},
            {"seller_id": SELLER_ID, "period_type": "MONTH",
             "period_start": "2024-01-01", "period_end": "2024-01-31"},
        ])

        existing = db.get_existing_range_keys(ctx, SELLER_ID, date(2024, 1, 1), date(2024, 1, 20))

        assert existing[PeriodType.WEEK] == {"2024-01-07 to 2024-01-13"}
        assert existing[PeriodType.MONTH] == set()


class TestCleanup:
    """Test retention cleanup."""

    def test_removes_only_old_finished_records(self, ctx, tenant_db):
        tenant_db.add_row(db.ACTIVITY_LOGS_TABLE, {"job_id": "1", "updated_at": OLD})
        tenant_db.add_row(db.ACTIVITY_LOGS_TABLE, {"job_id": "2", "updated_at": "2999-01-01T00:00:00+00:00"})
        tenant_db.add_row(db.JOBS_TABLE, {"overall_status": AggregateStatus.SUCCESS.value, "updated_at": OLD})
        tenant_db.add_row(db.JOBS_TABLE, {"overall_status": AggregateStatus.IN_PROGRESS.value, "updated_at": OLD})
        tenant_db.add_row(db.DOWNLOADS_TABLE, {"status": "COMPLETED", "updated_at": OLD})
        tenant_db.add_row(db.DOWNLOADS_TABLE, {"status": "FAILED", "updated_at": OLD})

        counts = db.cleanup_old_records(ctx, retention_days=30)

        assert counts == {
            db.ACTIVITY_LOGS_TABLE: 1,
            db.JOBS_TABLE: 1,
            db.DOWNLOADS_TABLE: 1,
        }
        assert tenant_db.rows(db.JOBS_TABLE)[0]["overall_status"] == "IN_PROGRESS"
