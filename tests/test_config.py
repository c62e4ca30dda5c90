"""
Tests for environment-driven settings.
"""

import pytest

from sqp_pull.config import DEFAULT_PERIOD_TYPES, load_settings


class TestLoadSettings:
    """Test reading Settings from an environment mapping."""

    def test_defaults(self):
        settings = load_settings({})

        assert settings.retry_base_delay == 1.0
        assert settings.retry_max_delay == 10.0
        assert settings.initial_delay_seconds == 30.0
        assert settings.poll_max_delay == 120.0
        assert settings.circuit_breaker_threshold == 5
        assert settings.rate_limit_max_requests == 100
        assert settings.max_memory_mb == 500
        assert settings.stuck_grace_hours == 6.0
        assert settings.max_asins_per_request == 20
        assert settings.period_types == DEFAULT_PERIOD_TYPES
        assert settings.slack_webhook_url is None

    def test_overrides(self):
        settings = load_settings({
            "SUPABASE_URL": "https://master.supabase.co",
            "SUPABASE_SERVICE_KEY": "key",
            "SP_LWA_CLIENT_ID": "client",
            "RETRY_BASE_DELAY_SECONDS": "0.5",
            "CIRCUIT_BREAKER_THRESHOLD": "3",
            "MAX_MEMORY_MB": "1024",
            "REPORT_PERIOD_TYPES": "week, month",
            "SLACK_WEBHOOK_URL": "https://hooks.slack.com/x",
        })

        assert settings.supabase_url == "https://master.supabase.co"
        assert settings.lwa_client_id == "client"
        assert settings.retry_base_delay == 0.5
        assert settings.circuit_breaker_threshold == 3
        assert settings.max_memory_mb == 1024
        assert settings.period_types == ["WEEK", "MONTH"]
        assert settings.slack_webhook_url == "https://hooks.slack.com/x"

    def test_empty_value_falls_back_to_default(self):
        assert load_settings({"MAX_MEMORY_MB": ""}).max_memory_mb == 500

    def test_bad_integer(self):
        with pytest.raises(ValueError, match="MAX_MEMORY_MB"):
            load_settings({"MAX_MEMORY_MB": "lots"})

    def test_bad_period_type(self):
        with pytest.raises(ValueError, match="YEAR"):
            load_settings({"REPORT_PERIOD_TYPES": "WEEK,YEAR"})

    def test_reads_os_environ_by_default(self, monkeypatch):
        monkeypatch.setenv("STUCK_GRACE_HOURS", "2")
        assert load_settings().stuck_grace_hours == 2.0
