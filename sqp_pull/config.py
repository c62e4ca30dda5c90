"""
Configuration Module
Runtime settings for the SQP pull orchestrator, loaded from environment variables.

Every knob has a default so a bare environment only needs the Supabase and
LWA credentials to run.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

# Fixed retry cap for any single report/range. Not configurable.
MAX_RETRIES = 3

# Amazon accepts at most 200 characters of space-joined ASINs per SQP request
ASIN_CHAR_LIMIT = 200

DEFAULT_PERIOD_TYPES = ["WEEK", "MONTH", "QUARTER"]


@dataclass
class Settings:
    """Runtime configuration for a pull run."""

    # Master registry (tenant list)
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # Login With Amazon app credentials
    lwa_client_id: Optional[str] = None
    lwa_client_secret: Optional[str] = None

    # HTTP transport
    api_max_retries: int = 2
    api_timeout: int = 30

    # Retry executor backoff (ordinary failures)
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Report polling backoff ("not ready yet")
    initial_delay_seconds: float = 30.0
    poll_max_delay: float = 120.0

    # Pause between report requests within one run
    request_delay_seconds: float = 30.0

    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 60.0

    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: float = 60.0

    max_memory_mb: int = 500

    retry_cooldown_days: int = 3
    stuck_grace_hours: float = 6.0

    max_asins_per_request: int = 20
    period_types: List[str] = field(default_factory=lambda: list(DEFAULT_PERIOD_TYPES))

    reports_dir: str = "reports"
    metrics_insert_chunk: int = 500
    log_retention_days: int = 30

    slack_webhook_url: Optional[str] = None


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {value!r}")


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}")


def _get_period_types(env: Mapping[str, str]) -> List[str]:
    raw = env.get("REPORT_PERIOD_TYPES")
    if not raw:
        return list(DEFAULT_PERIOD_TYPES)

    period_types = []
    for item in raw.split(","):
        item = item.strip().upper()
        if not item:
            continue
        if item not in DEFAULT_PERIOD_TYPES:
            raise ValueError(f"Invalid period type in REPORT_PERIOD_TYPES: {item}")
        period_types.append(item)
    return period_types


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        Populated Settings instance

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    env = os.environ if env is None else env

    return Settings(
        supabase_url=env.get("SUPABASE_URL"),
        supabase_key=env.get("SUPABASE_SERVICE_KEY"),
        lwa_client_id=env.get("SP_LWA_CLIENT_ID"),
        lwa_client_secret=env.get("SP_LWA_CLIENT_SECRET"),
        api_max_retries=_get_int(env, "SP_API_MAX_RETRIES", 2),
        api_timeout=_get_int(env, "SP_API_TIMEOUT", 30),
        retry_base_delay=_get_float(env, "RETRY_BASE_DELAY_SECONDS", 1.0),
        retry_max_delay=_get_float(env, "RETRY_MAX_DELAY_SECONDS", 10.0),
        initial_delay_seconds=_get_float(env, "INITIAL_DELAY_SECONDS", 30.0),
        poll_max_delay=_get_float(env, "POLL_MAX_DELAY_SECONDS", 120.0),
        request_delay_seconds=_get_float(env, "REQUEST_DELAY_SECONDS", 30.0),
        circuit_breaker_threshold=_get_int(env, "CIRCUIT_BREAKER_THRESHOLD", 5),
        circuit_breaker_timeout=_get_float(env, "CIRCUIT_BREAKER_TIMEOUT_SECONDS", 60.0),
        rate_limit_max_requests=_get_int(env, "RATE_LIMIT_PER_MINUTE", 100),
        rate_limit_window_seconds=_get_float(env, "RATE_LIMIT_WINDOW_SECONDS", 60.0),
        max_memory_mb=_get_int(env, "MAX_MEMORY_MB", 500),
        retry_cooldown_days=_get_int(env, "RETRY_COOLDOWN_DAYS", 3),
        stuck_grace_hours=_get_float(env, "STUCK_GRACE_HOURS", 6.0),
        max_asins_per_request=_get_int(env, "MAX_ASINS_PER_REQUEST", 20),
        period_types=_get_period_types(env),
        reports_dir=env.get("REPORTS_DIR", "reports"),
        metrics_insert_chunk=_get_int(env, "METRICS_INSERT_CHUNK", 500),
        log_retention_days=_get_int(env, "LOG_RETENTION_DAYS", 30),
        slack_webhook_url=env.get("SLACK_WEBHOOK_URL"),
    )
