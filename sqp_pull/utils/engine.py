"""
Pull Engine
Owns the long-lived collaborators of one process run and wires them into
per-seller pipelines.

The circuit breaker, rate limiter and memory gate are created once per
engine and injected wherever they are needed.
"""

import logging
from typing import Callable, List, Optional

from supabase import Client, create_client

from sqp_pull.config import Settings, load_settings
from sqp_pull.utils import db
from sqp_pull.utils.alerting import AlertManager
from sqp_pull.utils.api_client import SPAPIClient
from sqp_pull.utils.auth import CredentialProvider
from sqp_pull.utils.models import PeriodType, Seller, Tenant
from sqp_pull.utils.pipeline import PullPipeline
from sqp_pull.utils.resilience import CircuitBreaker, MemoryGate, RateLimiter
from sqp_pull.utils.retry import RetryExecutor
from sqp_pull.utils.sqp_reports import ReportsAPI

logger = logging.getLogger(__name__)


class PullEngine:
    """
    Shared state for a run.

    Usage:
        engine = PullEngine.from_settings(load_settings())
        for tenant in engine.list_tenants():
            with engine.tenant_scope(tenant) as ctx:
                pipeline = engine.pipeline_for(ctx, seller)
    """

    def __init__(
        self,
        settings: Settings,
        master: Optional[Client] = None,
        reports_api: Optional[ReportsAPI] = None,
        credentials: Optional[CredentialProvider] = None,
        alerts: Optional[AlertManager] = None,
        breaker: Optional[CircuitBreaker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        memory_gate: Optional[MemoryGate] = None,
        client_factory: Callable[[str, str], Client] = create_client
    ):
        self.settings = settings
        self._master = master
        self.client_factory = client_factory

        self.reports_api = reports_api or ReportsAPI(SPAPIClient(
            max_retries=settings.api_max_retries,
            timeout=settings.api_timeout,
        ))
        self.credentials = credentials or CredentialProvider(
            settings.lwa_client_id, settings.lwa_client_secret
        )
        self.alerts = alerts or AlertManager(slack_webhook=settings.slack_webhook_url)
        self.breaker = breaker or CircuitBreaker(
            threshold=settings.circuit_breaker_threshold,
            timeout=settings.circuit_breaker_timeout,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.memory_gate = memory_gate or MemoryGate(settings.max_memory_mb)
        self.executor = RetryExecutor(
            self.alerts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PullEngine":
        """Build an engine from environment settings, connecting to the master registry."""
        settings = settings or load_settings()
        master = db.get_master_client(settings.supabase_url, settings.supabase_key)
        return cls(settings, master=master)

    @property
    def master(self) -> Client:
        if self._master is None:
            self._master = db.get_master_client(self.settings.supabase_url, self.settings.supabase_key)
        return self._master

    @property
    def period_types(self) -> List[PeriodType]:
        return [PeriodType(p) for p in self.settings.period_types]

    def list_tenants(self) -> List[Tenant]:
        return db.list_tenants(self.master)

    def touch_tenant(self, tenant_id: str):
        db.touch_tenant(self.master, tenant_id)

    def tenant_scope(self, tenant: Tenant):
        return db.tenant_scope(tenant, client_factory=self.client_factory)

    def pipeline_for(self, ctx: db.TenantContext, seller: Seller) -> PullPipeline:
        return PullPipeline(
            ctx,
            seller,
            reports_api=self.reports_api,
            credentials=self.credentials,
            breaker=self.breaker,
            rate_limiter=self.rate_limiter,
            executor=self.executor,
            settings=self.settings,
        )
