"""
Isolation service for the Tenancy Isolation Layer.

Wires the context manager, access control, cache, audit log and security
monitor from settings and exposes the inbound ``evaluate_access`` call.
"""

import asyncio
from typing import Any, Dict, Optional, Union

from isolation_shared.config import IsolationSettings, get_settings
from isolation_shared.logging import configure_logging, get_logger, set_request_id
from isolation_shared.metrics import MetricsCollector

from .access.control import AccessControlService
from .access.models import EvaluationResponse, IdentityClaims, RequestMeta, ResourceDescriptor
from .access.rules import AccessRuleEngine
from .audit.models import AuditConfig
from .audit.service import AuditLogService
from .audit.store import AuditStore
from .cache.isolated_cache import IsolatedCache
from .cache.stores import CacheStore, InMemoryCacheStore, RedisCacheStore
from .cache.strategies import create_strategy
from .context.manager import IsolationContextManager
from .context.models import IsolationContext, IsolationLevel
from .monitor.models import AnomalyThresholds
from .monitor.service import SecurityMonitorService
from .monitor.store import SecurityEventStore


class IsolationService:
    """Isolation engine facade."""

    def __init__(
        self,
        settings: Optional[IsolationSettings] = None,
        cache_store: Optional[CacheStore] = None,
        audit_store: Optional[AuditStore] = None,
        event_store: Optional[SecurityEventStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger("isolation.service")
        self.metrics = metrics or MetricsCollector(self.settings.service_name)

        self.context_manager = IsolationContextManager(
            max_history_size=self.settings.max_history_size,
            metrics=self.metrics
        )
        self.rule_engine = AccessRuleEngine()
        self.audit_log = AuditLogService(
            store=audit_store,
            config=AuditConfig(
                enabled=self.settings.audit_enabled,
                retention_days=self.settings.audit_retention_days,
                timeout_seconds=self.settings.audit_timeout_seconds,
                fallback_size=self.settings.audit_fallback_size,
            ),
            metrics=self.metrics
        )
        self.security_monitor = SecurityMonitorService(
            store=event_store,
            thresholds=AnomalyThresholds(
                window_seconds=self.settings.monitor_window_seconds,
                max_access_rate=self.settings.monitor_max_access_rate,
                max_distinct_tenants=self.settings.monitor_max_distinct_tenants,
                max_denied_streak=self.settings.monitor_max_denied_streak,
            ),
            timeout=self.settings.monitor_timeout_seconds,
            metrics=self.metrics
        )
        self.access_control = AccessControlService(
            rule_engine=self.rule_engine,
            audit_log=self.audit_log,
            security_monitor=self.security_monitor,
            strict_containment=self.settings.strict_containment,
            metrics=self.metrics
        )
        self.cache = IsolatedCache(
            store=cache_store if cache_store is not None else self._default_cache_store(),
            strategy=create_strategy(self.settings.cache_strategy, default_ttl=self.settings.cache_default_ttl),
            max_size=self.settings.cache_max_size,
            default_ttl=self.settings.cache_default_ttl,
            prefix=self.settings.cache_prefix,
            timeout=self.settings.cache_timeout_seconds,
            metrics=self.metrics
        )

        self.maintenance_task: Optional[asyncio.Task] = None
        self.running = False

    def _default_cache_store(self) -> CacheStore:
        if self.settings.cache_backend == "redis":
            return RedisCacheStore(self.settings.redis_url)
        return InMemoryCacheStore()

    # Lifecycle

    async def start(self):
        """Connect the cache store and start background maintenance."""
        if self.running:
            return
        if isinstance(self.cache.store, RedisCacheStore):
            await self.cache.store.start()
        self.running = True
        self.maintenance_task = asyncio.create_task(self._maintenance_loop())
        self.logger.info("Isolation service started", sweep_interval=self.settings.sweep_interval_seconds)

    async def stop(self):
        """Stop background maintenance and release the cache store."""
        self.running = False
        if self.maintenance_task:
            self.maintenance_task.cancel()
            try:
                await self.maintenance_task
            except asyncio.CancelledError:
                pass
            self.maintenance_task = None
        if isinstance(self.cache.store, RedisCacheStore):
            await self.cache.store.stop()
        self.logger.info("Isolation service stopped")

    async def _maintenance_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.settings.sweep_interval_seconds)
                await self.run_maintenance()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Maintenance error", error=str(e))

    async def run_maintenance(self) -> Dict[str, int]:
        """Trim monitor windows, sweep the cache and replay buffered audit records once."""
        trimmed = self.security_monitor.trim_windows()
        swept = await self.cache.sweep()
        replayed = await self.audit_log.replay_fallback()
        self.logger.debug("Maintenance completed", trimmed=trimmed, swept=swept, replayed=replayed)
        return {"trimmed": trimmed, "swept": swept, "replayed": replayed}

    # Inbound boundary

    def build_context(self, claims: IdentityClaims) -> IsolationContext:
        """Build the caller context from verified claims.

        Raises:
            InvalidContextError: if the claims do not describe a valid position.
        """
        return self.context_manager.create(
            claims.tenant_id,
            claims.organization_id,
            claims.department_id,
            claims.user_id,
        )

    async def evaluate_access(
        self,
        claims: IdentityClaims,
        resource: ResourceDescriptor,
        required_level: Union[IsolationLevel, str],
        action: str = "access",
        request_meta: Optional[RequestMeta] = None,
    ) -> EvaluationResponse:
        """Decide whether the caller may perform ``action`` on ``resource``.

        Only ``InvalidContextError`` from building the caller or resource
        context propagates; every other failure is a denial with a reason.
        """
        if request_meta is not None and request_meta.request_id:
            set_request_id(request_meta.request_id)

        caller = self.build_context(claims)
        resource_context = resource.context.to_context()

        with self.context_manager.scope(caller):
            decision = await self.access_control.can_access(
                caller,
                resource_context,
                required_level,
                resource_ref=resource.ref(),
                action=action,
                request_meta=request_meta,
            )
        return decision.to_response()

    async def health_check(self) -> Dict[str, Any]:
        audit = self.audit_log.health_check()
        monitor = self.security_monitor.health_check()
        cache_ok = True
        if isinstance(self.cache.store, RedisCacheStore):
            cache_ok = await self.cache.store.health_check()

        healthy = cache_ok and audit["status"] == "healthy" and monitor["status"] == "healthy"
        return {
            "status": "healthy" if healthy else "degraded",
            "service": self.settings.service_name,
            "maintenance_running": self.running,
            "context_manager": self.context_manager.get_stats(),
            "access_rules": self.rule_engine.get_engine_stats(),
            "cache": {"healthy": cache_ok, **self.cache.stats()},
            "audit": audit,
            "monitor": monitor,
        }


def create_service(settings: Optional[IsolationSettings] = None, **components) -> IsolationService:
    """Configure logging and build an ``IsolationService``."""
    settings = settings or get_settings()
    configure_logging(settings.service_name, settings.log_level)
    return IsolationService(settings=settings, **components)
