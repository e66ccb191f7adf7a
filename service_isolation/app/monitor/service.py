"""
Security monitor service.

Keeps a rolling window of access attempts per caller identity and flags
anomalous patterns: a denied-access streak, spread across tenants, and
raw access rate. Findings are emitted as security events and turned into
automatic denials by the access control service.
"""

import asyncio
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional

from isolation_shared.errors import ServiceError
from isolation_shared.logging import get_logger
from isolation_shared.metrics import MetricsCollector
from ..access.models import ResourceRef
from ..context.models import IsolationContext
from .models import (
    ANOMALY_EVENT_TYPES,
    AnomalousAccessReport,
    AnomalyFinding,
    AnomalyThresholds,
    MonitoringRule,
    SecurityEvent,
    SecurityEventType,
    Severity,
)
from .store import InMemorySecurityEventStore, SecurityEventStore


def identity_key(context: IsolationContext) -> str:
    """Caller identity: tenant-qualified user id, else the scope path.

    User ids are only unique within a tenant, so ``admin`` in t1 and
    ``admin`` in t2 are tracked as ``t1:admin`` and ``t2:admin``.
    """
    if context.user_id:
        return f"{context.tenant_id or 'platform'}:{context.user_id}"
    return context.scope_path()


@dataclass
class _Attempt:
    timestamp: float
    tenant_id: Optional[str]
    resource_type: str
    action: str


@dataclass
class _Streak:
    count: int = 0
    last_denied: float = 0.0


_RECOMMENDATIONS = {
    SecurityEventType.REPEATED_DENIAL: "Review repeated denials and confirm the caller's assigned scope",
    SecurityEventType.CROSS_TENANT_ANOMALY: "Investigate identities reaching across tenants for credential misuse",
    SecurityEventType.RATE_ANOMALY: "Apply rate limits to high-volume identities",
}


class SecurityMonitorService:
    """Rolling-window anomaly detection over access attempts."""

    def __init__(
        self,
        store: Optional[SecurityEventStore] = None,
        thresholds: Optional[AnomalyThresholds] = None,
        timeout: float = 2.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.logger = get_logger("isolation.security_monitor")
        self.store = store if store is not None else InMemorySecurityEventStore()
        self.thresholds = thresholds or AnomalyThresholds()
        self.timeout = timeout
        self.metrics = metrics
        self._windows: Dict[str, Deque[_Attempt]] = {}
        self._streaks: Dict[str, _Streak] = {}
        self._rules: List[MonitoringRule] = []
        self._lock = threading.Lock()
        self._now = time.time
        self._recorded = 0
        self._record_failures = 0

    # Attempts

    async def monitor_access(
        self,
        context: IsolationContext,
        resource: ResourceRef,
        action: str,
        target_tenant_id: Optional[str] = None,
    ) -> None:
        """Add an attempt to the caller's window and apply monitoring rules.

        ``target_tenant_id`` is the tenant owning the resource; the caller's
        own tenant is used when it is not given.
        """
        key = identity_key(context)
        now = self._now()
        attempt = _Attempt(
            timestamp=now,
            tenant_id=target_tenant_id or context.tenant_id,
            resource_type=resource.type,
            action=action,
        )
        with self._lock:
            window = self._windows.setdefault(key, deque())
            window.append(attempt)
            self._prune(window, now)
            rules = list(self._rules)

        self.logger.debug("Access attempt recorded", identity=key, resource_type=resource.type, action=action)

        for rule in rules:
            if rule.applies_to(resource.type, action):
                await self._evaluate_rule(rule, context, key, resource, action)

    def record_outcome(self, context: IsolationContext, allowed: bool) -> None:
        """Track the denied streak; an allowed attempt resets it."""
        key = identity_key(context)
        with self._lock:
            if allowed:
                self._streaks.pop(key, None)
                return
            streak = self._streaks.setdefault(key, _Streak())
            streak.count += 1
            streak.last_denied = self._now()

    async def detect_anomalous_access(
        self,
        context: IsolationContext,
        resource: Optional[ResourceRef] = None,
    ) -> Optional[AnomalyFinding]:
        """Check the anomaly rules for the caller; emit one event for the first that fires."""
        key = identity_key(context)
        now = self._now()
        limits = self.thresholds

        with self._lock:
            window = self._windows.get(key, deque())
            self._prune(window, now)
            attempts = len(window)
            tenants = {a.tenant_id for a in window if a.tenant_id}
            streak = self._streaks.get(key)
            denied = streak.count if streak and now - streak.last_denied <= limits.window_seconds else 0

        finding = None
        if denied >= limits.max_denied_streak:
            finding = AnomalyFinding(
                SecurityEventType.REPEATED_DENIAL, Severity.HIGH, key, denied, limits.max_denied_streak
            )
            description = f"Repeated denied access: {denied} consecutive denials"
        elif len(tenants) > limits.max_distinct_tenants:
            finding = AnomalyFinding(
                SecurityEventType.CROSS_TENANT_ANOMALY, Severity.HIGH, key, len(tenants), limits.max_distinct_tenants
            )
            description = f"Cross-tenant access: {len(tenants)} distinct tenants in window"
        elif attempts > limits.max_access_rate:
            finding = AnomalyFinding(
                SecurityEventType.RATE_ANOMALY, Severity.MEDIUM, key, attempts, limits.max_access_rate
            )
            description = f"Access rate anomaly: {attempts} attempts in window"

        if finding is None:
            return None

        event = SecurityEvent(
            id=self._event_id(),
            type=finding.event_type,
            severity=finding.severity,
            description=description,
            context=context,
            details={
                "identity": key,
                "observed": finding.observed,
                "threshold": finding.threshold,
                "window_seconds": limits.window_seconds,
                "resource": resource.to_dict() if resource else None,
            },
        )
        finding.event_id = event.id
        await self.record_security_event(event)

        self.logger.warning(
            "Anomalous access detected",
            identity=key,
            event_type=finding.event_type.value,
            severity=finding.severity.value
        )
        return finding

    def _prune(self, window: Deque[_Attempt], now: float) -> int:
        """Drop attempts older than the window. Caller holds the lock."""
        cutoff = now - self.thresholds.window_seconds
        dropped = 0
        while window and window[0].timestamp < cutoff:
            window.popleft()
            dropped += 1
        return dropped

    # Monitoring rules

    def set_monitoring_rules(self, rules: Iterable[MonitoringRule]) -> None:
        with self._lock:
            self._rules = list(rules)
        self.logger.info("Monitoring rules updated", count=len(self._rules))

    def get_monitoring_rules(self) -> List[MonitoringRule]:
        with self._lock:
            return list(self._rules)

    async def _evaluate_rule(
        self,
        rule: MonitoringRule,
        context: IsolationContext,
        key: str,
        resource: ResourceRef,
        action: str,
    ) -> None:
        if rule.condition != "frequency":
            self.logger.debug("Unsupported monitoring rule condition", rule_id=rule.rule_id, condition=rule.condition)
            return

        with self._lock:
            window = self._windows.get(key, ())
            count = sum(1 for a in window if a.resource_type == resource.type and a.action == action)

        if count > rule.threshold:
            await self.record_security_event(SecurityEvent(
                id=self._event_id(),
                type=SecurityEventType.RULE_VIOLATION,
                severity=rule.alert_level,
                description=f"Monitoring rule violated: {rule.name}",
                context=context,
                details={
                    "rule_id": rule.rule_id,
                    "rule_name": rule.name,
                    "condition": rule.condition,
                    "threshold": rule.threshold,
                    "actual_value": count,
                    "resource": resource.to_dict(),
                    "action": action,
                },
            ))

    # Events

    async def record_security_event(self, event: SecurityEvent) -> bool:
        """Persist and log an event. Failures are logged, never raised."""
        try:
            await asyncio.wait_for(self.store.append(event), timeout=self.timeout)
        except Exception as e:
            with self._lock:
                self._record_failures += 1
            self.logger.error("Failed to record security event", error=str(e) or type(e).__name__, security_event=event.to_dict())
            return False

        with self._lock:
            self._recorded += 1
        if self.metrics:
            self.metrics.increment_counter(
                "security_events_total", event_type=event.type.value, severity=event.severity.value
            )

        self.logger.info(
            "Security event recorded",
            event_id=event.id,
            event_type=event.type.value,
            severity=event.severity.value
        )
        if event.severity == Severity.CRITICAL:
            self.logger.critical("Security alert", alert_id=f"security_alert_{event.id}", security_event=event.to_dict())
        return True

    async def _events(self, start_time: Optional[datetime], end_time: Optional[datetime]) -> List[SecurityEvent]:
        try:
            return await asyncio.wait_for(self.store.query(start_time, end_time), timeout=self.timeout)
        except Exception as e:
            self.logger.error("Security event query failed", error=str(e))
            raise ServiceError("Security event query failed", {"error": str(e)})

    async def get_security_event_stats(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        events = await self._events(start_time, end_time)

        by_severity: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        by_tenant: Dict[str, int] = {}
        for event in events:
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
            by_type[event.type.value] = by_type.get(event.type.value, 0) + 1
            tenant = event.tenant_id or "platform"
            by_tenant[tenant] = by_tenant.get(tenant, 0) + 1

        return {
            "total": len(events),
            "by_severity": by_severity,
            "by_type": by_type,
            "by_tenant": by_tenant,
            "period": {
                "start_time": start_time.isoformat() if start_time else None,
                "end_time": end_time.isoformat() if end_time else None,
            },
        }

    async def get_anomalous_access_report(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> AnomalousAccessReport:
        events = [e for e in await self._events(start_time, end_time) if e.type in ANOMALY_EVENT_TYPES]

        high_risk = [
            {
                "identity": event.details.get("identity"),
                "context": event.context.build_log_context() if event.context else {},
                "resource": event.details.get("resource") or "unknown",
                "risk_level": event.severity.value,
                "event_type": event.type.value,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in events
            if event.severity in (Severity.HIGH, Severity.CRITICAL)
        ]

        recommendations: List[str] = []
        for event_type in ANOMALY_EVENT_TYPES:
            if any(e.type == event_type for e in events):
                recommendations.append(_RECOMMENDATIONS[event_type])
        if events:
            recommendations.append("Review audit logs for the affected identities")

        return AnomalousAccessReport(
            anomalous_access_count=len(events),
            high_risk_access=high_risk,
            recommendations=recommendations,
        )

    # Maintenance

    def trim_windows(self, now: Optional[float] = None) -> int:
        """Drop expired attempts, empty windows and stale streaks. Idempotent."""
        now = now if now is not None else self._now()
        dropped = 0
        with self._lock:
            for key in list(self._windows):
                window = self._windows[key]
                dropped += self._prune(window, now)
                if not window:
                    del self._windows[key]
            for key in list(self._streaks):
                if now - self._streaks[key].last_denied > self.thresholds.window_seconds:
                    del self._streaks[key]
        if dropped:
            self.logger.debug("Monitor windows trimmed", dropped=dropped)
        return dropped

    def reset_identity(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
            self._streaks.pop(key, None)
        self.logger.info("Monitor state reset", identity=key)

    def window_size(self, key: str) -> int:
        with self._lock:
            return len(self._windows.get(key, ()))

    def denied_streak(self, key: str) -> int:
        with self._lock:
            streak = self._streaks.get(key)
            return streak.count if streak else 0

    def health_check(self) -> Dict[str, Any]:
        with self._lock:
            identities = len(self._windows)
            attempts = sum(len(w) for w in self._windows.values())
            recorded, failures = self._recorded, self._record_failures
        return {
            "status": "healthy" if failures == 0 else "degraded",
            "tracked_identities": identities,
            "tracked_attempts": attempts,
            "events_recorded": recorded,
            "event_failures": failures,
            "monitoring_rules": len(self._rules),
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def _event_id() -> str:
        return f"sec_{uuid.uuid4().hex}"
