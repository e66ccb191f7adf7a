"""
Security monitoring.

- models: Security events, anomaly thresholds and findings, monitoring rules.
- store: SecurityEventStore protocol and the in-memory store.
- service: Rolling-window anomaly detection and event reporting.
"""

from .models import (
    AnomalousAccessReport,
    AnomalyFinding,
    AnomalyThresholds,
    MonitoringRule,
    SecurityEvent,
    SecurityEventType,
    Severity,
)
from .service import SecurityMonitorService, identity_key
from .store import InMemorySecurityEventStore, SecurityEventStore

__all__ = [
    "AnomalousAccessReport",
    "AnomalyFinding",
    "AnomalyThresholds",
    "MonitoringRule",
    "SecurityEvent",
    "SecurityEventType",
    "Severity",
    "SecurityMonitorService",
    "identity_key",
    "InMemorySecurityEventStore",
    "SecurityEventStore",
]
