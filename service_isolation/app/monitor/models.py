"""
Security monitor data models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..context.models import IsolationContext


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    RATE_ANOMALY = "RATE_ANOMALY"
    CROSS_TENANT_ANOMALY = "CROSS_TENANT_ANOMALY"
    REPEATED_DENIAL = "REPEATED_DENIAL"
    RULE_VIOLATION = "RULE_VIOLATION"
    MANUAL = "MANUAL"


ANOMALY_EVENT_TYPES = (
    SecurityEventType.REPEATED_DENIAL,
    SecurityEventType.CROSS_TENANT_ANOMALY,
    SecurityEventType.RATE_ANOMALY,
)


@dataclass
class SecurityEvent:
    """Append-only security event."""
    id: str
    type: SecurityEventType
    severity: Severity
    description: str
    context: Optional[IsolationContext] = None
    timestamp: datetime = field(default_factory=_utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def tenant_id(self) -> Optional[str]:
        return self.context.tenant_id if self.context else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "context": self.context.build_log_context() if self.context else None,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass
class AnomalyThresholds:
    window_seconds: float = 300
    max_access_rate: int = 100
    max_distinct_tenants: int = 3
    max_denied_streak: int = 5


@dataclass
class AnomalyFinding:
    """The anomaly rule that fired for an attempt."""
    event_type: SecurityEventType
    severity: Severity
    identity: str
    observed: int
    threshold: int
    event_id: Optional[str] = None


@dataclass
class MonitoringRule:
    """Frequency rule over (identity, resource type, action) attempts.

    ``resource_type`` and ``action`` accept ``*`` as a wildcard.
    """
    rule_id: str
    name: str
    threshold: int
    alert_level: Severity = Severity.MEDIUM
    condition: str = "frequency"
    resource_type: str = "*"
    action: str = "*"
    enabled: bool = True

    def applies_to(self, resource_type: str, action: str) -> bool:
        return (
            self.enabled
            and self.resource_type in ("*", resource_type)
            and self.action in ("*", action)
        )


@dataclass
class AnomalousAccessReport:
    anomalous_access_count: int
    high_risk_access: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
