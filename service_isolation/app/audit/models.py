"""
Audit log data models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class AuditResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


ACCESS_VALIDATION = "ACCESS_VALIDATION"

DEFAULT_AUDIT_FIELDS = (
    "id",
    "action",
    "resource",
    "user_id",
    "tenant_id",
    "timestamp",
)

CSV_FIELDS = (
    "id",
    "action",
    "resource",
    "resource_id",
    "user_id",
    "tenant_id",
    "organization_id",
    "department_id",
    "result",
    "ip_address",
    "user_agent",
    "timestamp",
)


@dataclass
class AuditRecord:
    """Append-only audit entry."""
    id: str
    action: str
    resource: str
    resource_id: str
    user_id: str
    tenant_id: Optional[str]
    result: AuditResult
    organization_id: Optional[str] = None
    department_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
            "department_id": self.department_id,
            "result": self.result.value,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditQueryFilters(BaseModel):
    """Audit query filters; unset fields do not constrain."""
    tenant_id: Optional[str] = Field(None, description="Tenant ID")
    organization_id: Optional[str] = Field(None, description="Organization ID")
    department_id: Optional[str] = Field(None, description="Department ID")
    user_id: Optional[str] = Field(None, description="User ID")
    action: Optional[str] = Field(None, description="Audited action")
    resource: Optional[str] = Field(None, description="Resource type")
    result: Optional[AuditResult] = Field(None, description="Result")
    start_time: Optional[datetime] = Field(None, description="Inclusive lower bound")
    end_time: Optional[datetime] = Field(None, description="Inclusive upper bound")
    limit: int = Field(100, ge=0, description="Maximum records returned")
    offset: int = Field(0, ge=0, description="Records skipped")

    def matches(self, record: AuditRecord) -> bool:
        for name in ("tenant_id", "organization_id", "department_id", "user_id", "action", "resource"):
            expected = getattr(self, name)
            if expected is not None and getattr(record, name) != expected:
                return False
        if self.result is not None and record.result != self.result:
            return False
        if self.start_time is not None and as_utc(record.timestamp) < as_utc(self.start_time):
            return False
        if self.end_time is not None and as_utc(record.timestamp) > as_utc(self.end_time):
            return False
        return True


class AuditConfig(BaseModel):
    """Runtime audit configuration."""
    enabled: bool = True
    retention_days: int = Field(90, ge=1)
    timeout_seconds: float = Field(2.0, gt=0)
    fallback_size: int = Field(1000, ge=0)
    audit_fields: List[str] = Field(default_factory=lambda: list(DEFAULT_AUDIT_FIELDS))
