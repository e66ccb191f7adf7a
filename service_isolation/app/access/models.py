"""
Access control data models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..context.models import IsolationContext, IsolationLevel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReasonCode(str, Enum):
    """Machine-readable decision reasons."""
    ALLOWED = "ALLOWED"
    INSUFFICIENT_LEVEL = "INSUFFICIENT_LEVEL"
    CROSS_BOUNDARY = "CROSS_BOUNDARY"
    RULE_DENIED = "RULE_DENIED"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    EVALUATION_ERROR = "EVALUATION_ERROR"


class RuleAction(str, Enum):
    """Rule effect."""
    ALLOW = "allow"
    DENY = "deny"


class RuleConditionOperator(str, Enum):
    """Rule condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


@dataclass
class RuleCondition:
    """Condition over a context field (tenant_id, sharing_level, is_shared, ...)."""
    field: str
    operator: RuleConditionOperator
    value: Union[str, bool, List[str]]
    description: Optional[str] = None


@dataclass
class AccessRule:
    """Policy rule for a resource type and action."""
    rule_id: str
    resource_type: str
    action: str
    effect: RuleAction = RuleAction.ALLOW
    name: Optional[str] = None
    description: Optional[str] = None
    conditions: List[RuleCondition] = field(default_factory=list)
    priority: int = 0
    enabled: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    @property
    def allow(self) -> bool:
        return self.effect == RuleAction.ALLOW

    @property
    def key(self) -> str:
        return f"{self.resource_type}:{self.action}"


@dataclass
class EvaluationResult:
    """Result of rule evaluation; ``allowed`` is None when no rule matched."""
    allowed: Optional[bool]
    reason: Optional[str] = None
    matched_rules: List[str] = field(default_factory=list)
    evaluation_time_ms: float = 0.0


@dataclass(frozen=True)
class ResourceRef:
    """Resource identity as seen by audit and monitoring."""
    type: str
    id: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "id": self.id}


@dataclass
class AccessDecision:
    """Outcome of one access evaluation."""
    allowed: bool
    reason: ReasonCode
    caller_context: Optional[IsolationContext]
    resource_context: Optional[IsolationContext]
    resource: ResourceRef
    action: str
    required_level: Optional[IsolationLevel] = None
    anomaly_type: Optional[str] = None
    matched_rule: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_response(self) -> "EvaluationResponse":
        return EvaluationResponse(
            allowed=self.allowed,
            reason=self.reason,
            anomaly_type=self.anomaly_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "caller_context": self.caller_context.build_log_context() if self.caller_context else None,
            "resource_context": self.resource_context.build_log_context() if self.resource_context else None,
            "resource": self.resource.to_dict(),
            "action": self.action,
            "required_level": self.required_level.value if self.required_level else None,
            "anomaly_type": self.anomaly_type,
            "matched_rule": self.matched_rule,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PermissionSummary:
    """Rule-derived permissions for a context."""
    allowed_actions: List[str] = field(default_factory=list)
    denied_actions: List[str] = field(default_factory=list)
    resource_permissions: Dict[str, List[str]] = field(default_factory=dict)
    permission_level: str = "READ"


class IdentityClaims(BaseModel):
    """Verified identity claims supplied by the transport layer."""
    tenant_id: Optional[str] = Field(None, description="Tenant ID")
    organization_id: Optional[str] = Field(None, description="Organization ID")
    department_id: Optional[str] = Field(None, description="Department ID")
    user_id: Optional[str] = Field(None, description="User ID")


class ResourceScope(BaseModel):
    """Hierarchy position of a resource."""
    tenant_id: Optional[str] = Field(None, description="Owning tenant")
    organization_id: Optional[str] = Field(None, description="Owning organization")
    department_id: Optional[str] = Field(None, description="Owning department")
    user_id: Optional[str] = Field(None, description="Owning user")
    is_shared: bool = Field(False, description="Shared within its own scope")

    def to_context(self) -> IsolationContext:
        context = IsolationContext.from_identifiers(
            self.tenant_id, self.organization_id, self.department_id, self.user_id
        )
        return context.shared() if self.is_shared else context


class ResourceDescriptor(BaseModel):
    """Target resource of an access evaluation."""
    type: str = Field(..., description="Resource type")
    id: str = Field("", description="Resource ID")
    context: ResourceScope = Field(default_factory=ResourceScope, description="Resource hierarchy position")

    def ref(self) -> ResourceRef:
        return ResourceRef(type=self.type, id=self.id)


class RequestMeta(BaseModel):
    """Request metadata recorded with audit entries."""
    ip_address: str = Field("unknown", description="Caller IP address")
    user_agent: str = Field("unknown", description="Caller user agent")
    request_id: Optional[str] = Field(None, description="Correlation ID")


class EvaluationResponse(BaseModel):
    """Decision returned across the inbound boundary."""
    allowed: bool = Field(..., description="Whether the action is allowed")
    reason: ReasonCode = Field(..., description="Machine-readable reason")
    anomaly_type: Optional[str] = Field(None, description="Anomaly rule that fired, if any")
