"""
Access control package.

- comparator: Level ordering and hierarchy containment (pure functions).
- rules: Policy rules keyed by resource type and action.
- control: Deny-by-default decisions wired to the monitor and audit log.
- models: Decisions, reason codes and boundary request/response models.
"""

from .comparator import compare, has_required_level, check_resource_access
from .control import AccessControlService
from .models import (
    AccessDecision,
    AccessRule,
    EvaluationResponse,
    IdentityClaims,
    PermissionSummary,
    ReasonCode,
    RequestMeta,
    ResourceDescriptor,
    ResourceRef,
    ResourceScope,
    RuleAction,
    RuleCondition,
    RuleConditionOperator,
)
from .rules import AccessRuleEngine

__all__ = [
    "compare",
    "has_required_level",
    "check_resource_access",
    "AccessControlService",
    "AccessDecision",
    "AccessRule",
    "AccessRuleEngine",
    "EvaluationResponse",
    "IdentityClaims",
    "PermissionSummary",
    "ReasonCode",
    "RequestMeta",
    "ResourceDescriptor",
    "ResourceRef",
    "ResourceScope",
    "RuleAction",
    "RuleCondition",
    "RuleConditionOperator",
]
