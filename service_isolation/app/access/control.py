"""
Access control service.

Combines the level comparator, containment check, caller access rules,
policy rules, the security monitor and the audit log into a single
deny-by-default decision.
"""

import time
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from isolation_shared.errors import AnomalyDetectedError, CrossBoundaryAccessError, ServiceError
from isolation_shared.logging import get_logger
from isolation_shared.metrics import MetricsCollector
from ..context.manager import default_level_access
from ..context.models import IsolationContext, IsolationLevel
from .comparator import check_resource_access, compare, has_required_level
from .models import AccessDecision, PermissionSummary, ReasonCode, RequestMeta, ResourceRef
from .rules import AccessRuleEngine

if TYPE_CHECKING:
    from ..audit.service import AuditLogService
    from ..monitor.service import SecurityMonitorService


PERMISSION_LEVELS = {
    IsolationLevel.PLATFORM: "OWNER",
    IsolationLevel.TENANT: "ADMIN",
    IsolationLevel.ORGANIZATION: "WRITE",
    IsolationLevel.DEPARTMENT: "WRITE",
    IsolationLevel.USER: "READ",
}

BatchItem = Union[Tuple[str, str, str], Mapping[str, str]]


class AccessControlService:
    """Deny-by-default access decisions over isolation contexts."""

    def __init__(
        self,
        rule_engine: Optional[AccessRuleEngine] = None,
        audit_log: Optional["AuditLogService"] = None,
        security_monitor: Optional["SecurityMonitorService"] = None,
        strict_containment: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.logger = get_logger("isolation.access_control")
        self.rule_engine = rule_engine or AccessRuleEngine()
        self.audit_log = audit_log
        self.security_monitor = security_monitor
        self.strict_containment = strict_containment
        self.metrics = metrics

    # Comparator passthroughs

    @staticmethod
    def compare(a, b) -> int:
        return compare(a, b)

    @staticmethod
    def has_required_level(caller, required) -> bool:
        return has_required_level(caller, required)

    def check_resource_access(
        self,
        caller: IsolationContext,
        resource: IsolationContext,
        strict: Optional[bool] = None,
    ) -> bool:
        if strict is None:
            strict = self.strict_containment
        return check_resource_access(caller, resource, strict=strict)

    # Decisions

    async def can_access(
        self,
        caller: IsolationContext,
        resource: IsolationContext,
        required_level: IsolationLevel,
        resource_ref: Optional[ResourceRef] = None,
        action: str = "access",
        request_meta: Optional[RequestMeta] = None,
    ) -> AccessDecision:
        """Evaluate one access attempt.

        Never raises: any failure on the decision path yields a denial with
        ``EVALUATION_ERROR``.
        """
        start_time = time.time()
        resource_ref = resource_ref or ResourceRef(type="resource")

        try:
            finding = None
            if self.security_monitor is not None:
                await self.security_monitor.monitor_access(
                    caller, resource_ref, action, target_tenant_id=resource.tenant_id
                )
                finding = await self.security_monitor.detect_anomalous_access(caller, resource_ref)

            decision = self._decide(caller, resource, required_level, resource_ref, action, finding)

        except Exception as e:
            self.logger.error(
                "Access evaluation error",
                resource_type=resource_ref.type,
                action=action,
                error=str(e)
            )
            if self.metrics:
                self.metrics.record_error(type(e).__name__)
            decision = AccessDecision(
                allowed=False,
                reason=ReasonCode.EVALUATION_ERROR,
                caller_context=caller if isinstance(caller, IsolationContext) else None,
                resource_context=resource if isinstance(resource, IsolationContext) else None,
                resource=resource_ref,
                action=action,
            )

        await self._after_decision(decision, request_meta)

        try:
            if self.metrics:
                self.metrics.record_decision(decision.allowed, decision.reason.value, time.time() - start_time)

            self.logger.info(
                "Access decision",
                allowed=decision.allowed,
                reason=decision.reason.value,
                resource_type=resource_ref.type,
                resource_id=resource_ref.id,
                action=action
            )
        except Exception as e:
            self.logger.error("Failed to record access decision", error=str(e))

        return decision

    async def is_allowed(
        self,
        caller: IsolationContext,
        resource: IsolationContext,
        required_level: IsolationLevel,
        resource_ref: Optional[ResourceRef] = None,
        action: str = "access",
        request_meta: Optional[RequestMeta] = None,
    ) -> bool:
        decision = await self.can_access(caller, resource, required_level, resource_ref, action, request_meta)
        return decision.allowed

    async def ensure_access(
        self,
        caller: IsolationContext,
        resource: IsolationContext,
        required_level: IsolationLevel,
        resource_ref: Optional[ResourceRef] = None,
        action: str = "access",
        request_meta: Optional[RequestMeta] = None,
    ) -> AccessDecision:
        """Like ``can_access`` but raise on denial.

        Raises:
            AnomalyDetectedError: the monitor flagged the attempt.
            CrossBoundaryAccessError: any policy denial.
            ServiceError: the evaluation itself failed.
        """
        decision = await self.can_access(caller, resource, required_level, resource_ref, action, request_meta)
        if decision.allowed:
            return decision

        details = {"reason": decision.reason.value, "resource_type": decision.resource.type, "action": action}
        if decision.reason == ReasonCode.ANOMALY_DETECTED:
            details["anomaly_type"] = decision.anomaly_type
            raise AnomalyDetectedError(details=details)
        if decision.reason == ReasonCode.EVALUATION_ERROR:
            raise ServiceError("Access evaluation failed", details)
        raise CrossBoundaryAccessError(details=details)

    def _decide(
        self,
        caller: IsolationContext,
        resource: IsolationContext,
        required_level: IsolationLevel,
        resource_ref: ResourceRef,
        action: str,
        finding,
    ) -> AccessDecision:
        required_level = IsolationLevel(required_level)

        def decision(allowed: bool, reason: ReasonCode, **extra) -> AccessDecision:
            return AccessDecision(
                allowed=allowed,
                reason=reason,
                caller_context=caller,
                resource_context=resource,
                resource=resource_ref,
                action=action,
                required_level=required_level,
                **extra
            )

        if finding is not None:
            return decision(False, ReasonCode.ANOMALY_DETECTED, anomaly_type=finding.event_type.value)

        if not has_required_level(caller, required_level):
            return decision(False, ReasonCode.INSUFFICIENT_LEVEL)

        if caller.check_permission(resource_ref.type, action) is False:
            return decision(False, ReasonCode.RULE_DENIED)

        # Policy rules can only narrow access here; an allow rule never
        # bypasses containment.
        result = self.rule_engine.evaluate(caller, resource_ref.type, action)
        if result.allowed is False:
            matched = result.matched_rules[0] if result.matched_rules else None
            return decision(False, ReasonCode.RULE_DENIED, matched_rule=matched)

        if not self.check_resource_access(caller, resource):
            return decision(False, ReasonCode.CROSS_BOUNDARY)

        return decision(True, ReasonCode.ALLOWED)

    async def _after_decision(self, decision: AccessDecision, request_meta: Optional[RequestMeta]) -> None:
        """Feed the outcome to the monitor and the audit log; failures are logged only."""
        if self.security_monitor is not None and decision.caller_context is not None:
            # Anomaly denials are already counted as attempts and must not
            # extend the streak that caused them.
            if decision.reason != ReasonCode.ANOMALY_DETECTED:
                try:
                    self.security_monitor.record_outcome(decision.caller_context, decision.allowed)
                except Exception as e:
                    self.logger.error("Failed to record access outcome", error=str(e))

        if self.audit_log is not None:
            try:
                await self.audit_log.log_decision(decision, request_meta)
            except Exception as e:
                self.logger.error("Failed to audit access decision", error=str(e))

    # Policy rules

    def check_rule_access(
        self,
        context: IsolationContext,
        resource_type: str,
        resource_id: str,
        action: str,
    ) -> bool:
        """First matching policy rule, else the sharing-level default."""
        try:
            verdict = context.check_permission(resource_type, action)
            if verdict is not None:
                return verdict

            result = self.rule_engine.evaluate(context, resource_type, action)
            if result.allowed is not None:
                return result.allowed

            return default_level_access(context, resource_type)
        except Exception as e:
            self.logger.error(
                "Rule access check error",
                resource_type=resource_type,
                resource_id=resource_id,
                error=str(e)
            )
            return False

    def check_batch_access(
        self,
        context: IsolationContext,
        items: Iterable[BatchItem],
    ) -> Dict[str, bool]:
        """Rule checks for many ``(resource_type, resource_id, action)`` items.

        Results are keyed ``resource_type:resource_id:action``.
        """
        results: Dict[str, bool] = {}
        for item in items:
            if isinstance(item, Mapping):
                resource_type = item.get("resource_type", "")
                resource_id = item.get("resource_id", "")
                action = item.get("action", "")
            else:
                resource_type, resource_id, action = item
            key = f"{resource_type}:{resource_id}:{action}"
            results[key] = self.check_rule_access(context, resource_type, resource_id, action)
        return results

    def get_permission_summary(self, context: IsolationContext) -> PermissionSummary:
        """Actions the context's matching rules allow or deny."""
        summary = PermissionSummary(permission_level=PERMISSION_LEVELS[context.sharing_level])
        allowed = set()
        denied = set()

        keys: Dict[str, Tuple[str, str]] = {}
        for rule in self.rule_engine.all_rules():
            keys.setdefault(rule.key, (rule.resource_type, rule.action))
        for rule in context.access_rules:
            keys.setdefault(f"{rule.resource_type}:{rule.action}", (rule.resource_type, rule.action))

        for resource_type, action in keys.values():
            verdict = context.check_permission(resource_type, action)
            if verdict is None:
                verdict = self.rule_engine.evaluate(context, resource_type, action).allowed
            if verdict is None:
                continue
            if verdict:
                allowed.add(action)
                actions = summary.resource_permissions.setdefault(resource_type, [])
                if action not in actions:
                    actions.append(action)
            else:
                denied.add(action)

        summary.allowed_actions = sorted(allowed)
        summary.denied_actions = sorted(denied)
        return summary

    # Data scoping

    def filter_data(self, records: Iterable[Any], context: IsolationContext) -> List[Any]:
        """Keep the records whose hierarchy fields fall inside ``context``."""
        if context.is_platform_level():
            return list(records)

        constraints = context.identifiers()
        kept = []
        for record in records:
            if all(_field(record, slot) == value for slot, value in constraints):
                kept.append(record)
        return kept

    def apply_isolation_filter(self, query: Mapping[str, Any], context: IsolationContext) -> Dict[str, Any]:
        """Return a copy of ``query`` constrained to the context's identifiers."""
        scoped = dict(query)
        scoped.update(context.identifiers())
        return scoped


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


