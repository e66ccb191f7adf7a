"""
Policy rule engine for resource-type/action access rules.
"""

import itertools
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from isolation_shared.logging import get_logger
from ..context.models import IsolationContext
from .models import (
    AccessRule, RuleAction, RuleCondition, RuleConditionOperator, EvaluationResult
)


# Context fields a rule condition may reference.
CONDITION_FIELDS = (
    "tenant_id",
    "organization_id",
    "department_id",
    "user_id",
    "sharing_level",
    "is_shared",
)


def rule_key(resource_type: str, action: str) -> str:
    return f"{resource_type}:{action}"


class AccessRuleEngine:
    """Rule evaluation engine keyed by ``resource_type:action``.

    Rules are evaluated in priority order (highest first); the first
    enabled, unexpired rule whose conditions all hold decides. When no
    rule matches the result carries ``allowed=None`` so callers can apply
    their own default.
    """

    def __init__(self):
        self.logger = get_logger("isolation.rule_engine")
        self.rules: Dict[str, AccessRule] = {}
        self.rule_cache: Dict[str, List[AccessRule]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def set_access_rule(
        self,
        resource_type: str,
        action: str,
        allow: bool = True,
        conditions: Optional[List[RuleCondition]] = None,
        priority: int = 0,
        rule_id: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        enabled: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> AccessRule:
        """Create or replace a rule and return it."""
        rule = AccessRule(
            rule_id=rule_id or f"rule_{next(self._ids)}",
            resource_type=resource_type,
            action=action,
            effect=RuleAction.ALLOW if allow else RuleAction.DENY,
            name=name,
            description=description,
            conditions=list(conditions or []),
            priority=priority,
            enabled=enabled,
            expires_at=expires_at,
        )
        self.add_rule(rule)
        return rule

    def add_rule(self, rule: AccessRule) -> None:
        with self._lock:
            self.rules[rule.rule_id] = rule
            self.rule_cache.clear()
        self.logger.info("Rule added", rule_id=rule.rule_id, key=rule.key, effect=rule.effect.value)

    def remove_access_rule(self, resource_type: str, action: str, rule_id: Optional[str] = None) -> int:
        """Remove rules for a key, or a single rule by id. Returns the count removed."""
        key = rule_key(resource_type, action)
        with self._lock:
            doomed = [
                r.rule_id for r in self.rules.values()
                if r.key == key and (rule_id is None or r.rule_id == rule_id)
            ]
            for doomed_id in doomed:
                del self.rules[doomed_id]
            if doomed:
                self.rule_cache.clear()
        if doomed:
            self.logger.info("Rules removed", key=key, count=len(doomed))
        return len(doomed)

    def get_rule(self, rule_id: str) -> Optional[AccessRule]:
        with self._lock:
            return self.rules.get(rule_id)

    def get_access_rules(self, resource_type: str, action: str) -> List[AccessRule]:
        """Enabled rules for a key, highest priority first."""
        key = rule_key(resource_type, action)
        with self._lock:
            cached = self.rule_cache.get(key)
            if cached is not None:
                return list(cached)
            rules = [r for r in self.rules.values() if r.key == key and r.enabled]
            # Stable sort keeps insertion order among equal priorities.
            rules.sort(key=lambda r: r.priority, reverse=True)
            self.rule_cache[key] = rules
            return list(rules)

    def all_rules(self) -> List[AccessRule]:
        with self._lock:
            return list(self.rules.values())

    def evaluate(
        self,
        context: IsolationContext,
        resource_type: str,
        action: str,
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """Evaluate rules for ``resource_type:action`` against a context."""
        start_time = time.time()
        now = now or datetime.now(timezone.utc)

        try:
            for rule in self.get_access_rules(resource_type, action):
                if not self._is_rule_applicable(rule, now):
                    continue
                if self._evaluate_rule_conditions(rule, context):
                    result = EvaluationResult(
                        allowed=rule.allow,
                        reason=f"Rule '{rule.name or rule.rule_id}' matched",
                        matched_rules=[rule.rule_id],
                        evaluation_time_ms=(time.time() - start_time) * 1000
                    )
                    self.logger.debug(
                        "Rule evaluation result",
                        rule_id=rule.rule_id,
                        allowed=result.allowed
                    )
                    return result

            return EvaluationResult(
                allowed=None,
                reason="No applicable rules matched",
                evaluation_time_ms=(time.time() - start_time) * 1000
            )

        except Exception as e:
            self.logger.error("Rule evaluation error", error=str(e))
            return EvaluationResult(
                allowed=False,
                reason="Rule evaluation error",
                evaluation_time_ms=(time.time() - start_time) * 1000
            )

    def _is_rule_applicable(self, rule: AccessRule, now: datetime) -> bool:
        if not rule.enabled:
            return False
        if rule.expires_at is None:
            return True
        expires_at = rule.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > now

    def _evaluate_rule_conditions(self, rule: AccessRule, context: IsolationContext) -> bool:
        return all(self._evaluate_condition(condition, context) for condition in rule.conditions)

    def _evaluate_condition(self, condition: RuleCondition, context: IsolationContext) -> bool:
        """Evaluate a single condition; unknown fields and operators never match."""
        if condition.field not in CONDITION_FIELDS:
            self.logger.warning("Unknown condition field", field=condition.field)
            return False

        field_value = self._get_field_value(condition.field, context)
        operator = condition.operator

        if operator == RuleConditionOperator.EQUALS:
            return field_value == condition.value
        if operator == RuleConditionOperator.NOT_EQUALS:
            return field_value != condition.value

        if field_value is None:
            return False

        if operator == RuleConditionOperator.IN:
            return field_value in condition.value
        if operator == RuleConditionOperator.NOT_IN:
            return field_value not in condition.value
        if operator == RuleConditionOperator.CONTAINS:
            return str(condition.value) in str(field_value)
        if operator == RuleConditionOperator.STARTS_WITH:
            return str(field_value).startswith(str(condition.value))
        if operator == RuleConditionOperator.ENDS_WITH:
            return str(field_value).endswith(str(condition.value))

        self.logger.warning("Unknown condition operator", operator=str(operator))
        return False

    def _get_field_value(self, field: str, context: IsolationContext) -> Any:
        if field == "sharing_level":
            return context.sharing_level.value
        return getattr(context, field)

    def get_engine_stats(self) -> Dict[str, Any]:
        with self._lock:
            rules = list(self.rules.values())
            cached = len(self.rule_cache)
        return {
            "total_rules": len(rules),
            "enabled_rules": len([r for r in rules if r.enabled]),
            "cached_keys": cached,
            "keys": sorted({r.key for r in rules}),
        }

    def clear_all_rules(self) -> None:
        with self._lock:
            self.rules.clear()
            self.rule_cache.clear()
        self.logger.info("All rules cleared")
