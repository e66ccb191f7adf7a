"""
Unit tests for the access control service.
"""

import pytest
from dataclasses import dataclass
from unittest.mock import AsyncMock, MagicMock, patch

from isolation_shared.errors import AnomalyDetectedError, CrossBoundaryAccessError, ServiceError
from isolation_shared.metrics import MetricsCollector
from service_isolation.app.access.control import AccessControlService
from service_isolation.app.access.models import ReasonCode, RequestMeta, ResourceRef
from service_isolation.app.access.rules import AccessRuleEngine
from service_isolation.app.audit.models import AuditResult
from service_isolation.app.audit.service import AuditLogService
from service_isolation.app.context.models import ContextAccessRule, IsolationContext, IsolationLevel
from service_isolation.app.monitor.models import AnomalyThresholds
from service_isolation.app.monitor.service import SecurityMonitorService, identity_key


class TestAccessControlService:
    """Test cases for AccessControlService decisions."""

    @pytest.fixture
    def metrics(self):
        """Create a metrics collector."""
        return MetricsCollector("isolation-test")

    @pytest.fixture
    def audit_log(self, metrics):
        """Create an in-memory audit log."""
        return AuditLogService(metrics=metrics)

    @pytest.fixture
    def security_monitor(self, metrics):
        """Create a security monitor with a short denial streak."""
        return SecurityMonitorService(thresholds=AnomalyThresholds(max_denied_streak=3), metrics=metrics)

    @pytest.fixture
    def access_control(self, audit_log, security_monitor, metrics):
        """Create AccessControlService instance."""
        return AccessControlService(
            rule_engine=AccessRuleEngine(),
            audit_log=audit_log,
            security_monitor=security_monitor,
            metrics=metrics
        )

    @pytest.fixture
    def report(self):
        """Create a resource reference."""
        return ResourceRef(type="report", id="r-1")

    @pytest.mark.asyncio
    async def test_allowed(self, access_control, audit_log, metrics, report):
        """Test an in-scope caller with enough authority is allowed."""
        caller = IsolationContext.tenant("t1")
        resource = IsolationContext.organization("t1", "o1")

        decision = await access_control.can_access(caller, resource, IsolationLevel.ORGANIZATION, report, "read")

        assert decision.allowed is True
        assert decision.reason == ReasonCode.ALLOWED
        assert decision.required_level is IsolationLevel.ORGANIZATION

        records = await audit_log.query()
        assert len(records) == 1
        assert records[0].action == "ACCESS_VALIDATION"
        assert records[0].result == AuditResult.SUCCESS
        assert records[0].details["reason"] == "ALLOWED"
        assert metrics.get_sample_value(
            "access_decisions_total", {"decision": "allow", "reason": "ALLOWED"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_insufficient_level(self, access_control, audit_log, report):
        """Test a caller below the required level is denied."""
        caller = IsolationContext.department("t1", "o1", "d1")

        decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report)

        assert decision.allowed is False
        assert decision.reason == ReasonCode.INSUFFICIENT_LEVEL
        records = await audit_log.query()
        assert records[0].result == AuditResult.FAILURE

    @pytest.mark.asyncio
    async def test_cross_boundary(self, access_control, report):
        """Test a resource in another tenant is denied."""
        caller = IsolationContext.tenant("t1")
        resource = IsolationContext.tenant("t2")

        decision = await access_control.can_access(caller, resource, IsolationLevel.TENANT, report)

        assert decision.allowed is False
        assert decision.reason == ReasonCode.CROSS_BOUNDARY

    @pytest.mark.asyncio
    async def test_level_checked_before_containment(self, access_control, report):
        """Test the level check decides before containment."""
        caller = IsolationContext.department("t1", "o1", "d1")
        resource = IsolationContext.tenant("t2")

        decision = await access_control.can_access(caller, resource, IsolationLevel.TENANT, report)

        assert decision.reason == ReasonCode.INSUFFICIENT_LEVEL

    @pytest.mark.asyncio
    async def test_platform_caller_reaches_everything(self, access_control, report):
        """Test platform callers pass every level and containment check."""
        resource = IsolationContext.from_identifiers("t9", "o9", "d9", "u9")

        decision = await access_control.can_access(
            IsolationContext.platform(), resource, IsolationLevel.SUPER_ADMIN, report
        )

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_caller_rule_denies(self, access_control, report):
        """Test an explicit caller deny rule wins over containment."""
        caller = IsolationContext.tenant("t1").with_access_rules([
            ContextAccessRule("report", "delete", allow=False)
        ])

        decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report, "delete")

        assert decision.reason == ReasonCode.RULE_DENIED

    @pytest.mark.asyncio
    async def test_policy_rule_denies(self, access_control, audit_log, report):
        """Test a matching policy deny rule is recorded on the decision."""
        access_control.rule_engine.set_access_rule("report", "export", allow=False, rule_id="no-export")
        caller = IsolationContext.tenant("t1")

        decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report, "export")

        assert decision.reason == ReasonCode.RULE_DENIED
        assert decision.matched_rule == "no-export"
        records = await audit_log.query()
        assert records[0].details["matched_rule"] == "no-export"

    @pytest.mark.asyncio
    async def test_policy_allow_does_not_bypass_containment(self, access_control, report):
        """Test an allow rule never widens the caller's scope."""
        access_control.rule_engine.set_access_rule("report", "read", allow=True)

        decision = await access_control.can_access(
            IsolationContext.tenant("t1"), IsolationContext.tenant("t2"), IsolationLevel.TENANT, report, "read"
        )

        assert decision.reason == ReasonCode.CROSS_BOUNDARY

    @pytest.mark.asyncio
    async def test_strict_containment(self, audit_log, report):
        """Test strict containment requires an exact position match."""
        access_control = AccessControlService(audit_log=audit_log, strict_containment=True)
        caller = IsolationContext.tenant("t1")

        decision = await access_control.can_access(
            caller, IsolationContext.organization("t1", "o1"), IsolationLevel.ORGANIZATION, report
        )

        assert decision.reason == ReasonCode.CROSS_BOUNDARY
        assert access_control.check_resource_access(caller, IsolationContext.organization("t1", "o1"), strict=False)

    @pytest.mark.asyncio
    async def test_shared_resource(self, access_control, report):
        """Test shared resources reach callers inside their scope."""
        caller = IsolationContext.department("t1", "o1", "d1")
        resource = IsolationContext.organization("t1", "o1").shared()

        decision = await access_control.can_access(caller, resource, IsolationLevel.DEPARTMENT, report)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_repeated_denials_trigger_anomaly(self, access_control, security_monitor, report):
        """Test a denial streak turns into an anomaly denial."""
        caller = IsolationContext.tenant("t1")
        outside = IsolationContext.tenant("t2")

        for _ in range(3):
            decision = await access_control.can_access(caller, outside, IsolationLevel.TENANT, report)
            assert decision.reason == ReasonCode.CROSS_BOUNDARY

        decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report)

        assert decision.allowed is False
        assert decision.reason == ReasonCode.ANOMALY_DETECTED
        assert decision.anomaly_type == "REPEATED_DENIAL"
        # Anomaly denials do not extend the streak.
        assert security_monitor.denied_streak(identity_key(caller)) == 3

    @pytest.mark.asyncio
    async def test_allowed_attempt_resets_streak(self, access_control, security_monitor, report):
        """Test an allowed attempt clears the denial streak."""
        caller = IsolationContext.tenant("t1")

        for _ in range(2):
            await access_control.can_access(caller, IsolationContext.tenant("t2"), IsolationLevel.TENANT, report)
        await access_control.can_access(caller, caller, IsolationLevel.TENANT, report)

        assert security_monitor.denied_streak(identity_key(caller)) == 0

    @pytest.mark.asyncio
    async def test_denials_in_one_tenant_do_not_lock_out_namesake(self, access_control, security_monitor, report):
        """Test a user id reused in another tenant is not locked out by its namesake."""
        first = IsolationContext.user("admin", "t1")
        second = IsolationContext.user("admin", "t2")

        for _ in range(5):
            decision = await access_control.can_access(second, IsolationContext.tenant("t9"), IsolationLevel.USER, report)
            assert decision.allowed is False

        decision = await access_control.can_access(first, first, IsolationLevel.USER, report)

        assert decision.allowed is True
        assert decision.reason == ReasonCode.ALLOWED
        assert security_monitor.denied_streak(identity_key(second)) == 3

    @pytest.mark.asyncio
    async def test_metrics_failure_does_not_block(self, access_control, metrics, report):
        """Test a failing metrics recorder does not break the decision."""
        caller = IsolationContext.tenant("t1")

        with patch.object(metrics, "record_decision", side_effect=Exception("registry down")):
            decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_evaluation_error(self, access_control, security_monitor, audit_log, metrics, report):
        """Test monitor failures produce an evaluation-error denial."""
        caller = IsolationContext.tenant("t1")

        with patch.object(security_monitor, "monitor_access", new_callable=AsyncMock) as mock_monitor:
            mock_monitor.side_effect = Exception("monitor down")
            decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report)

        assert decision.allowed is False
        assert decision.reason == ReasonCode.EVALUATION_ERROR
        records = await audit_log.query()
        assert records[0].result == AuditResult.ERROR
        assert metrics.get_sample_value(
            "errors_total", {"error_type": "Exception", "service": "isolation-test"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_unknown_required_level(self, access_control, report):
        """Test an unknown required level denies instead of raising."""
        caller = IsolationContext.tenant("t1")

        decision = await access_control.can_access(caller, caller, "galaxy", report)

        assert decision.reason == ReasonCode.EVALUATION_ERROR

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_block(self, access_control, audit_log, report):
        """Test audit failures never change the decision."""
        caller = IsolationContext.tenant("t1")

        with patch.object(audit_log, "log_decision", new_callable=AsyncMock) as mock_log:
            mock_log.side_effect = Exception("audit down")
            decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT, report)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_request_meta_is_audited(self, access_control, audit_log, report):
        """Test request metadata reaches the audit record."""
        caller = IsolationContext.user("u1", "t1")
        meta = RequestMeta(ip_address="10.0.0.1", user_agent="pytest", request_id="req-1")

        await access_control.can_access(caller, caller, IsolationLevel.USER, report, "read", meta)

        record = (await audit_log.query())[0]
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "pytest"
        assert record.user_id == "u1"
        assert record.details["request_id"] == "req-1"

    @pytest.mark.asyncio
    async def test_without_monitor_or_audit(self, report):
        """Test the service works standalone."""
        access_control = AccessControlService()
        caller = IsolationContext.tenant("t1")

        assert await access_control.is_allowed(caller, caller, IsolationLevel.TENANT, report) is True

    @pytest.mark.asyncio
    async def test_ensure_access_allowed(self, access_control, report):
        """Test ensure_access returns the allowed decision."""
        caller = IsolationContext.tenant("t1")

        decision = await access_control.ensure_access(caller, caller, IsolationLevel.TENANT, report)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_ensure_access_cross_boundary(self, access_control, report):
        """Test ensure_access raises on policy denials."""
        with pytest.raises(CrossBoundaryAccessError) as exc_info:
            await access_control.ensure_access(
                IsolationContext.tenant("t1"), IsolationContext.tenant("t2"), IsolationLevel.TENANT, report
            )

        assert exc_info.value.details["reason"] == "CROSS_BOUNDARY"
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_ensure_access_anomaly(self, access_control, security_monitor, report):
        """Test ensure_access raises on anomaly denials."""
        caller = IsolationContext.tenant("t1")
        for _ in range(3):
            security_monitor.record_outcome(caller, False)

        with pytest.raises(AnomalyDetectedError) as exc_info:
            await access_control.ensure_access(caller, caller, IsolationLevel.TENANT, report)

        assert exc_info.value.details["anomaly_type"] == "REPEATED_DENIAL"

    @pytest.mark.asyncio
    async def test_ensure_access_evaluation_error(self, access_control, report):
        """Test ensure_access raises a service error on evaluation failure."""
        caller = IsolationContext.tenant("t1")

        with pytest.raises(ServiceError):
            await access_control.ensure_access(caller, caller, "galaxy", report)

    @pytest.mark.asyncio
    async def test_default_resource_reference(self, access_control, audit_log):
        """Test a missing resource reference is audited as a generic resource."""
        caller = IsolationContext.tenant("t1")

        decision = await access_control.can_access(caller, caller, IsolationLevel.TENANT)

        assert decision.resource.type == "resource"
        assert (await audit_log.query())[0].resource == "resource"


class TestAccessControlRules:
    """Test cases for rule-based checks and data scoping."""

    @pytest.fixture
    def access_control(self):
        """Create AccessControlService instance."""
        return AccessControlService(rule_engine=AccessRuleEngine())

    def test_comparator_passthroughs(self, access_control):
        """Test the comparator is reachable through the service."""
        assert access_control.compare(IsolationLevel.TENANT, IsolationLevel.USER) == 1
        assert access_control.has_required_level(IsolationLevel.USER, IsolationLevel.TENANT) is False

    def test_check_rule_access_precedence(self, access_control):
        """Test caller rules, then policy rules, then level defaults."""
        access_control.rule_engine.set_access_rule("org:report", "read", allow=False)
        ctx = IsolationContext.organization("t1", "o1")

        assert access_control.check_rule_access(ctx, "org:report", "r1", "read") is False
        assert access_control.check_rule_access(ctx, "org:report", "r1", "list") is True
        assert access_control.check_rule_access(ctx, "user:profile", "p1", "read") is False

        overridden = ctx.with_access_rules([ContextAccessRule("org:report", "read", allow=True)])
        assert access_control.check_rule_access(overridden, "org:report", "r1", "read") is True

    def test_check_rule_access_error_denies(self, access_control):
        """Test rule check errors deny."""
        ctx = IsolationContext.tenant("t1")

        with patch.object(access_control.rule_engine, "evaluate", side_effect=Exception("boom")):
            assert access_control.check_rule_access(ctx, "tenant:x", "1", "read") is False

    def test_check_batch_access(self, access_control):
        """Test batch checks accept tuples and mappings."""
        access_control.rule_engine.set_access_rule("tenant:report", "delete", allow=False)
        ctx = IsolationContext.tenant("t1")

        results = access_control.check_batch_access(ctx, [
            ("tenant:report", "r1", "read"),
            {"resource_type": "tenant:report", "resource_id": "r1", "action": "delete"},
            ("org:report", "r2", "read"),
        ])

        assert results == {
            "tenant:report:r1:read": True,
            "tenant:report:r1:delete": False,
            "org:report:r2:read": False,
        }

    def test_permission_summary(self, access_control):
        """Test the summary merges caller and policy rules."""
        access_control.rule_engine.set_access_rule("report", "read", allow=True)
        access_control.rule_engine.set_access_rule("report", "delete", allow=False)
        access_control.rule_engine.set_access_rule("report", "export", allow=True)
        ctx = IsolationContext.organization("t1", "o1").with_access_rules([
            ContextAccessRule("invoice", "write", allow=True),
            ContextAccessRule("report", "export", allow=False),
        ])

        summary = access_control.get_permission_summary(ctx)

        assert summary.permission_level == "WRITE"
        assert summary.allowed_actions == ["read", "write"]
        assert summary.denied_actions == ["delete", "export"]
        assert summary.resource_permissions == {"report": ["read"], "invoice": ["write"]}

    def test_permission_levels(self, access_control):
        """Test permission levels per sharing level."""
        assert access_control.get_permission_summary(IsolationContext.platform()).permission_level == "OWNER"
        assert access_control.get_permission_summary(IsolationContext.tenant("t1")).permission_level == "ADMIN"
        assert access_control.get_permission_summary(IsolationContext.user("u1")).permission_level == "READ"

    def test_filter_data_mappings(self, access_control):
        """Test records outside the context are dropped."""
        records = [
            {"id": 1, "tenant_id": "t1", "organization_id": "o1"},
            {"id": 2, "tenant_id": "t1", "organization_id": "o2"},
            {"id": 3, "tenant_id": "t2", "organization_id": "o1"},
        ]

        kept = access_control.filter_data(records, IsolationContext.organization("t1", "o1"))

        assert [r["id"] for r in kept] == [1]

    def test_filter_data_objects(self, access_control):
        """Test attribute-based records are filtered too."""
        @dataclass
        class Row:
            tenant_id: str

        rows = [Row("t1"), Row("t2")]

        assert access_control.filter_data(rows, IsolationContext.tenant("t1")) == [rows[0]]

    def test_filter_data_platform(self, access_control):
        """Test platform contexts see every record."""
        records = [{"tenant_id": "t1"}, MagicMock()]

        assert access_control.filter_data(records, IsolationContext.platform()) == records

    def test_apply_isolation_filter(self, access_control):
        """Test queries are constrained without mutating the input."""
        query = {"status": "active", "tenant_id": "spoofed"}

        scoped = access_control.apply_isolation_filter(query, IsolationContext.organization("t1", "o1"))

        assert scoped == {"status": "active", "tenant_id": "t1", "organization_id": "o1"}
        assert query["tenant_id"] == "spoofed"
