"""
Unit tests for the audit log service.
"""

import asyncio
import csv
import io
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from isolation_shared.errors import ServiceError
from isolation_shared.metrics import MetricsCollector
from service_isolation.app.access.models import AccessDecision, ReasonCode, RequestMeta, ResourceRef
from service_isolation.app.audit.models import (
    AuditConfig, AuditQueryFilters, AuditRecord, AuditResult
)
from service_isolation.app.audit.service import AuditLogService
from service_isolation.app.audit.store import InMemoryAuditStore
from service_isolation.app.context.models import IsolationContext, IsolationLevel


class TestAuditLogService:
    """Test cases for AuditLogService."""

    @pytest.fixture
    def store(self):
        """Create an in-memory audit store."""
        return InMemoryAuditStore()

    @pytest.fixture
    def metrics(self):
        """Create a metrics collector."""
        return MetricsCollector("isolation-test")

    @pytest.fixture
    def audit_log(self, store, metrics):
        """Create AuditLogService instance."""
        return AuditLogService(store=store, config=AuditConfig(fallback_size=2), metrics=metrics)

    @pytest.mark.asyncio
    async def test_log(self, audit_log, store, metrics):
        """Test a record is written with defaults."""
        record = await audit_log.log("EXPORT", "report", "r-1", tenant_id="t1")

        assert record.id.startswith("audit_")
        assert record.user_id == "system"
        assert record.result == AuditResult.SUCCESS
        assert store.count() == 1
        assert metrics.get_sample_value("audit_writes_total", {"status": "success"}) == 1.0

    @pytest.mark.asyncio
    async def test_log_disabled(self, store):
        """Test nothing is written when auditing is disabled."""
        audit_log = AuditLogService(store=store, config=AuditConfig(enabled=False))

        assert await audit_log.log("EXPORT", "report") is None
        assert await audit_log.batch_log([{"action": "A", "resource": "r"}]) == []
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_log_decision(self, audit_log):
        """Test decisions are audited as access validations."""
        caller = IsolationContext.department("t1", "o1", "d1")
        decision = AccessDecision(
            allowed=False,
            reason=ReasonCode.RULE_DENIED,
            caller_context=caller,
            resource_context=IsolationContext.organization("t1", "o1"),
            resource=ResourceRef(type="report", id="r-1"),
            action="delete",
            required_level=IsolationLevel.DEPARTMENT,
            matched_rule="rule_1",
        )

        record = await audit_log.log_decision(decision, RequestMeta(ip_address="10.0.0.1", request_id="req-1"))

        assert record.action == "ACCESS_VALIDATION"
        assert record.result == AuditResult.FAILURE
        assert record.resource == "report"
        assert record.resource_id == "r-1"
        assert record.organization_id == "o1"
        assert record.department_id == "d1"
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "unknown"
        assert record.details == {
            "reason": "RULE_DENIED",
            "operation": "delete",
            "required_level": "department",
            "resource_scope": "tenant:t1/org:o1",
            "matched_rule": "rule_1",
            "request_id": "req-1",
        }

    @pytest.mark.asyncio
    async def test_log_decision_error_result(self, audit_log):
        """Test evaluation errors are audited as ERROR."""
        decision = AccessDecision(
            allowed=False,
            reason=ReasonCode.EVALUATION_ERROR,
            caller_context=None,
            resource_context=None,
            resource=ResourceRef(type="report"),
            action="read",
        )

        record = await audit_log.log_decision(decision)

        assert record.result == AuditResult.ERROR
        assert record.tenant_id is None

    @pytest.mark.asyncio
    async def test_batch_log(self, audit_log, store):
        """Test several entries are written in order."""
        records = await audit_log.batch_log([
            {"action": "A", "resource": "r", "tenant_id": "t1"},
            {"action": "B", "resource": "r", "tenant_id": "t2", "result": "FAILURE"},
        ])

        assert [r.action for r in records] == ["A", "B"]
        assert records[1].result == AuditResult.FAILURE
        assert store.count() == 2

    @pytest.mark.asyncio
    async def test_store_failure_diverts_to_fallback(self, audit_log, store, metrics):
        """Test store failures never raise and land in the fallback buffer."""
        with patch.object(store, "append", new_callable=AsyncMock) as mock_append:
            mock_append.side_effect = ConnectionError("db down")
            record = await audit_log.log("EXPORT", "report", tenant_id="t1")

        assert record is not None
        assert audit_log.fallback_records() == [record]
        assert audit_log.health_check()["status"] == "degraded"
        assert metrics.get_sample_value("audit_writes_total", {"status": "fallback"}) == 1.0
        assert metrics.get_sample_value(
            "errors_total", {"error_type": "AUDIT_WRITE", "service": "isolation-test"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_store_timeout_diverts_to_fallback(self, store):
        """Test slow stores time out into the fallback buffer."""
        async def slow_append(record):
            await asyncio.sleep(1)

        audit_log = AuditLogService(store=store, config=AuditConfig(timeout_seconds=0.01))

        with patch.object(store, "append", side_effect=slow_append):
            await audit_log.log("EXPORT", "report")

        assert len(audit_log.fallback_records()) == 1
        assert audit_log.health_check()["failed"] == 1

    @pytest.mark.asyncio
    async def test_fallback_is_bounded(self, audit_log, store):
        """Test the fallback buffer keeps the newest records."""
        with patch.object(store, "append", new_callable=AsyncMock) as mock_append:
            mock_append.side_effect = ConnectionError("db down")
            for action in ("A", "B", "C"):
                await audit_log.log(action, "report")

        assert [r.action for r in audit_log.fallback_records()] == ["B", "C"]
        assert audit_log.health_check()["failed"] == 3

    @pytest.mark.asyncio
    async def test_replay_fallback_drains_buffer(self, audit_log, store, metrics):
        """Test buffered records reach the store once it recovers and health clears."""
        with patch.object(store, "append", new_callable=AsyncMock) as mock_append:
            mock_append.side_effect = ConnectionError("db down")
            await audit_log.log("A", "report", tenant_id="t1")
            await audit_log.log("B", "report", tenant_id="t1")

        assert audit_log.health_check()["status"] == "degraded"

        assert await audit_log.replay_fallback() == 2

        assert [r.action for r in await audit_log.query(tenant_id="t1")] == ["A", "B"]
        assert audit_log.fallback_records() == []
        health = audit_log.health_check()
        assert health["status"] == "healthy"
        assert health["written"] == 2
        assert health["failed"] == 2
        assert metrics.get_sample_value("audit_writes_total", {"status": "replayed"}) == 2.0

    @pytest.mark.asyncio
    async def test_replay_fallback_stops_at_first_failure(self, audit_log, store):
        """Test a store that fails again keeps the unreplayed records buffered."""
        with patch.object(store, "append", new_callable=AsyncMock) as mock_append:
            mock_append.side_effect = ConnectionError("db down")
            await audit_log.log("A", "report")
            await audit_log.log("B", "report")

        with patch.object(store, "append", new_callable=AsyncMock) as mock_append:
            mock_append.side_effect = [None, ConnectionError("still down")]
            assert await audit_log.replay_fallback() == 1

        assert [r.action for r in audit_log.fallback_records()] == ["B"]
        assert audit_log.health_check()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_replay_fallback_empty(self, audit_log):
        """Test replaying an empty buffer is a no-op."""
        assert await audit_log.replay_fallback() == 0

    @pytest.mark.asyncio
    async def test_query_filters(self, audit_log):
        """Test queries filter and paginate in insertion order."""
        await audit_log.log("A", "report", tenant_id="t1", user_id="u1")
        await audit_log.log("B", "report", tenant_id="t1", result=AuditResult.FAILURE)
        await audit_log.log("C", "invoice", tenant_id="t2")
        await audit_log.log("D", "report", tenant_id="t1")

        tenant_records = await audit_log.query(tenant_id="t1")
        assert [r.action for r in tenant_records] == ["A", "B", "D"]

        failures = await audit_log.query(AuditQueryFilters(result=AuditResult.FAILURE))
        assert [r.action for r in failures] == ["B"]

        page = await audit_log.query(tenant_id="t1", offset=1, limit=1)
        assert [r.action for r in page] == ["B"]

        assert [r.action for r in await audit_log.query(user_id="u1")] == ["A"]

    @pytest.mark.asyncio
    async def test_query_time_range(self, audit_log, store):
        """Test time bounds are inclusive."""
        base = datetime(2030, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            await store.append(AuditRecord(
                id=f"audit_{i}", action="A", resource="r", resource_id="", user_id="system",
                tenant_id="t1", result=AuditResult.SUCCESS, timestamp=base + timedelta(hours=i)
            ))

        records = await audit_log.query(start_time=base + timedelta(hours=1), end_time=base + timedelta(hours=2))

        assert [r.id for r in records] == ["audit_1", "audit_2"]

    @pytest.mark.asyncio
    async def test_query_failure(self, audit_log, store):
        """Test query failures raise a service error."""
        with patch.object(store, "query", new_callable=AsyncMock) as mock_query:
            mock_query.side_effect = ConnectionError("db down")
            with pytest.raises(ServiceError):
                await audit_log.query()

    @pytest.mark.asyncio
    async def test_get_stats(self, audit_log):
        """Test aggregate statistics."""
        await audit_log.log("A", "report", tenant_id="t1")
        await audit_log.log("A", "report", tenant_id="t2", result=AuditResult.FAILURE)
        await audit_log.log("B", "report")

        stats = await audit_log.get_stats()

        assert stats["total"] == 3
        assert stats["by_result"] == {"SUCCESS": 2, "FAILURE": 1}
        assert stats["by_action"] == {"A": 2, "B": 1}
        assert stats["by_tenant"] == {"t1": 1, "t2": 1, "platform": 1}
        assert stats["period"] == {"start_time": None, "end_time": None}

    @pytest.mark.asyncio
    async def test_cleanup(self, audit_log, store):
        """Test records older than the cutoff are removed."""
        old = datetime.now(timezone.utc) - timedelta(days=200)
        await store.append(AuditRecord(
            id="audit_old", action="A", resource="r", resource_id="", user_id="system",
            tenant_id="t1", result=AuditResult.SUCCESS, timestamp=old
        ))
        await audit_log.log("B", "report", tenant_id="t1")

        removed = await audit_log.cleanup()

        assert removed == 1
        assert store.count() == 1
        assert store.count("t1") == 1

    @pytest.mark.asyncio
    async def test_export_json(self, audit_log):
        """Test JSON export."""
        await audit_log.log("A", "report", tenant_id="t1")

        exported = json.loads(await audit_log.export())

        assert exported[0]["action"] == "A"
        assert exported[0]["tenant_id"] == "t1"

    @pytest.mark.asyncio
    async def test_export_csv(self, audit_log):
        """Test CSV export."""
        await audit_log.log("A", "report", tenant_id="t1")
        await audit_log.log("B", "report", tenant_id="t2")

        exported = await audit_log.export(AuditQueryFilters(tenant_id="t2"), format="csv")
        rows = list(csv.DictReader(io.StringIO(exported)))

        assert len(rows) == 1
        assert rows[0]["action"] == "B"
        assert "details" not in rows[0]

    @pytest.mark.asyncio
    async def test_export_unknown_format(self, audit_log):
        """Test unsupported formats are rejected."""
        with pytest.raises(ValueError):
            await audit_log.export(format="xml")

    def test_set_config(self, audit_log):
        """Test configuration merges and resizes the fallback buffer."""
        updated = audit_log.set_config({"retention_days": 30}, fallback_size=5)

        assert updated.retention_days == 30
        assert updated.fallback_size == 5
        assert audit_log.get_config().enabled is True

    def test_get_config_is_a_copy(self, audit_log):
        """Test callers cannot mutate the live configuration."""
        config = audit_log.get_config()
        config.audit_fields.append("details")

        assert "details" not in audit_log.get_config().audit_fields

    def test_health_check(self, audit_log):
        """Test health of a fresh service."""
        health = audit_log.health_check()

        assert health == {
            "status": "healthy",
            "enabled": True,
            "written": 0,
            "failed": 0,
            "fallback_buffered": 0,
        }
