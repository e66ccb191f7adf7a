"""
Audit log service.

Writes never fail the caller: a store error or timeout diverts the record
to the fallback sink (a structured log line plus a bounded in-memory
buffer) and is counted. Buffered records are re-appended by
``replay_fallback``; the service reports degraded while any remain.
"""

import asyncio
import csv
import io
import json
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Union

from isolation_shared.errors import AuditWriteError, ServiceError
from isolation_shared.logging import get_logger
from isolation_shared.metrics import MetricsCollector
from ..access.models import AccessDecision, ReasonCode, RequestMeta
from .models import (
    ACCESS_VALIDATION, CSV_FIELDS, AuditConfig, AuditQueryFilters, AuditRecord, AuditResult
)
from .store import AuditStore, InMemoryAuditStore

# Upper bound used when stats and exports need every matching record.
_UNBOUNDED = 2 ** 31 - 1

# Record fields that would collide with keys the log processors set.
_LOG_FIELD_NAMES = {"timestamp": "recorded_at"}


class AuditLogService:
    """Append-only audit trail of access decisions and other actions."""

    def __init__(
        self,
        store: Optional[AuditStore] = None,
        config: Optional[AuditConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.logger = get_logger("isolation.audit")
        self.fallback_logger = get_logger("isolation.audit.fallback")
        self.store = store if store is not None else InMemoryAuditStore()
        self.config = config or AuditConfig()
        self.metrics = metrics
        self._lock = threading.Lock()
        self._fallback: Deque[AuditRecord] = deque(maxlen=self.config.fallback_size)
        self._written = 0
        self._failed = 0

    async def log(
        self,
        action: str,
        resource: str,
        resource_id: str = "",
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        result: Union[AuditResult, str] = AuditResult.SUCCESS,
        organization_id: Optional[str] = None,
        department_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> Optional[AuditRecord]:
        """Record an audit entry. Returns None when auditing is disabled."""
        if not self.config.enabled:
            return None

        record = self._build_record(
            action=action,
            resource=resource,
            resource_id=resource_id,
            user_id=user_id,
            tenant_id=tenant_id,
            result=result,
            organization_id=organization_id,
            department_id=department_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._write(record)
        return record

    async def log_decision(
        self,
        decision: AccessDecision,
        request_meta: Optional[RequestMeta] = None,
    ) -> Optional[AuditRecord]:
        """Audit an access decision as ``ACCESS_VALIDATION``."""
        if decision.reason == ReasonCode.EVALUATION_ERROR:
            result = AuditResult.ERROR
        elif decision.allowed:
            result = AuditResult.SUCCESS
        else:
            result = AuditResult.FAILURE

        caller = decision.caller_context
        meta = request_meta or RequestMeta()
        details: Dict[str, Any] = {
            "reason": decision.reason.value,
            "operation": decision.action,
            "required_level": decision.required_level.value if decision.required_level else None,
            "resource_scope": decision.resource_context.scope_path() if decision.resource_context else None,
        }
        if decision.anomaly_type:
            details["anomaly_type"] = decision.anomaly_type
        if decision.matched_rule:
            details["matched_rule"] = decision.matched_rule
        if meta.request_id:
            details["request_id"] = meta.request_id

        return await self.log(
            action=ACCESS_VALIDATION,
            resource=decision.resource.type,
            resource_id=decision.resource.id,
            user_id=caller.user_id if caller else None,
            tenant_id=caller.tenant_id if caller else None,
            organization_id=caller.organization_id if caller else None,
            department_id=caller.department_id if caller else None,
            result=result,
            details=details,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    async def batch_log(self, entries: Iterable[Mapping[str, Any]]) -> List[AuditRecord]:
        """Record several entries given as ``log`` keyword mappings."""
        if not self.config.enabled:
            return []
        records = [self._build_record(**entry) for entry in entries]
        for record in records:
            await self._write(record)
        return records

    def _build_record(self, action: str, resource: str, resource_id: str = "",
                      user_id: Optional[str] = None, tenant_id: Optional[str] = None,
                      result: Union[AuditResult, str] = AuditResult.SUCCESS,
                      details: Optional[Dict[str, Any]] = None, **fields) -> AuditRecord:
        return AuditRecord(
            id=f"audit_{uuid.uuid4().hex}",
            action=action,
            resource=resource,
            resource_id=resource_id,
            user_id=user_id or "system",
            tenant_id=tenant_id,
            result=AuditResult(result),
            details=dict(details or {}),
            **fields
        )

    async def _write(self, record: AuditRecord) -> bool:
        try:
            await asyncio.wait_for(self.store.append(record), timeout=self.config.timeout_seconds)
        except Exception as e:
            self._divert(record, e)
            return False

        with self._lock:
            self._written += 1
        if self.metrics:
            self.metrics.increment_counter("audit_writes_total", status="success")

        fields = record.to_dict()
        self.logger.info(
            "Audit record written",
            **{_LOG_FIELD_NAMES.get(name, name): fields[name] for name in self.config.audit_fields if name in fields}
        )
        return True

    def _divert(self, record: AuditRecord, error: Exception) -> None:
        failure = error if isinstance(error, AuditWriteError) else AuditWriteError(
            "Audit store write failed", {"audit_id": record.id, "error": str(error) or type(error).__name__}
        )
        with self._lock:
            self._failed += 1
            self._fallback.append(record)
        if self.metrics:
            self.metrics.increment_counter("audit_writes_total", status="fallback")
            self.metrics.record_error(failure.code)
        self.fallback_logger.error(
            "Audit record diverted to fallback",
            error=failure.details.get("error", failure.message),
            record=record.to_dict()
        )

    async def query(self, filters: Optional[AuditQueryFilters] = None, **criteria) -> List[AuditRecord]:
        """Records matching ``filters`` (or keyword criteria), oldest first."""
        filters = filters or AuditQueryFilters(**criteria)
        try:
            return await asyncio.wait_for(self.store.query(filters), timeout=self.config.timeout_seconds)
        except Exception as e:
            self.logger.error("Audit query failed", error=str(e))
            raise ServiceError("Audit query failed", {"error": str(e)})

    async def get_stats(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        records = await self.query(AuditQueryFilters(start_time=start_time, end_time=end_time, limit=_UNBOUNDED))

        by_result: Dict[str, int] = {}
        by_action: Dict[str, int] = {}
        by_tenant: Dict[str, int] = {}
        for record in records:
            by_result[record.result.value] = by_result.get(record.result.value, 0) + 1
            by_action[record.action] = by_action.get(record.action, 0) + 1
            tenant = record.tenant_id or "platform"
            by_tenant[tenant] = by_tenant.get(tenant, 0) + 1

        return {
            "total": len(records),
            "by_result": by_result,
            "by_action": by_action,
            "by_tenant": by_tenant,
            "period": {
                "start_time": start_time.isoformat() if start_time else None,
                "end_time": end_time.isoformat() if end_time else None,
            },
        }

    async def cleanup(self, older_than: Optional[datetime] = None) -> int:
        """Delete records older than ``older_than`` (default: the retention window)."""
        if older_than is None:
            older_than = datetime.now(timezone.utc) - timedelta(days=self.config.retention_days)
        try:
            removed = await asyncio.wait_for(
                self.store.delete_before(older_than), timeout=self.config.timeout_seconds
            )
        except Exception as e:
            self.logger.error("Audit cleanup failed", error=str(e))
            raise ServiceError("Audit cleanup failed", {"error": str(e)})

        self.logger.info("Audit records cleaned up", removed=removed, older_than=older_than.isoformat())
        return removed

    async def export(self, filters: Optional[AuditQueryFilters] = None, format: str = "json") -> str:
        """Serialize matching records as JSON or CSV."""
        if format not in ("json", "csv"):
            raise ValueError(f"Unsupported export format: {format}")

        records = await self.query(filters or AuditQueryFilters(limit=_UNBOUNDED))

        if format == "json":
            return json.dumps([record.to_dict() for record in records], indent=2)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(CSV_FIELDS), extrasaction="ignore")
        writer.writeheader()
        for record in records:
            writer.writerow(record.to_dict())
        return buffer.getvalue()

    def set_config(self, config: Union[AuditConfig, Mapping[str, Any], None] = None, **changes) -> AuditConfig:
        """Merge configuration changes; the fallback buffer is resized if needed."""
        if isinstance(config, AuditConfig):
            updates = config.model_dump()
        else:
            updates = dict(config or {})
        updates.update(changes)

        merged = AuditConfig(**{**self.config.model_dump(), **updates})
        with self._lock:
            if merged.fallback_size != self.config.fallback_size:
                self._fallback = deque(self._fallback, maxlen=merged.fallback_size)
            self.config = merged
        self.logger.info("Audit config updated", enabled=merged.enabled, fallback_size=merged.fallback_size)
        return merged.model_copy()

    def get_config(self) -> AuditConfig:
        return self.config.model_copy(deep=True)

    def fallback_records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._fallback)

    async def replay_fallback(self) -> int:
        """Re-append buffered records to the store, oldest first.

        Stops at the first failure and leaves the rest buffered. Returns the
        number of records replayed.
        """
        pending = self.fallback_records()
        replayed = 0
        for record in pending:
            try:
                await asyncio.wait_for(self.store.append(record), timeout=self.config.timeout_seconds)
            except Exception as e:
                self.logger.warning("Audit fallback replay failed", audit_id=record.id, error=str(e))
                break

            with self._lock:
                if record in self._fallback:
                    self._fallback.remove(record)
                self._written += 1
            replayed += 1

        if replayed:
            if self.metrics:
                self.metrics.increment_counter("audit_writes_total", replayed, status="replayed")
            self.logger.info("Audit fallback replayed", count=replayed, remaining=len(pending) - replayed)
        return replayed

    def health_check(self) -> Dict[str, Any]:
        with self._lock:
            written, failed, buffered = self._written, self._failed, len(self._fallback)
        return {
            "status": "healthy" if buffered == 0 else "degraded",
            "enabled": self.config.enabled,
            "written": written,
            "failed": failed,
            "fallback_buffered": buffered,
        }
