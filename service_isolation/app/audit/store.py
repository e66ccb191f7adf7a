"""
Audit record stores.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .models import AuditQueryFilters, AuditRecord, as_utc


PLATFORM_PARTITION = "platform"


class AuditStore(Protocol):
    """Append-only audit persistence."""

    async def append(self, record: AuditRecord) -> None:
        ...

    async def query(self, filters: AuditQueryFilters) -> List[AuditRecord]:
        ...

    async def delete_before(self, cutoff: datetime) -> int:
        ...


class InMemoryAuditStore:
    """Lock-guarded list of records with a per-tenant index."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._by_tenant: Dict[str, List[AuditRecord]] = {}
        self._lock = threading.Lock()

    async def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._by_tenant.setdefault(record.tenant_id or PLATFORM_PARTITION, []).append(record)

    async def query(self, filters: AuditQueryFilters) -> List[AuditRecord]:
        """Matching records in insertion order, after offset and limit."""
        with self._lock:
            if filters.tenant_id is not None:
                source = list(self._by_tenant.get(filters.tenant_id, []))
            else:
                source = list(self._records)
        matched = [record for record in source if filters.matches(record)]
        return matched[filters.offset:filters.offset + filters.limit]

    async def delete_before(self, cutoff: datetime) -> int:
        cutoff = as_utc(cutoff)
        with self._lock:
            kept = [r for r in self._records if as_utc(r.timestamp) >= cutoff]
            removed = len(self._records) - len(kept)
            self._records = kept
            self._by_tenant = {}
            for record in kept:
                self._by_tenant.setdefault(record.tenant_id or PLATFORM_PARTITION, []).append(record)
        return removed

    def count(self, tenant_id: Optional[str] = None) -> int:
        with self._lock:
            if tenant_id is None:
                return len(self._records)
            return len(self._by_tenant.get(tenant_id, []))
