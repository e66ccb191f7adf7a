"""
Audit trail for access decisions.

- models: AuditRecord, query filters and runtime config.
- store: AuditStore protocol and the in-memory store.
- service: AuditLogService with fallback sink, stats, cleanup and export.
"""

from .models import ACCESS_VALIDATION, AuditConfig, AuditQueryFilters, AuditRecord, AuditResult
from .service import AuditLogService
from .store import AuditStore, InMemoryAuditStore

__all__ = [
    "ACCESS_VALIDATION",
    "AuditConfig",
    "AuditQueryFilters",
    "AuditRecord",
    "AuditResult",
    "AuditLogService",
    "AuditStore",
    "InMemoryAuditStore",
]
