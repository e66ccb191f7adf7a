"""
Isolation context manager.

Holds the current context for a unit of work and a bounded history of
previously current contexts.
"""

import threading
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Deque, Dict, Iterator, List, Optional

from isolation_shared.errors import InvalidContextError
from isolation_shared.logging import get_logger, bind_isolation_context
from isolation_shared.metrics import MetricsCollector
from .models import ContextAccessRule, IsolationContext, IsolationLevel, IDENTIFIER_SLOTS


DEFAULT_MAX_HISTORY_SIZE = 100

# Resource type prefixes reachable by default from each level.
DEFAULT_LEVEL_PREFIXES = {
    IsolationLevel.TENANT: ("tenant:",),
    IsolationLevel.ORGANIZATION: ("org:", "tenant:"),
    IsolationLevel.DEPARTMENT: ("dept:", "org:", "tenant:"),
    IsolationLevel.USER: ("user:", "dept:", "org:", "tenant:"),
}


def default_level_access(context: IsolationContext, resource_type: str) -> bool:
    """Fallback permission when no explicit rule applies."""
    if context.sharing_level is IsolationLevel.PLATFORM:
        return True
    prefixes = DEFAULT_LEVEL_PREFIXES.get(context.sharing_level, ())
    return resource_type.startswith(prefixes)


class IsolationContextManager:
    """Current-context holder with a bounded FIFO history.

    The current pointer lives in a ``ContextVar`` so concurrent tasks and
    threads each see their own; the history is shared and lock-guarded.
    """

    def __init__(self, max_history_size: int = DEFAULT_MAX_HISTORY_SIZE,
                 metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("isolation.context_manager")
        self.metrics = metrics
        self._current: ContextVar[Optional[IsolationContext]] = ContextVar(
            f"isolation_context_{id(self)}", default=None
        )
        self._lock = threading.Lock()
        self._max_history_size = max(0, max_history_size)
        self._history: Deque[IsolationContext] = deque(maxlen=self._max_history_size)

    def create(
        self,
        tenant_id: Optional[str],
        organization_id: Optional[str] = None,
        department_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> IsolationContext:
        """Create a context through the factory matching the identifiers."""
        if user_id:
            if organization_id or department_id:
                return IsolationContext.from_identifiers(tenant_id, organization_id, department_id, user_id)
            return IsolationContext.user(user_id, tenant_id or None)
        if department_id:
            return IsolationContext.department(tenant_id, organization_id, department_id)
        if organization_id:
            return IsolationContext.organization(tenant_id, organization_id)
        if tenant_id:
            return IsolationContext.tenant(tenant_id)
        return IsolationContext.platform()

    def validate(self, context: Any) -> bool:
        return isinstance(context, IsolationContext)

    def validate_integrity(self, context: Any) -> bool:
        """Check invariants, access rule shape and timestamps."""
        if not self.validate(context):
            return False

        if not isinstance(context.access_rules, tuple):
            return False
        if not all(isinstance(rule, ContextAccessRule) for rule in context.access_rules):
            return False

        if context.created_at is None or context.updated_at is None:
            return False
        try:
            if context.updated_at < context.created_at:
                return False
        except TypeError:
            return False

        # Re-run construction validation against the stored fields; a
        # context smuggled past __post_init__ fails here.
        try:
            IsolationContext(
                tenant_id=context.tenant_id,
                organization_id=context.organization_id,
                department_id=context.department_id,
                user_id=context.user_id,
                sharing_level=context.sharing_level,
                is_shared=context.is_shared,
                access_rules=context.access_rules,
                created_at=context.created_at,
                updated_at=context.updated_at,
            )
        except InvalidContextError as e:
            self.logger.warning("Context integrity check failed", violation=e.violation)
            return False

        return True

    def get(self) -> Optional[IsolationContext]:
        return self._current.get()

    def require(self) -> IsolationContext:
        context = self._current.get()
        if context is None:
            raise InvalidContextError("No isolation context set", {"violation": "NO_CONTEXT"})
        return context

    def set(self, context: IsolationContext) -> None:
        """Make ``context`` current, pushing the previous one to history."""
        if not self.validate_integrity(context):
            raise InvalidContextError(
                "Isolation context failed integrity validation",
                {"violation": "INTEGRITY_CHECK_FAILED"}
            )

        previous = self._current.get()
        if previous is not None:
            self._add_to_history(previous)

        self._current.set(context)
        bind_isolation_context(context.build_log_context())
        self.logger.debug("Isolation context set", sharing_level=context.sharing_level.value)

    def clear(self) -> None:
        previous = self._current.get()
        if previous is not None:
            self._add_to_history(previous)
        self._current.set(None)
        bind_isolation_context({})

    @contextmanager
    def scope(self, context: IsolationContext) -> Iterator[IsolationContext]:
        """Use ``context`` for the duration of a block, then restore.

        Example:
            with manager.scope(IsolationContext.tenant("t1")) as ctx:
                ...
        """
        if not self.validate_integrity(context):
            raise InvalidContextError(
                "Isolation context failed integrity validation",
                {"violation": "INTEGRITY_CHECK_FAILED"}
            )
        token = self._current.set(context)
        bind_isolation_context(context.build_log_context())
        try:
            yield context
        finally:
            self._current.reset(token)
            self._add_to_history(context)
            restored = self._current.get()
            bind_isolation_context(restored.build_log_context() if restored else {})

    def get_context_level(self, context: IsolationContext) -> int:
        """Number of identifiers present."""
        return sum(1 for slot in IDENTIFIER_SLOTS if getattr(context, slot))

    def check_context_permissions(self, context: IsolationContext, resource: str, action: str) -> bool:
        verdict = context.check_permission(resource, action)
        if verdict is not None:
            return verdict
        return default_level_access(context, resource)

    # History

    def _add_to_history(self, context: IsolationContext) -> None:
        with self._lock:
            if self._max_history_size == 0:
                return
            self._history.append(context)
            size = len(self._history)
        if self.metrics:
            self.metrics.set_gauge("context_history_size", size)

    def history(self) -> List[IsolationContext]:
        """History, oldest first."""
        with self._lock:
            return list(self._history)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    @property
    def max_history_size(self) -> int:
        return self._max_history_size

    def set_max_history_size(self, size: int) -> None:
        """Resize the history, dropping the oldest entries if it shrinks."""
        with self._lock:
            self._max_history_size = max(0, size)
            self._history = deque(self._history, maxlen=self._max_history_size)

    def get_stats(self) -> Dict[str, Any]:
        current = self._current.get()
        with self._lock:
            history_size = len(self._history)
        return {
            "current_context": current.to_dict() if current else None,
            "history_size": history_size,
            "max_history_size": self._max_history_size,
        }
