"""
Isolation context package.

- models: IsolationContext, IsolationLevel and per-context access rules.
- manager: Current-context holder with a bounded history buffer.
"""

from .models import (
    ContextAccessRule,
    IsolationContext,
    IsolationLevel,
    IDENTIFIER_SLOTS,
)
from .manager import IsolationContextManager, default_level_access

__all__ = [
    "ContextAccessRule",
    "IsolationContext",
    "IsolationLevel",
    "IDENTIFIER_SLOTS",
    "IsolationContextManager",
    "default_level_access",
]
