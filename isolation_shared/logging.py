"""
Shared logging configuration for the Tenancy Isolation Layer.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Mapping, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar('organization_id', default=None)
department_id_var: ContextVar[Optional[str]] = ContextVar('department_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

_ISOLATION_VARS = {
    "tenant_id": tenant_id_var,
    "organization_id": organization_id_var,
    "department_id": department_id_var,
    "user_id": user_id_var,
}


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request and isolation context to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    for field_name, var in _ISOLATION_VARS.items():
        value = var.get()
        if value and field_name not in event_dict:
            event_dict[field_name] = value

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def bind_isolation_context(identifiers: Mapping[str, Optional[str]]) -> None:
    """Bind hierarchy identifiers to the logging context.

    Keys not present in ``identifiers`` are reset so a narrower context
    never inherits identifiers from a wider one.
    """
    for field_name, var in _ISOLATION_VARS.items():
        var.set(identifiers.get(field_name))


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    for var in _ISOLATION_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
