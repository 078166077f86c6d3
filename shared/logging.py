"""
Shared logging configuration for the SWR cache.
"""

import sys
import structlog
import logging
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation
cache_key_var: ContextVar[Optional[str]] = ContextVar('cache_key', default=None)
fetch_reason_var: ContextVar[Optional[str]] = ContextVar('fetch_reason', default=None)


def configure_logging(service_name: str = "swr_cache", log_level: str = "info") -> None:
    """Configure structured logging for the cache."""

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
    logging.getLogger(service_name).setLevel(getattr(logging, log_level.upper()))


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the component name (first logger name segment) to log events."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["component"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the cache key and fetch reason of the running fetch task."""
    cache_key = cache_key_var.get()
    if cache_key and "key" not in event_dict:
        event_dict["cache_key"] = cache_key

    reason = fetch_reason_var.get()
    if reason:
        event_dict["fetch_reason"] = reason

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def bind_fetch_context(cache_key: str, reason: Optional[str] = None) -> None:
    """Bind correlation context for the current fetch task."""
    cache_key_var.set(cache_key)
    fetch_reason_var.set(reason)


def clear_context():
    """Clear all context variables."""
    cache_key_var.set(None)
    fetch_reason_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
