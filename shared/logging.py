"""
Shared logging configuration for the route cache.

Engine components log through ``get_logger("route_cache.<component>")``. The
processors below stamp every event with the service, the component, and the
request and fingerprint currently being handled.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
fingerprint_var: ContextVar[Optional[str]] = ContextVar('fingerprint', default=None)

# Fingerprints are 64 hex chars; logs carry a prefix that is still unique in practice
FINGERPRINT_LOG_LENGTH = 16

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for the cache service."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

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
            service_context(service_name),
            add_component,
            add_cache_context,
            renderer,
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


def service_context(service_name: str) -> Processor:
    """Processor stamping the configured service name."""

    def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """route_cache.interceptor -> component=interceptor"""
    logger_name = event_dict.get("logger", "")
    if logger_name.startswith("route_cache."):
        event_dict["component"] = logger_name[len("route_cache."):]
    return event_dict


def add_cache_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the request id and fingerprint of the request in flight."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    fingerprint = fingerprint_var.get()
    if fingerprint and "fingerprint" not in event_dict:
        event_dict["fingerprint"] = fingerprint[:FINGERPRINT_LOG_LENGTH]

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_fingerprint(fingerprint: Optional[str]) -> None:
    fingerprint_var.set(fingerprint)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    fingerprint_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
