"""
Structured logging for services.

Every event is rendered as one JSON object stamped with the emitting
service, the request and caller it belongs to, and the active OpenTelemetry
trace. Background tasks inherit the request and caller of whoever spawned
them, so their events line up with the originating request.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, List, Optional

import structlog
from opentelemetry import trace

EventDict = Dict[str, Any]
Processor = Callable[[Any, str, EventDict], EventDict]

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


class ServiceContext:
    """Processor stamping events with the service name."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", self.service_name)
        return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach trace and span ids of the recording span, if any."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach the request id and caller id bound for the current context."""
    for key, var in (("request_id", request_id_var), ("user_id", user_id_var)):
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def build_processors(service_name: str, json: bool = True) -> List[Processor]:
    """Processor chain shared by every service."""
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        ServiceContext(service_name),
        add_trace_context,
        add_correlation_context,
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(),
    ]


def configure_logging(service_name: str, log_level: str = "info", json: bool = True) -> None:
    """Route structlog through stdlib logging on stdout at ``log_level``."""
    structlog.configure(
        processors=build_processors(service_name, json),
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


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh uuid) to the current context."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[Any] = None) -> None:
    """Bind the authenticated caller to the current context."""
    if user_id is not None:
        user_id_var.set(str(user_id))


def clear_context() -> None:
    request_id_var.set(None)
    user_id_var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
