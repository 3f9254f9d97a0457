"""Structured logging with correlation and tracing integration."""

import contextvars
import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from .config import LoggingConfig

# Module-level ContextVar for correlation IDs
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def _resolve_processor(dotted_name: str) -> Any | None:
    """Resolve ``structlog.<module>.<name>`` into a processor instance."""
    target: Any = structlog
    for part in dotted_name.split(".")[1:]:
        target = getattr(target, part, None)
        if target is None:
            return None

    # Classes (TimeStamper, StackInfoRenderer) need instantiating
    if isinstance(target, type):
        if target is structlog.processors.TimeStamper:
            return target(fmt="iso")
        return target()
    return target


def configure_structured_logging(config: LoggingConfig) -> None:
    """Configure structured logging with OpenTelemetry integration."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.level.upper()),
    )

    processors = []
    for processor_name in config.processors:
        processor = _resolve_processor(processor_name)
        if processor is not None:
            processors.append(processor)

    if config.enable_tracing_integration:
        processors.append(add_trace_context)

    if config.enable_correlation:
        processors.append(add_correlation_context)

    processors.append(structlog.processors.format_exc_info)

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.level.upper())
        ),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_trace_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add OpenTelemetry trace context to log entries."""
    span = trace.get_current_span()

    if span and span.is_recording():
        span_context = span.get_span_context()
        event_dict.update(
            {
                "trace_id": format(span_context.trace_id, "032x"),
                "span_id": format(span_context.span_id, "016x"),
            }
        )

    return event_dict


def add_correlation_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add correlation context to log entries."""
    if "correlation_id" not in event_dict:
        correlation_id = correlation_id_var.get()
        if correlation_id:
            event_dict["correlation_id"] = correlation_id

    return event_dict


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)
