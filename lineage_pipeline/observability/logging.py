"""Structured logging configuration for the Data Lineage Pipeline.

Log events are structlog key/value records rendered as JSON (or console
output in development). Every record carries the OpenTelemetry trace
context, the correlation id of the message or request being handled, and
any bound pipeline context such as the channel name.
"""

import logging
import sys
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from opentelemetry import trace
from structlog.types import FilteringBoundLogger

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_pipeline_context: ContextVar[dict[str, Any]] = ContextVar("pipeline_context", default={})


def add_trace_context(
    logger: FilteringBoundLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add the active OpenTelemetry span to a log event."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def add_correlation_id(
    logger: FilteringBoundLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add the current correlation id to a log event."""
    corr_id = _correlation_id.get()
    if corr_id:
        event_dict.setdefault("correlation_id", corr_id)
    return event_dict


def add_pipeline_context(
    logger: FilteringBoundLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Merge bound pipeline context into a log event."""
    context = _pipeline_context.get()
    for key, value in context.items():
        event_dict.setdefault(key, value)
    return event_dict


class StructuredLogger:
    """Structured logging manager.

    Example:
        >>> manager = StructuredLogger()
        >>> manager.setup_logging(json_format=True)
        >>> log = manager.get_logger("lineage_pipeline.worker")
        >>> log.info("worker_started", role="writer")
    """

    def __init__(self) -> None:
        self._configured = False

    def setup_logging(
        self,
        json_format: bool = True,
        log_level: str = "INFO",
        include_trace_context: bool = True,
    ) -> None:
        """Configure stdlib logging and structlog.

        Args:
            json_format: Render JSON (True) or human readable console output
            log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            include_trace_context: Attach OpenTelemetry trace and span ids
        """
        if self._configured:
            return

        logging.basicConfig(
            format="%(message)s",
            stream=sys.stdout,
            level=getattr(logging, log_level.upper()),
        )

        processors: list[Any] = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
        ]
        if include_trace_context:
            processors.append(add_trace_context)
        processors.extend([
            add_correlation_id,
            add_pipeline_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ])
        if json_format:
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer())

        structlog.configure(
            processors=processors,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        self._configured = True

    def get_logger(self, name: str) -> FilteringBoundLogger:
        """Get a logger, configuring defaults on first use."""
        if not self._configured:
            self.setup_logging()
        return structlog.get_logger(name)


_structured_logger: StructuredLogger | None = None


def get_logger(name: str) -> FilteringBoundLogger:
    """Get a structured logger.

    Args:
        name: Logger name (usually ``__name__``)

    Returns:
        Structured logger instance
    """
    global _structured_logger
    if _structured_logger is None:
        _structured_logger = StructuredLogger()
    return _structured_logger.get_logger(name)


def setup_logging(
    json_format: bool = True,
    log_level: str = "INFO",
    **kwargs: Any,
) -> StructuredLogger:
    """Configure structured logging globally.

    Args:
        json_format: Whether to output JSON
        log_level: Minimum log level
        **kwargs: Passed to ``StructuredLogger.setup_logging``

    Returns:
        Configured StructuredLogger
    """
    global _structured_logger
    _structured_logger = StructuredLogger()
    _structured_logger.setup_logging(json_format=json_format, log_level=log_level, **kwargs)
    return _structured_logger


def get_correlation_id() -> str | None:
    """Get the current correlation id."""
    return _correlation_id.get()


def get_pipeline_context() -> dict[str, Any]:
    """Get a copy of the bound pipeline context."""
    return dict(_pipeline_context.get())


@contextmanager
def correlation_id_scope(correlation_id: str) -> Generator[None, None, None]:
    """Bind a correlation id for the duration of the block.

    Example:
        >>> with correlation_id_scope(delivery.message_id):
        ...     logger.info("record_written")
    """
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


@contextmanager
def pipeline_context_scope(**context: Any) -> Generator[None, None, None]:
    """Bind extra pipeline context (merged over any outer context)."""
    token = _pipeline_context.set({**_pipeline_context.get(), **context})
    try:
        yield
    finally:
        _pipeline_context.reset(token)
