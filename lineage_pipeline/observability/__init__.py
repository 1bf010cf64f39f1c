"""Observability package for the Data Lineage Pipeline.

This package provides:
- Structured JSON logging (structlog)
- Prometheus metrics
- OpenTelemetry tracing
"""

from lineage_pipeline.observability.logging import StructuredLogger, get_logger, setup_logging
from lineage_pipeline.observability.metrics import MetricsManager, get_metrics_manager
from lineage_pipeline.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "MetricsManager",
    "StructuredLogger",
    "get_logger",
    "get_metrics_manager",
    "get_tracer",
    "setup_logging",
    "setup_tracing",
]
