"""Prometheus metrics for the Data Lineage Pipeline.

Metrics cover the three pipeline stages (ingress, store writer, trace
reconstructor) and the channels that connect them.
"""

import time
from contextlib import contextmanager
from typing import Generator, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

DEFAULT_REGISTRY = CollectorRegistry()

# =============================================================================
# Ingress Metrics
# =============================================================================

EVENTS_PUBLISHED = Counter(
    'lineage_events_published_total',
    'Total number of lineage events published to a channel',
    ['channel'],
    registry=DEFAULT_REGISTRY,
)

PUBLISH_ERRORS = Counter(
    'lineage_publish_errors_total',
    'Total number of failed channel hand-offs',
    ['channel', 'error_type'],
    registry=DEFAULT_REGISTRY,
)

# =============================================================================
# Channel Metrics
# =============================================================================

CONSUMER_BATCH_SIZE = Histogram(
    'lineage_consumer_batch_size',
    'Number of messages handed to a consumer handler per invocation',
    ['channel'],
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
    registry=DEFAULT_REGISTRY,
)

MESSAGES_ACKED = Counter(
    'lineage_messages_acked_total',
    'Total number of messages acknowledged after processing',
    ['channel'],
    registry=DEFAULT_REGISTRY,
)

MESSAGES_FAILED = Counter(
    'lineage_messages_failed_total',
    'Total number of messages left for redelivery after a failure',
    ['channel'],
    registry=DEFAULT_REGISTRY,
)

MESSAGES_DEAD_LETTERED = Counter(
    'lineage_messages_dead_lettered_total',
    'Total number of messages moved to a dead-letter channel',
    ['channel', 'reason'],
    registry=DEFAULT_REGISTRY,
)

CHANNEL_DEPTH = Gauge(
    'lineage_channel_depth',
    'Messages waiting in a channel',
    ['channel', 'state'],
    registry=DEFAULT_REGISTRY,
)

# =============================================================================
# Store Metrics
# =============================================================================

RECORDS_WRITTEN = Counter(
    'lineage_records_written_total',
    'Total number of lineage records upserted',
    registry=DEFAULT_REGISTRY,
)

STORE_ERRORS = Counter(
    'lineage_store_errors_total',
    'Total number of lineage store failures',
    ['operation', 'error_type'],
    registry=DEFAULT_REGISTRY,
)

RECORDS_PURGED = Counter(
    'lineage_records_purged_total',
    'Total number of expired lineage records purged',
    registry=DEFAULT_REGISTRY,
)

# =============================================================================
# Retrace Metrics
# =============================================================================

RETRACE_TRANSITIONS = Counter(
    'lineage_retrace_total',
    'Retrace requests entering each state',
    ['state'],
    registry=DEFAULT_REGISTRY,
)

RETRACE_DURATION = Histogram(
    'lineage_retrace_duration_seconds',
    'Time spent traversing and archiving a lineage tree',
    ['outcome'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
    registry=DEFAULT_REGISTRY,
)

TREE_NODES = Histogram(
    'lineage_tree_nodes',
    'Number of nodes in archived lineage trees',
    buckets=[1, 5, 10, 50, 100, 500, 1000, 5000, 10000],
    registry=DEFAULT_REGISTRY,
)

SYSTEM_INFO = Info(
    'lineage_pipeline',
    'Data lineage pipeline build information',
    registry=DEFAULT_REGISTRY,
)


class MetricsManager:
    """Records pipeline metrics.

    Example:
        >>> manager = MetricsManager()
        >>> manager.record_published("records")
        >>> with manager.time_retrace():
        ...     await reconstructor.retrace(request)
    """

    def __init__(self, registry: CollectorRegistry = DEFAULT_REGISTRY):
        self.registry = registry

    def record_published(self, channel: str) -> None:
        EVENTS_PUBLISHED.labels(channel=channel).inc()

    def record_publish_error(self, channel: str, error_type: str) -> None:
        PUBLISH_ERRORS.labels(channel=channel, error_type=error_type).inc()

    def record_batch(self, channel: str, size: int, acked: int, failed: int) -> None:
        """Record the outcome of one consumer invocation.

        Args:
            channel: Channel name
            size: Messages handed to the handler
            acked: Messages acknowledged
            failed: Messages left for redelivery or dead-lettered
        """
        CONSUMER_BATCH_SIZE.labels(channel=channel).observe(size)
        if acked:
            MESSAGES_ACKED.labels(channel=channel).inc(acked)
        if failed:
            MESSAGES_FAILED.labels(channel=channel).inc(failed)

    def record_dead_lettered(self, channel: str, reason: str) -> None:
        MESSAGES_DEAD_LETTERED.labels(channel=channel, reason=reason).inc()

    def record_channel_depth(self, channel: str, visible: int, in_flight: int) -> None:
        CHANNEL_DEPTH.labels(channel=channel, state="visible").set(visible)
        CHANNEL_DEPTH.labels(channel=channel, state="in_flight").set(in_flight)

    def record_written(self, count: int = 1) -> None:
        RECORDS_WRITTEN.inc(count)

    def record_store_error(self, operation: str, error_type: str) -> None:
        STORE_ERRORS.labels(operation=operation, error_type=error_type).inc()

    def record_purged(self, count: int) -> None:
        if count:
            RECORDS_PURGED.inc(count)

    def record_retrace_state(self, state: str) -> None:
        RETRACE_TRANSITIONS.labels(state=state).inc()

    def record_tree_size(self, node_count: int) -> None:
        TREE_NODES.observe(node_count)

    @contextmanager
    def time_retrace(self) -> Generator[None, None, None]:
        """Time a retrace, labelling the outcome by exception type."""
        start = time.time()
        outcome = "archived"
        try:
            yield
        except Exception as e:
            outcome = type(e).__name__
            raise
        finally:
            RETRACE_DURATION.labels(outcome=outcome).observe(time.time() - start)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus exposition format."""
        return generate_latest(self.registry)


_metrics_manager: Optional[MetricsManager] = None


def get_metrics_manager() -> MetricsManager:
    """Get or create the global metrics manager."""
    global _metrics_manager
    if _metrics_manager is None:
        _metrics_manager = MetricsManager()
    return _metrics_manager
