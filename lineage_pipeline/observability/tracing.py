"""OpenTelemetry tracing for the Data Lineage Pipeline."""

from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from lineage_pipeline.config import ObservabilitySettings

_tracer_provider: Optional[TracerProvider] = None


def get_tracer(name: str = "lineage-pipeline") -> trace.Tracer:
    """Get a tracer instance.

    Args:
        name: The tracer name (usually module name)

    Returns:
        OpenTelemetry Tracer instance
    """
    return trace.get_tracer(name)


def setup_tracing(config: ObservabilitySettings) -> TracerProvider:
    """Install a global tracer provider for the service.

    Spans are exported to the console when ``console_spans`` is enabled;
    otherwise they are created (so trace ids reach the logs) but not exported.

    Args:
        config: Observability settings

    Returns:
        The installed TracerProvider
    """
    global _tracer_provider
    if _tracer_provider is not None:
        return _tracer_provider

    resource = Resource.create({
        SERVICE_NAME: config.service_name,
        SERVICE_VERSION: config.service_version,
        "deployment.environment": config.environment,
    })
    provider = TracerProvider(resource=resource)
    if config.console_spans:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    return provider


def shutdown_tracing() -> None:
    """Flush and shut down the tracer provider."""
    global _tracer_provider
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        _tracer_provider = None
