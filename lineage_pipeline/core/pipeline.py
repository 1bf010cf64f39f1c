"""Wiring of the lineage pipeline.

``LineagePipeline`` builds the four channels (record, retrace and their
dead-letter channels), the store, the archive and the three stages from
settings. The API process and the worker process each hold one.
"""

from dataclasses import dataclass, field

from lineage_pipeline.config import Settings, get_settings
from lineage_pipeline.core.archive import Archive, create_archive
from lineage_pipeline.core.channel import DurableChannel, InMemoryChannel, RedisChannel
from lineage_pipeline.core.consumer import BatchPolicy, ChannelConsumer
from lineage_pipeline.core.dlq import DeadLetterQueue
from lineage_pipeline.lineage.ingress import IngressEndpoint, RetracePublisher
from lineage_pipeline.lineage.reconstructor import TraceReconstructor
from lineage_pipeline.lineage.store import LineageStore, create_store
from lineage_pipeline.lineage.writer import LineageStoreWriter
from lineage_pipeline.observability.logging import get_logger

logger = get_logger(__name__)

RECORD_CHANNEL = "records"
RETRACE_CHANNEL = "retrace"


def _build_channels(settings: Settings, name: str) -> tuple[DurableChannel, DurableChannel]:
    config = settings.channel
    if config.backend == "redis":
        common = {"redis_url": str(settings.redis.url), "prefix": settings.redis.key_prefix}
        dead = RedisChannel(f"{name}-dlq", **common)
        main = RedisChannel(
            name,
            visibility_timeout=config.visibility_timeout,
            max_receive_count=config.max_receive_count,
            dead_letter=dead,
            max_depth=config.max_depth,
            **common,
        )
        return main, dead
    dead = InMemoryChannel(f"{name}-dlq")
    main = InMemoryChannel(
        name,
        visibility_timeout=config.visibility_timeout,
        max_receive_count=config.max_receive_count,
        dead_letter=dead,
        max_depth=config.max_depth,
    )
    return main, dead


@dataclass
class LineagePipeline:
    """Every component of one pipeline deployment.

    Attributes:
        record_channel: Carries lineage events to the store writer
        retrace_channel: Carries retrace requests to the reconstructor
        store: Lineage store
        archive: Archive of reconstructed trees
        ingress: Ingress endpoint publishing to ``record_channel``
        retrace_publisher: Trigger publishing to ``retrace_channel``
        writer: Store writer stage
        reconstructor: Trace reconstructor stage
        dead_letters: Dead-letter views keyed by source channel name
    """
    settings: Settings
    record_channel: DurableChannel
    retrace_channel: DurableChannel
    store: LineageStore
    archive: Archive
    ingress: IngressEndpoint
    retrace_publisher: RetracePublisher
    writer: LineageStoreWriter
    reconstructor: TraceReconstructor
    dead_letters: dict[str, DeadLetterQueue] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        store: LineageStore | None = None,
        archive: Archive | None = None,
    ) -> "LineagePipeline":
        """Build a pipeline from settings.

        Args:
            settings: Application settings (defaults to the global settings)
            store: Store to use instead of the configured backend
            archive: Archive to use instead of the configured backend
        """
        settings = settings or get_settings()
        record_channel, record_dlq = _build_channels(settings, RECORD_CHANNEL)
        retrace_channel, retrace_dlq = _build_channels(settings, RETRACE_CHANNEL)
        if store is None:
            store = create_store(settings.store)
        if archive is None:
            archive = create_archive(settings.archive)
        retention = settings.channel.dead_letter_retention_days

        return cls(
            settings=settings,
            record_channel=record_channel,
            retrace_channel=retrace_channel,
            store=store,
            archive=archive,
            ingress=IngressEndpoint(record_channel),
            retrace_publisher=RetracePublisher(retrace_channel),
            writer=LineageStoreWriter(store, ttl_days=settings.store.ttl_days),
            reconstructor=TraceReconstructor(
                store,
                archive,
                settle_seconds=settings.retrace.settle_seconds,
                processing_timeout=settings.retrace.processing_timeout,
                lineage_actions=settings.retrace.lineage_actions(),
                purge_after_archive=settings.retrace.purge_after_archive,
                max_attempts=settings.channel.max_receive_count,
            ),
            dead_letters={
                RECORD_CHANNEL: DeadLetterQueue(record_dlq, record_channel, retention),
                RETRACE_CHANNEL: DeadLetterQueue(retrace_dlq, retrace_channel, retention),
            },
        )

    def writer_consumer(self) -> ChannelConsumer:
        config = self.settings.channel
        return ChannelConsumer(
            self.record_channel,
            self.writer.handle_batch,
            BatchPolicy(config.record_batch_size, config.record_batching_window, config.poll_wait),
        )

    def tracer_consumer(self) -> ChannelConsumer:
        config = self.settings.channel
        return ChannelConsumer(
            self.retrace_channel,
            self.reconstructor.handle_batch,
            BatchPolicy(config.retrace_batch_size, config.retrace_batching_window, config.poll_wait),
        )

    def channels(self) -> list[DurableChannel]:
        """Source channels followed by their dead-letter channels."""
        return [self.record_channel, self.retrace_channel] + [d.channel for d in self.dead_letters.values()]

    async def close(self) -> None:
        """Release channel and store connections."""
        for channel in self.channels():
            if isinstance(channel, RedisChannel):
                await channel.disconnect()
        await self.store.close()
        logger.info("pipeline_closed")


_pipeline: LineagePipeline | None = None


def get_pipeline() -> LineagePipeline:
    """Get or create the global pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = LineagePipeline.from_settings()
    return _pipeline


def set_pipeline(pipeline: LineagePipeline | None) -> None:
    """Set (or clear) the global pipeline."""
    global _pipeline
    _pipeline = pipeline
