"""Batch polling consumer for durable channels.

A consumer collects deliveries into batches and hands each non-empty batch
to a handler once. The handler reports per-message failures (a partial
batch response); everything it does not report is acknowledged. Failed
messages are not retried here: they stay unacknowledged so the channel
redelivers them once their visibility window expires, and a message that
fails on its last allowed delivery is dead-lettered.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from opentelemetry.trace import Status, StatusCode

from lineage_pipeline.core.channel import Clock, Delivery, DurableChannel
from lineage_pipeline.core.errors import ChannelError
from lineage_pipeline.observability.logging import get_logger, pipeline_context_scope
from lineage_pipeline.observability.metrics import MetricsManager, get_metrics_manager
from lineage_pipeline.observability.tracing import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)


@dataclass
class BatchItemFailure:
    """A message the handler could not process.

    Attributes:
        message_id: Id of the failed delivery
        reason: Short failure description (kept on the dead-letter message)
        terminal: Redelivery cannot help; dead-letter now
    """
    message_id: str
    reason: str
    terminal: bool = False


BatchHandler = Callable[[list[Delivery]], Awaitable[list[BatchItemFailure]]]


@dataclass
class BatchPolicy:
    """How a consumer gathers a batch.

    Attributes:
        batch_size: Maximum deliveries per handler invocation
        batching_window: Seconds to keep gathering once one message is held
        poll_wait: Seconds to long-poll for the first message
        error_backoff: Seconds to pause after the channel itself fails
    """
    batch_size: int = 10
    batching_window: float = 0.0
    poll_wait: float = 20.0
    error_backoff: float = 5.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.batching_window < 0 or self.poll_wait < 0:
            raise ValueError("batching_window and poll_wait cannot be negative")


class ChannelConsumer:
    """Polls a channel and dispatches batches to a handler.

    Args:
        channel: Channel to consume
        handler: Coroutine processing a batch, returning its failures
        policy: Batch gathering policy
        clock: Time source measuring the batching window
        metrics: Metrics manager (defaults to the global one)

    Example:
        >>> consumer = ChannelConsumer(channel, writer.handle_batch, BatchPolicy(100, 60.0))
        >>> await consumer.run(stop_event)
    """

    def __init__(
        self,
        channel: DurableChannel,
        handler: BatchHandler,
        policy: BatchPolicy | None = None,
        clock: Clock = time.time,
        metrics: MetricsManager | None = None,
    ) -> None:
        self.channel = channel
        self.handler = handler
        self.policy = policy or BatchPolicy()
        self._clock = clock
        self.metrics = metrics or get_metrics_manager()
        self.invocations = 0

    async def poll_batch(self) -> list[Delivery]:
        """Gather up to ``batch_size`` deliveries.

        Waits up to ``poll_wait`` for the first message. Once one is held,
        keeps receiving until the batch is full or ``batching_window`` has
        elapsed, whichever comes first.
        """
        policy = self.policy
        batch = await self.channel.receive(policy.batch_size, wait_seconds=policy.poll_wait)
        if not batch:
            return []

        deadline = self._clock() + policy.batching_window
        while len(batch) < policy.batch_size:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            batch.extend(await self.channel.receive(
                policy.batch_size - len(batch),
                wait_seconds=remaining,
            ))
        return batch

    async def run_once(self) -> int:
        """Gather one batch and process it.

        Returns:
            Number of deliveries handed to the handler (0 when idle)
        """
        batch = await self.poll_batch()
        if not batch:
            return 0

        self.invocations += 1
        with pipeline_context_scope(channel=self.channel.name), \
                tracer.start_as_current_span("lineage.consume_batch") as span:
            span.set_attribute("lineage.channel", self.channel.name)
            span.set_attribute("lineage.batch_size", len(batch))
            try:
                failures = await self.handler(batch)
            except Exception as e:
                logger.exception("batch_handler_failed", batch_size=len(batch), error=str(e))
                span.set_status(Status(StatusCode.ERROR, str(e)))
                failures = [BatchItemFailure(d.message_id, f"{type(e).__name__}: {e}") for d in batch]

            failed = await self._settle(batch, failures)

        logger.info(
            "batch_processed",
            channel=self.channel.name,
            batch_size=len(batch),
            failed=failed,
        )
        return len(batch)

    async def _settle(self, batch: list[Delivery], failures: list[BatchItemFailure]) -> int:
        by_id = {f.message_id: f for f in failures}
        acked = 0
        for delivery in batch:
            failure = by_id.get(delivery.message_id)
            if failure is None:
                if await self.channel.ack(delivery):
                    acked += 1
                continue
            reason = failure.reason
            if failure.terminal or delivery.receive_count >= self.channel.max_receive_count:
                try:
                    parked = await self.channel.dead_letter(delivery, reason)
                except ChannelError as e:
                    # Still in flight here; the next receive after the window retries it
                    logger.error(
                        "dead_letter_failed",
                        message_id=delivery.message_id,
                        reason=reason,
                        error=str(e),
                    )
                    continue
                if parked:
                    self.metrics.record_dead_lettered(self.channel.name, reason.split(":", 1)[0])
            else:
                logger.info(
                    "message_left_for_redelivery",
                    message_id=delivery.message_id,
                    receive_count=delivery.receive_count,
                    reason=reason,
                )
        failed = len(batch) - acked
        self.metrics.record_batch(self.channel.name, len(batch), acked, failed)
        return failed

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume until ``stop_event`` is set."""
        logger.info("consumer_started", channel=self.channel.name, batch_size=self.policy.batch_size)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except ChannelError as e:
                logger.error("channel_poll_failed", channel=self.channel.name, error=str(e))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.policy.error_backoff)
                except TimeoutError:
                    continue
        logger.info("consumer_stopped", channel=self.channel.name, invocations=self.invocations)
