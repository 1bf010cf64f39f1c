"""Worker service main entry point.

This module provides the worker service that runs the store writer and
the trace reconstructor against their channels, plus a maintenance loop
that purges expired lineage records and dead letters past retention. It
can run as a standalone service or be embedded in the API process.
"""

import argparse
import asyncio
import signal
from enum import Enum
from uuid import uuid4

from lineage_pipeline.config import get_settings
from lineage_pipeline.core.consumer import ChannelConsumer
from lineage_pipeline.core.pipeline import LineagePipeline, get_pipeline
from lineage_pipeline.observability.logging import get_logger, setup_logging
from lineage_pipeline.observability.metrics import get_metrics_manager
from lineage_pipeline.observability.tracing import setup_tracing, shutdown_tracing

logger = get_logger(__name__)


class WorkerRole(str, Enum):
    """Which stages a worker runs."""
    WRITER = "writer"
    TRACER = "tracer"
    ALL = "all"


class WorkerService:
    """Runs pipeline consumers until stopped.

    Example:
        >>> worker = WorkerService(role=WorkerRole.WRITER)
        >>> await worker.start()
        >>> # Run until stopped
        >>> await worker.stop()
    """

    def __init__(
        self,
        pipeline: LineagePipeline | None = None,
        role: WorkerRole = WorkerRole.ALL,
        worker_id: str | None = None,
        maintenance_interval: float | None = None,
        shutdown_timeout: float | None = None,
    ) -> None:
        """Initialize the worker service.

        Args:
            pipeline: Pipeline to run (defaults to the global pipeline)
            role: Stages to run
            worker_id: Unique identifier for this worker (auto-generated if None)
            maintenance_interval: Seconds between maintenance sweeps
            shutdown_timeout: Seconds to let in-flight batches finish on stop
        """
        self.pipeline = pipeline or get_pipeline()
        self.role = WorkerRole(role)
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        settings = self.pipeline.settings
        self.maintenance_interval = maintenance_interval or settings.store.purge_interval_seconds
        self.shutdown_timeout = shutdown_timeout or settings.channel.poll_wait + 5.0
        self.metrics = get_metrics_manager()
        self.consumers: list[ChannelConsumer] = self._build_consumers()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def _build_consumers(self) -> list[ChannelConsumer]:
        consumers = []
        if self.role in (WorkerRole.WRITER, WorkerRole.ALL):
            consumers.append(self.pipeline.writer_consumer())
        if self.role in (WorkerRole.TRACER, WorkerRole.ALL):
            consumers.append(self.pipeline.tracer_consumer())
        return consumers

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start consumers and the maintenance loop, and run until stopped."""
        if self._running:
            logger.warning("worker_service_already_running", worker_id=self.worker_id)
            return

        self._running = True
        self._shutdown_event.clear()
        logger.info(
            "worker_service_started",
            worker_id=self.worker_id,
            role=self.role.value,
            channels=[c.channel.name for c in self.consumers],
        )
        self._tasks = [
            asyncio.create_task(consumer.run(self._shutdown_event), name=f"consume-{consumer.channel.name}")
            for consumer in self.consumers
        ]
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="maintenance"))

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("worker_service_cancelled", worker_id=self.worker_id)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the worker service gracefully.

        Consumers finish the batch they hold; anything still running after
        ``shutdown_timeout`` is cancelled and its messages are redelivered.
        """
        if not self._running:
            return

        logger.info("stopping_worker_service", worker_id=self.worker_id)
        self._running = False
        self._shutdown_event.set()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("worker_service_stopped", worker_id=self.worker_id)

    async def run_maintenance(self) -> dict[str, int]:
        """Purge expired records and dead letters; publish channel depths.

        Returns:
            Counts of what was purged
        """
        result = {"records_purged": await self.pipeline.store.purge_expired()}
        self.metrics.record_purged(result["records_purged"])
        for name, dlq in self.pipeline.dead_letters.items():
            result[f"{name}_dead_letters_purged"] = await dlq.purge_expired()
        for channel in self.pipeline.channels():
            depth = await channel.depth()
            self.metrics.record_channel_depth(channel.name, depth["visible"], depth["in_flight"])
        logger.info("maintenance_completed", worker_id=self.worker_id, **result)
        return result

    async def _maintenance_loop(self) -> None:
        """Periodically run maintenance until shutdown."""
        while self._running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.maintenance_interval)
                break
            except TimeoutError:
                pass
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error("maintenance_failed", worker_id=self.worker_id, error=str(e))

    def signal_handler(self, sig: int) -> None:
        """Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info("received_shutdown_signal", worker_id=self.worker_id, signal=sig)
        self._shutdown_event.set()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Data lineage pipeline worker")
    parser.add_argument(
        "--role",
        choices=[r.value for r in WorkerRole],
        default=WorkerRole.ALL.value,
        help="Stages to run: the store writer, the trace reconstructor, or both",
    )
    parser.add_argument("--worker-id", help="Unique worker identifier")
    parser.add_argument(
        "--maintenance-interval",
        type=float,
        help="Seconds between maintenance sweeps (defaults to STORE_PURGE_INTERVAL_SECONDS)",
    )
    return parser


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the worker service."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        json_format=settings.observability.log_format == "json",
        log_level=settings.observability.log_level,
    )
    setup_tracing(settings.observability)

    pipeline = LineagePipeline.from_settings(settings)
    worker = WorkerService(
        pipeline=pipeline,
        role=WorkerRole(args.role),
        worker_id=args.worker_id,
        maintenance_interval=args.maintenance_interval,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.signal_handler, sig)

    try:
        await worker.start()
    finally:
        await pipeline.close()
        shutdown_tracing()


def cli() -> None:
    """Command-line entry point (``lineage-worker``)."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
