"""Lineage store writer: consumes the record channel.

Each delivery carries one ``LineageEvent``. The writer resolves the event's
tree, stamps a TTL, and upserts the record keyed by ``(root_id, node_id)``,
so a redelivered event overwrites its own earlier write instead of adding a
second record.
"""

from datetime import timedelta

from pydantic import ValidationError

from lineage_pipeline.core.channel import Delivery
from lineage_pipeline.core.consumer import BatchItemFailure
from lineage_pipeline.core.errors import RootResolutionPending, TransientStoreError
from lineage_pipeline.lineage.models import LineageEvent, LineageRecord, utcnow
from lineage_pipeline.lineage.store import DateClock, LineageStore
from lineage_pipeline.observability.logging import correlation_id_scope, get_logger
from lineage_pipeline.observability.metrics import MetricsManager, get_metrics_manager

logger = get_logger(__name__)


class LineageStoreWriter:
    """Writes lineage events into the lineage store.

    Args:
        store: Lineage store
        ttl_days: Days a record lives before it may be purged
        clock: Time source for ``recorded_at`` and the TTL
        metrics: Metrics manager (defaults to the global one)
    """

    def __init__(
        self,
        store: LineageStore,
        ttl_days: int = 90,
        clock: DateClock = utcnow,
        metrics: MetricsManager | None = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock
        self.metrics = metrics or get_metrics_manager()

    async def resolve_root(self, event: LineageEvent) -> str:
        """Find the tree an event belongs to.

        Raises:
            RootResolutionPending: The parent is not in the node index yet
        """
        if event.root_id:
            return event.root_id
        if event.parent_id is None:
            # New tree rooted at an id derived from the node itself
            return event.node_id
        parent = await self.store.find_by_node(event.parent_id, include_expired=True)
        if parent is None:
            raise RootResolutionPending(event.node_id, event.parent_id)
        return parent.root_id

    async def write(self, event: LineageEvent) -> LineageRecord:
        """Persist one event.

        Returns:
            The record that was upserted
        """
        now = self._clock()
        record = LineageRecord(
            root_id=await self.resolve_root(event),
            node_id=event.node_id,
            parent_id=event.parent_id,
            action_taken=event.action_taken,
            record=event.payload,
            recorded_at=now,
            ttl_expiry=int((now + self.ttl).timestamp()),
        )
        await self.store.put_record(record)
        self.metrics.record_written()
        logger.debug(
            "record_written",
            root_id=record.root_id,
            node_id=record.node_id,
            parent_id=record.parent_id,
            action_taken=record.action_taken,
        )
        return record

    async def handle_batch(self, deliveries: list[Delivery]) -> list[BatchItemFailure]:
        """Write a batch of deliveries.

        Returns:
            One failure per delivery that was not written
        """
        failures: list[BatchItemFailure] = []
        for delivery in deliveries:
            with correlation_id_scope(delivery.message_id):
                try:
                    await self.write(LineageEvent.model_validate_json(delivery.body))
                except ValidationError as e:
                    logger.warning("malformed_lineage_event", error=str(e))
                    failures.append(BatchItemFailure(
                        delivery.message_id,
                        f"MalformedEvent: {e.error_count()} validation errors",
                        terminal=True,
                    ))
                except RootResolutionPending as e:
                    logger.info("root_resolution_pending", node_id=e.node_id, parent_id=e.parent_id)
                    failures.append(BatchItemFailure(delivery.message_id, f"RootResolutionPending: {e.message}"))
                except TransientStoreError as e:
                    logger.warning("record_write_failed", error=e.message)
                    failures.append(BatchItemFailure(delivery.message_id, f"TransientStoreError: {e.message}"))
        if len(failures) < len(deliveries):
            logger.info("records_batch_written", written=len(deliveries) - len(failures), failed=len(failures))
        return failures
