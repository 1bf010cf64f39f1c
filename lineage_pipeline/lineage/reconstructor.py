"""Trace reconstructor: consumes the retrace channel.

For each retrace request the reconstructor reads one tree's records from
the lineage store, links every live record to its parent starting from the
virtual root, and writes the finished tree to the archive. A traversal
either completes or fails as a whole; a failed attempt archives nothing
and is retried through redelivery until the request is dead-lettered.

Traversal rules, per live candidate record:

- no parent (or the root itself as parent): child of the virtual root
- live candidate parent: child of that parent
- expired parent: the branch is cut (truncation ``expired``)
- parent present and live but outside the action filter: cut (``pruned``)
- parent absent: cut (``missing``) once the orphan is older than the
  settle window, otherwise the writer may still be catching up and the
  attempt fails with ``TraversalIncomplete``

Children are ordered by ``(recorded_at, node_id)``.
"""

import asyncio
from collections import deque
from datetime import datetime

from pydantic import ValidationError

from lineage_pipeline.core.archive import Archive, tree_key
from lineage_pipeline.core.channel import Delivery
from lineage_pipeline.core.consumer import BatchItemFailure
from lineage_pipeline.core.errors import (
    ArchiveError,
    ArchiveExistsError,
    TransientStoreError,
    TraversalIncomplete,
)
from lineage_pipeline.lineage.models import (
    RETRACE_TRANSITIONS,
    LineageRecord,
    LineageTree,
    LineageTreeNode,
    RetraceRequest,
    RetraceState,
    TruncationPoint,
    TruncationReason,
    utcnow,
)
from lineage_pipeline.lineage.store import DateClock, LineageStore
from lineage_pipeline.observability.logging import correlation_id_scope, get_logger, pipeline_context_scope
from lineage_pipeline.observability.metrics import MetricsManager, get_metrics_manager
from lineage_pipeline.observability.tracing import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

RETRYABLE_ERRORS = (TraversalIncomplete, TransientStoreError, ArchiveError, asyncio.TimeoutError)


def _order_key(record: LineageRecord) -> tuple[datetime, str]:
    return (record.recorded_at, record.node_id)


class RetraceAttempt:
    """One delivery of a retrace request moving through ``RetraceState``.

    A first delivery starts in ``RECEIVED``; a redelivery resumes from
    ``RETRYING``. The attempt is the last one when the delivery has used the
    final receive its channel allows.
    """

    def __init__(
        self,
        message_id: str,
        receive_count: int,
        max_attempts: int,
        metrics: MetricsManager,
    ) -> None:
        self.message_id = message_id
        self.receive_count = receive_count
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.request: RetraceRequest | None = None
        self.archive_key: str | None = None
        self.error: str | None = None
        self.state = RetraceState.RECEIVED if receive_count <= 1 else RetraceState.RETRYING
        self.history = [self.state]
        metrics.record_retrace_state(self.state.value)

    @property
    def is_last(self) -> bool:
        return self.receive_count >= self.max_attempts

    def transition(self, new_state: RetraceState) -> None:
        """Move to ``new_state``.

        Raises:
            ValueError: The transition is not allowed from the current state
        """
        if new_state not in RETRACE_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid retrace transition {self.state.value} -> {new_state.value}")
        logger.info(
            "retrace_state_changed",
            request_id=self.request.request_id if self.request else None,
            from_state=self.state.value,
            to_state=new_state.value,
            receive_count=self.receive_count,
        )
        self.state = new_state
        self.history.append(new_state)
        self.metrics.record_retrace_state(new_state.value)

    def fail(self, error: str) -> None:
        """Record a failed traversal: retry, or give up on the last attempt."""
        self.error = error
        self.transition(RetraceState.DEAD_LETTERED if self.is_last else RetraceState.RETRYING)


class TraceReconstructor:
    """Rebuilds lineage trees and archives them.

    Args:
        store: Lineage store to read from
        archive: Write-once archive for finished trees
        settle_seconds: Age after which a missing parent is presumed purged
        processing_timeout: Seconds one traversal and archive may take
        lineage_actions: Default lineage-forming actions (None: all actions)
        purge_after_archive: Delete a tree's records once it is archived
        max_attempts: Deliveries a request gets before it is dead-lettered
        clock: Time source for expiry and the settle window
        metrics: Metrics manager (defaults to the global one)
    """

    def __init__(
        self,
        store: LineageStore,
        archive: Archive,
        settle_seconds: float = 960.0,
        processing_timeout: float = 300.0,
        lineage_actions: list[str] | None = None,
        purge_after_archive: bool = False,
        max_attempts: int = 3,
        clock: DateClock = utcnow,
        metrics: MetricsManager | None = None,
    ) -> None:
        self.store = store
        self.archive = archive
        self.settle_seconds = settle_seconds
        self.processing_timeout = processing_timeout
        self.lineage_actions = sorted(set(lineage_actions)) if lineage_actions else None
        self.purge_after_archive = purge_after_archive
        self.max_attempts = max_attempts
        self._clock = clock
        self.metrics = metrics or get_metrics_manager()

    async def resolve_root(self, request: RetraceRequest) -> str:
        """Find the tree a request targets.

        Raises:
            TraversalIncomplete: The node is not in the node index
        """
        if request.root_id:
            return request.root_id
        record = await self.store.find_by_node(request.node_id, include_expired=True)
        if record is None:
            raise TraversalIncomplete(None, f"node {request.node_id} not found", missing_node_id=request.node_id)
        return record.root_id

    async def _load_candidates(self, root_id: str, actions: list[str] | None) -> list[LineageRecord]:
        if not actions:
            return await self.store.query_tree(root_id, include_expired=True)
        found: dict[str, LineageRecord] = {}
        for action in actions:
            for record in await self.store.query_by_action(root_id, action, include_expired=True):
                found[record.node_id] = record
        return list(found.values())

    async def build_tree(
        self,
        root_id: str,
        actions: list[str] | None = None,
        request_id: str | None = None,
    ) -> LineageTree:
        """Reconstruct one lineage tree.

        Args:
            root_id: Tree to reconstruct
            actions: Lineage-forming actions (defaults to the configured set)
            request_id: Request the tree is built for

        Returns:
            The complete tree, with its truncation points

        Raises:
            TraversalIncomplete: The tree has no records or a parent may
                still arrive
            TransientStoreError: A store read failed
        """
        actions = actions or self.lineage_actions
        candidates = await self._load_candidates(root_id, actions)
        if not candidates:
            raise TraversalIncomplete(root_id, "no records found")

        now = self._clock()
        by_id = {record.node_id: record for record in candidates}
        live = {node_id: record for node_id, record in by_id.items() if not record.is_expired(now)}

        children: dict[str | None, list[LineageRecord]] = {}
        truncated: dict[str, TruncationPoint] = {}

        def cut(parent_id: str, reason: TruncationReason, orphan: LineageRecord) -> None:
            point = truncated.setdefault(parent_id, TruncationPoint(node_id=parent_id, reason=reason))
            point.orphans.append(orphan.node_id)

        for record in sorted(live.values(), key=_order_key):
            parent_id = record.parent_id
            if parent_id is None or parent_id == root_id:
                children.setdefault(None, []).append(record)
            elif parent_id in live:
                children.setdefault(parent_id, []).append(record)
            elif parent_id in by_id:
                cut(parent_id, TruncationReason.EXPIRED, record)
            else:
                parent = None
                if actions:
                    parent = await self.store.get_record(root_id, parent_id, include_expired=True)
                if parent is not None:
                    reason = TruncationReason.EXPIRED if parent.is_expired(now) else TruncationReason.PRUNED
                    cut(parent_id, reason, record)
                elif (now - record.recorded_at).total_seconds() >= self.settle_seconds:
                    cut(parent_id, TruncationReason.MISSING, record)
                else:
                    raise TraversalIncomplete(
                        root_id,
                        f"parent {parent_id} of {record.node_id} not recorded yet",
                        missing_node_id=parent_id,
                    )

        top: list[LineageTreeNode] = []
        visited: set[str] = set()
        queue: deque[tuple[str | None, list[LineageTreeNode]]] = deque([(None, top)])
        while queue:
            parent_id, bucket = queue.popleft()
            for record in children.get(parent_id, []):
                if record.node_id in visited:
                    continue
                visited.add(record.node_id)
                node = LineageTreeNode.from_record(record)
                bucket.append(node)
                queue.append((record.node_id, node.children))

        tree_kwargs = {"request_id": request_id} if request_id else {}
        return LineageTree(
            root_id=root_id,
            children=top,
            node_count=len(visited),
            truncated=sorted(truncated.values(), key=lambda p: p.node_id),
            reconstructed_at=now,
            **tree_kwargs,
        )

    async def _purge(self, root_id: str) -> None:
        deleted = await self.store.delete_tree(root_id)
        logger.info("tree_records_purged", root_id=root_id, count=deleted)

    async def _retrace(self, request: RetraceRequest) -> str:
        try:
            root_id = await self.resolve_root(request)
        except TraversalIncomplete:
            # A purged tree takes its node index entries with it
            key = await self.archive.find_request(request.request_id) if self.purge_after_archive else None
            if key is None:
                raise
            logger.info("retrace_already_archived", node_id=request.node_id, key=key)
            return key

        key = tree_key(root_id, request.request_id, self.archive.prefix)
        if await self.archive.exists(key):
            logger.info("retrace_already_archived", root_id=root_id, key=key)
            if self.purge_after_archive:
                await self._purge(root_id)
            return key

        tree = await self.build_tree(root_id, request.actions, request.request_id)
        try:
            key = await self.archive.write_tree(tree)
        except ArchiveExistsError as e:
            logger.info("retrace_already_archived", root_id=root_id, key=e.key)
            key = e.key
        else:
            self.metrics.record_tree_size(tree.node_count)
        if tree.truncated:
            logger.info(
                "tree_truncated",
                root_id=root_id,
                points=[(p.node_id, p.reason.value) for p in tree.truncated],
            )
        if self.purge_after_archive:
            await self._purge(root_id)
        return key

    async def retrace(self, request: RetraceRequest) -> str:
        """Reconstruct and archive the tree a request targets.

        Returns:
            The archive key

        Raises:
            TraversalIncomplete, TransientStoreError, ArchiveError: retryable
            asyncio.TimeoutError: The attempt exceeded ``processing_timeout``
        """
        with tracer.start_as_current_span("lineage.retrace") as span, self.metrics.time_retrace():
            span.set_attribute("lineage.request_id", request.request_id)
            if request.root_id:
                span.set_attribute("lineage.root_id", request.root_id)
            key = await asyncio.wait_for(self._retrace(request), timeout=self.processing_timeout)
            span.set_attribute("lineage.archive_key", key)
            return key

    async def process(self, delivery: Delivery) -> RetraceAttempt:
        """Run one delivery through the retrace state machine."""
        attempt = RetraceAttempt(delivery.message_id, delivery.receive_count, self.max_attempts, self.metrics)
        try:
            attempt.request = RetraceRequest.model_validate_json(delivery.body)
        except ValidationError as e:
            logger.warning("malformed_retrace_request", error=str(e))
            attempt.error = f"MalformedRequest: {e.error_count()} validation errors"
            attempt.transition(RetraceState.DEAD_LETTERED)
            return attempt

        attempt.transition(RetraceState.TRAVERSING)
        try:
            attempt.archive_key = await self.retrace(attempt.request)
        except RETRYABLE_ERRORS as e:
            message = getattr(e, "message", None) or f"exceeded {self.processing_timeout}s"
            logger.warning(
                "retrace_failed",
                request_id=attempt.request.request_id,
                error_type=type(e).__name__,
                error=message,
                last_attempt=attempt.is_last,
            )
            attempt.fail(f"{type(e).__name__}: {message}")
        else:
            attempt.transition(RetraceState.ARCHIVED)
        return attempt

    async def handle_batch(self, deliveries: list[Delivery]) -> list[BatchItemFailure]:
        """Process a batch of retrace deliveries.

        Returns:
            One failure per request that was not archived
        """
        failures: list[BatchItemFailure] = []
        for delivery in deliveries:
            with correlation_id_scope(delivery.message_id), pipeline_context_scope(stage="retrace"):
                attempt = await self.process(delivery)
            if attempt.state is not RetraceState.ARCHIVED:
                failures.append(BatchItemFailure(
                    delivery.message_id,
                    attempt.error or "unknown",
                    terminal=attempt.state is RetraceState.DEAD_LETTERED,
                ))
        return failures
