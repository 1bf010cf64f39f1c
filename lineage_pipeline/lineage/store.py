"""Lineage store: records keyed by ``(root_id, node_id)``.

The store offers an idempotent upsert, a point lookup, a node index (find
a record's tree from its node id alone), a per-tree action index and a
partition scan. Expiry is lazy: a record past its ``ttl_expiry`` stays
physically present until ``purge_expired`` removes it, and every read
hides it unless ``include_expired`` is set.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from lineage_pipeline.config import StoreSettings
from lineage_pipeline.core.errors import TransientStoreError
from lineage_pipeline.db.models import LineageRecordModel, dispose_engine, get_session_factory
from lineage_pipeline.db.repositories.lineage import LineageRecordRepository
from lineage_pipeline.lineage.models import LineageRecord, utcnow
from lineage_pipeline.observability.logging import get_logger
from lineage_pipeline.observability.metrics import get_metrics_manager

logger = get_logger(__name__)

DateClock = Callable[[], datetime]


def _order(records: list[LineageRecord]) -> list[LineageRecord]:
    return sorted(records, key=lambda r: (r.recorded_at, r.node_id))


class LineageStore(ABC):
    """Storage contract shared by the writer, the reconstructor and the API."""

    def __init__(self, clock: DateClock = utcnow) -> None:
        self._clock = clock

    def _visible(self, record: LineageRecord | None, include_expired: bool) -> LineageRecord | None:
        if record is None or include_expired or not record.is_expired(self._clock()):
            return record
        return None

    @abstractmethod
    async def put_record(self, record: LineageRecord) -> None:
        """Insert or overwrite the record with the same key."""

    @abstractmethod
    async def get_record(
        self, root_id: str, node_id: str, include_expired: bool = False
    ) -> LineageRecord | None:
        """Point lookup by composite key."""

    @abstractmethod
    async def find_by_node(self, node_id: str, include_expired: bool = False) -> LineageRecord | None:
        """Find a record from its node id alone."""

    @abstractmethod
    async def query_by_action(
        self, root_id: str, action_taken: str, include_expired: bool = False
    ) -> list[LineageRecord]:
        """List one tree's records carrying an action."""

    @abstractmethod
    async def query_tree(self, root_id: str, include_expired: bool = False) -> list[LineageRecord]:
        """List every record of one tree."""

    @abstractmethod
    async def delete_tree(self, root_id: str) -> int:
        """Delete a tree's records. Returns the number deleted."""

    @abstractmethod
    async def purge_expired(self, now: datetime | None = None) -> int:
        """Physically delete expired records. Returns the number deleted."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryLineageStore(LineageStore):
    """Single-process store: an arena of records plus two index maps.

    Example:
        >>> store = InMemoryLineageStore()
        >>> await store.put_record(record)
        >>> await store.find_by_node(record.node_id)
    """

    def __init__(self, clock: DateClock = utcnow) -> None:
        super().__init__(clock)
        self._records: dict[tuple[str, str], LineageRecord] = {}
        self._node_index: dict[str, set[str]] = {}
        self._action_index: dict[tuple[str, str], set[str]] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def put_record(self, record: LineageRecord) -> None:
        previous = self._records.get(record.key)
        if previous is not None and previous.action_taken != record.action_taken:
            self._action_index[(previous.root_id, previous.action_taken)].discard(previous.node_id)
        self._records[record.key] = record
        self._node_index.setdefault(record.node_id, set()).add(record.root_id)
        self._action_index.setdefault((record.root_id, record.action_taken), set()).add(record.node_id)

    async def get_record(
        self, root_id: str, node_id: str, include_expired: bool = False
    ) -> LineageRecord | None:
        return self._visible(self._records.get((root_id, node_id)), include_expired)

    async def find_by_node(self, node_id: str, include_expired: bool = False) -> LineageRecord | None:
        candidates = [
            self._visible(self._records.get((root_id, node_id)), include_expired)
            for root_id in self._node_index.get(node_id, ())
        ]
        found = [r for r in candidates if r is not None]
        if not found:
            return None
        return max(found, key=lambda r: (r.recorded_at, r.root_id))

    async def query_by_action(
        self, root_id: str, action_taken: str, include_expired: bool = False
    ) -> list[LineageRecord]:
        records = [
            self._visible(self._records.get((root_id, node_id)), include_expired)
            for node_id in self._action_index.get((root_id, action_taken), ())
        ]
        return _order([r for r in records if r is not None])

    async def query_tree(self, root_id: str, include_expired: bool = False) -> list[LineageRecord]:
        records = [
            self._visible(record, include_expired)
            for key, record in self._records.items()
            if key[0] == root_id
        ]
        return _order([r for r in records if r is not None])

    def _remove(self, record: LineageRecord) -> None:
        del self._records[record.key]
        roots = self._node_index.get(record.node_id)
        if roots is not None:
            roots.discard(record.root_id)
            if not roots:
                del self._node_index[record.node_id]
        nodes = self._action_index.get((record.root_id, record.action_taken))
        if nodes is not None:
            nodes.discard(record.node_id)
            if not nodes:
                del self._action_index[(record.root_id, record.action_taken)]

    async def delete_tree(self, root_id: str) -> int:
        doomed = [r for key, r in self._records.items() if key[0] == root_id]
        for record in doomed:
            self._remove(record)
        return len(doomed)

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        doomed = [r for r in self._records.values() if r.is_expired(now)]
        for record in doomed:
            self._remove(record)
        if doomed:
            logger.info("expired_records_purged", count=len(doomed))
        return len(doomed)


class SqlLineageStore(LineageStore):
    """Store backed by the ``lineage_records`` PostgreSQL table.

    Each operation runs in its own session; database errors surface as
    ``TransientStoreError`` so the message is redelivered.
    """

    def __init__(self, session_factory=None, clock: DateClock = utcnow) -> None:
        super().__init__(clock)
        self._owns_engine = session_factory is None
        self._session_factory = session_factory or get_session_factory()
        self.metrics = get_metrics_manager()

    async def close(self) -> None:
        if self._owns_engine:
            await dispose_engine()

    def _now(self, include_expired: bool) -> int | None:
        return None if include_expired else int(self._clock().timestamp())

    @staticmethod
    def _to_record(row: LineageRecordModel | None) -> LineageRecord | None:
        if row is None:
            return None
        return LineageRecord(
            root_id=row.root_id,
            node_id=row.node_id,
            parent_id=row.parent_id,
            action_taken=row.action_taken,
            record=row.record or {},
            recorded_at=row.recorded_at,
            ttl_expiry=row.ttl_expiry,
        )

    def _failed(self, operation: str, error: SQLAlchemyError) -> TransientStoreError:
        self.metrics.record_store_error(operation, type(error).__name__)
        logger.error("lineage_store_error", operation=operation, error=str(error))
        return TransientStoreError(f"Lineage store {operation} failed: {error}")

    async def put_record(self, record: LineageRecord) -> None:
        try:
            async with self._session_factory() as session:
                await LineageRecordRepository(session).upsert(record.model_dump())
        except SQLAlchemyError as e:
            raise self._failed("put_record", e) from e

    async def get_record(
        self, root_id: str, node_id: str, include_expired: bool = False
    ) -> LineageRecord | None:
        try:
            async with self._session_factory() as session:
                row = await LineageRecordRepository(session).get(root_id, node_id, self._now(include_expired))
        except SQLAlchemyError as e:
            raise self._failed("get_record", e) from e
        return self._to_record(row)

    async def find_by_node(self, node_id: str, include_expired: bool = False) -> LineageRecord | None:
        try:
            async with self._session_factory() as session:
                row = await LineageRecordRepository(session).find_by_node(node_id, self._now(include_expired))
        except SQLAlchemyError as e:
            raise self._failed("find_by_node", e) from e
        return self._to_record(row)

    async def query_by_action(
        self, root_id: str, action_taken: str, include_expired: bool = False
    ) -> list[LineageRecord]:
        try:
            async with self._session_factory() as session:
                rows = await LineageRecordRepository(session).list_by_action(
                    root_id, action_taken, self._now(include_expired)
                )
        except SQLAlchemyError as e:
            raise self._failed("query_by_action", e) from e
        return [self._to_record(row) for row in rows]

    async def query_tree(self, root_id: str, include_expired: bool = False) -> list[LineageRecord]:
        try:
            async with self._session_factory() as session:
                rows = await LineageRecordRepository(session).list_by_root(root_id, self._now(include_expired))
        except SQLAlchemyError as e:
            raise self._failed("query_tree", e) from e
        return [self._to_record(row) for row in rows]

    async def delete_tree(self, root_id: str) -> int:
        try:
            async with self._session_factory() as session:
                return await LineageRecordRepository(session).delete_by_root(root_id)
        except SQLAlchemyError as e:
            raise self._failed("delete_tree", e) from e

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        try:
            async with self._session_factory() as session:
                count = await LineageRecordRepository(session).delete_expired(int(now.timestamp()))
        except SQLAlchemyError as e:
            raise self._failed("purge_expired", e) from e
        if count:
            logger.info("expired_records_purged", count=count)
        return count


def create_store(config: StoreSettings, clock: DateClock = utcnow) -> LineageStore:
    """Build the store selected by settings."""
    if config.backend == "sql":
        return SqlLineageStore(clock=clock)
    return InMemoryLineageStore(clock=clock)
