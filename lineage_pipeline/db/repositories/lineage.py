"""Repository for lineage record data access."""

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from lineage_pipeline.db.models import LineageRecordModel


class LineageRecordRepository:
    """Repository for lineage record operations.

    Expiry filters take ``now`` in epoch seconds; a row is live when its
    ``ttl_expiry`` is NULL or greater than ``now``.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def upsert(self, values: dict) -> None:
        """Insert a record or overwrite the row with the same key.

        Args:
            values: Column values including ``root_id`` and ``node_id``
        """
        stmt = insert(LineageRecordModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[LineageRecordModel.root_id, LineageRecordModel.node_id],
            set_={
                "parent_id": stmt.excluded.parent_id,
                "action_taken": stmt.excluded.action_taken,
                "record": stmt.excluded.record,
                "recorded_at": stmt.excluded.recorded_at,
                "ttl_expiry": stmt.excluded.ttl_expiry,
            },
        )
        await self.session.execute(stmt)
        await self.session.commit()

    @staticmethod
    def _live(query, now: int | None):
        if now is None:
            return query
        return query.where(
            (LineageRecordModel.ttl_expiry.is_(None)) | (LineageRecordModel.ttl_expiry > now)
        )

    async def get(self, root_id: str, node_id: str, now: int | None = None) -> LineageRecordModel | None:
        """Get one record by its composite key."""
        query = select(LineageRecordModel).where(
            LineageRecordModel.root_id == root_id,
            LineageRecordModel.node_id == node_id,
        )
        result = await self.session.execute(self._live(query, now))
        return result.scalar_one_or_none()

    async def find_by_node(self, node_id: str, now: int | None = None) -> LineageRecordModel | None:
        """Look a record up through the node index."""
        query = select(LineageRecordModel).where(LineageRecordModel.node_id == node_id)
        query = self._live(query, now).order_by(LineageRecordModel.recorded_at.desc()).limit(1)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_action(
        self,
        root_id: str,
        action_taken: str,
        now: int | None = None,
    ) -> Sequence[LineageRecordModel]:
        """List one tree's records with a given action (action index)."""
        query = select(LineageRecordModel).where(
            LineageRecordModel.root_id == root_id,
            LineageRecordModel.action_taken == action_taken,
        )
        result = await self.session.execute(
            self._live(query, now).order_by(LineageRecordModel.recorded_at, LineageRecordModel.node_id)
        )
        return result.scalars().all()

    async def list_by_root(self, root_id: str, now: int | None = None) -> Sequence[LineageRecordModel]:
        """List every record of one tree."""
        query = select(LineageRecordModel).where(LineageRecordModel.root_id == root_id)
        result = await self.session.execute(
            self._live(query, now).order_by(LineageRecordModel.recorded_at, LineageRecordModel.node_id)
        )
        return result.scalars().all()

    async def delete_by_root(self, root_id: str) -> int:
        """Delete every record of one tree.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(LineageRecordModel).where(LineageRecordModel.root_id == root_id)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def delete_expired(self, now: int) -> int:
        """Delete rows whose TTL has passed.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(LineageRecordModel).where(
                LineageRecordModel.ttl_expiry.is_not(None),
                LineageRecordModel.ttl_expiry <= now,
            )
        )
        await self.session.commit()
        return result.rowcount or 0
