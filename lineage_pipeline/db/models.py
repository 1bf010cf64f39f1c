"""SQLAlchemy models for database tables."""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Column, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from lineage_pipeline.config import DatabaseSettings
from lineage_pipeline.lineage.models import MAX_ACTION_LENGTH, MAX_ID_LENGTH

Base: Any = declarative_base()

# Async engine (initialized on demand)
_async_engine: Any = None
_session_factory: Any = None


def init_engine(config: DatabaseSettings | None = None) -> Any:
    """Initialize the async engine from database settings.

    Args:
        config: Database settings (defaults to the environment)

    Returns:
        AsyncEngine instance
    """
    global _async_engine, _session_factory
    config = config or DatabaseSettings()
    _async_engine = create_async_engine(
        str(config.url),
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
    )
    _session_factory = async_sessionmaker(_async_engine, expire_on_commit=False)
    return _async_engine


def get_async_engine() -> Any:
    """Get or create the async engine."""
    if _async_engine is None:
        init_engine()
    return _async_engine


def get_session_factory() -> Any:
    """Get the session factory bound to the async engine."""
    if _session_factory is None:
        init_engine()
    return _session_factory


async def dispose_engine() -> None:
    """Close every pooled connection."""
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _session_factory = None


async def init_db(engine: Any = None) -> None:
    """Create tables directly (development only; production uses Alembic).

    Args:
        engine: Optional engine instance (uses global engine if not provided)
    """
    if engine is None:
        engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session.

    Yields:
        AsyncSession for database operations
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LineageRecordModel(Base):  # type: ignore[misc]
    """One node of a lineage tree.

    The composite primary key ``(root_id, node_id)`` makes re-delivered
    writes overwrite instead of duplicating.
    """

    __tablename__ = "lineage_records"

    root_id = Column(String(MAX_ID_LENGTH), primary_key=True)
    node_id = Column(String(MAX_ID_LENGTH), primary_key=True)
    parent_id = Column(String(MAX_ID_LENGTH), nullable=True)
    action_taken = Column(String(MAX_ACTION_LENGTH), nullable=False)
    record = Column(JSONB, nullable=False, default=dict)
    recorded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    ttl_expiry = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_lineage_records_node_id", "node_id"),
        Index("ix_lineage_records_root_action", "root_id", "action_taken"),
        Index("ix_lineage_records_ttl_expiry", "ttl_expiry"),
    )

    def __repr__(self) -> str:
        return f"<LineageRecordModel(root_id={self.root_id}, node_id={self.node_id}, action={self.action_taken})>"
