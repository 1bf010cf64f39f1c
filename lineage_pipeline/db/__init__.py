"""Database layer for the SQL lineage store."""

from lineage_pipeline.db.models import (
    Base,
    LineageRecordModel,
    dispose_engine,
    get_async_engine,
    get_session,
    get_session_factory,
    init_db,
    init_engine,
)
from lineage_pipeline.db.repositories import LineageRecordRepository

__all__ = [
    "Base",
    "LineageRecordModel",
    "LineageRecordRepository",
    "dispose_engine",
    "get_async_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "init_engine",
]
