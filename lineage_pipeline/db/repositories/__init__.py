"""Database repositories for data access."""

from lineage_pipeline.db.repositories.lineage import LineageRecordRepository

__all__ = [
    "LineageRecordRepository",
]
