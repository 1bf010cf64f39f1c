#!/usr/bin/env python3
"""Initialize the lineage_records table for development.

Production databases are migrated with Alembic (migrations/versions).
"""

import asyncio

from sqlalchemy import text

from lineage_pipeline.config import get_settings
from lineage_pipeline.db.models import dispose_engine, init_db, init_engine


async def init_database() -> None:
    """Create all tables."""
    config = get_settings().database
    print(f"Connecting to database: {config.url.hosts()[0]['host']}")
    engine = init_engine(config)

    try:
        print("Creating tables...")
        await init_db(engine)
        print("Tables created.")

        async with engine.connect() as conn:
            result = await conn.execute(text("""
                SELECT indexname
                FROM pg_indexes
                WHERE tablename = 'lineage_records'
                ORDER BY indexname
            """))
            indexes = result.fetchall()
            print(f"\n  lineage_records indexes ({len(indexes)}):")
            for index in indexes:
                print(f"    - {index[0]}")
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(init_database())
