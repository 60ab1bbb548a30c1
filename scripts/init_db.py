"""
Create tables and seed the source reference rows
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import AsyncEngine
from core.database import build_engine, build_session_factory, upsert_insert
from core.logging import setup_logging
from models import Base, Source
from models.base import AuthType, utcnow

logger = logging.getLogger(__name__)

SOURCES = [
    {
        "name": "instagram",
        "display_name": "Instagram",
        "endpoint": "https://graph.facebook.com/v19.0",
        "auth_type": AuthType.OAUTH2,
    },
    {
        "name": "facebook",
        "display_name": "Facebook Pages",
        "endpoint": "https://graph.facebook.com/v19.0",
        "auth_type": AuthType.OAUTH2,
    },
    {
        "name": "tiktok",
        "display_name": "TikTok",
        "endpoint": "https://open.tiktokapis.com",
        "auth_type": AuthType.OAUTH2,
    },
]


async def seed_sources(session_factory) -> int:
    """Insert missing source rows; existing rows are left as they are"""
    created = 0
    async with session_factory() as session:
        for source in SOURCES:
            stmt = upsert_insert(session, Source).values(
                created_at=utcnow(), **source
            ).on_conflict_do_nothing(index_elements=["name"])
            result = await session.execute(stmt)
            created += result.rowcount
        await session.commit()
    return created


async def init_database(engine: AsyncEngine = None):
    engine = engine or build_engine()
    logger.info("Connecting to database...")

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Tables created successfully.")

        created = await seed_sources(build_session_factory(engine))
        logger.info(f"Seeded {created} new sources")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
