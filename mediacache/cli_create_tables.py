"""CLI script to create database tables."""
import asyncio
import logging

from mediacache.db import create_tables, engine
from mediacache.settings import settings

logger = logging.getLogger(__name__)


async def main():
    """Create all database tables."""
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    logger.info("Tables created in %s", settings.DATABASE_URL.split("@")[-1])


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
