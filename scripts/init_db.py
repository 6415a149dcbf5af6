"""
Create the execution and business tables
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings, mask_connection_url
from core.database import build_engine, create_schema
from core.logging import setup_logging

logger = logging.getLogger(__name__)


async def init_database(database_url: str = None):
    database_url = database_url or settings.DATABASE_URL
    logger.info(f"Connecting to {mask_connection_url(database_url)}")

    engine = build_engine(database_url)
    try:
        await create_schema(engine)
        logger.info("Tables created successfully.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
