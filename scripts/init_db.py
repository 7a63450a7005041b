import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine
# Importing the package registers every table on Base.metadata
from models import Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = build_engine(settings.DATABASE_URL)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
