import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
import models  # noqa: F401

setup_logging()
logger = logging.getLogger(__name__)


async def init_database(drop: bool = False):
    logger.info("Connecting to database...")
    engine = build_engine(settings.DATABASE_URL, echo=settings.ENVIRONMENT == "development")

    async with engine.begin() as conn:
        if drop:
            logger.warning("Dropping scheduler, watermark, ledger and warehouse tables")
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_database(drop="--drop" in sys.argv[1:]))
