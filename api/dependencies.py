"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from ingestion.scheduler import TaskScheduler
from ingestion.watermarks import WatermarkStore
from schemas.source import PipelineDefinition, load_pipeline_definition


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


def get_scheduler() -> TaskScheduler:
    return TaskScheduler(async_session_maker)


def get_watermark_store() -> WatermarkStore:
    return WatermarkStore(async_session_maker)


def get_pipeline_definition() -> PipelineDefinition:
    return load_pipeline_definition()
