"""
Health check endpoint with database and task status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from core.config import settings
from schemas.api import HealthCheckResponse, RunSummary
from models.base import TaskState
from models.run import PipelineRun
from models.task import Task
from datetime import datetime, timedelta
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Task counts per state and running tasks that stopped heartbeating
    - The most recent run
    """
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")

    tasks_by_state = {}
    stale = 0
    last_run = None

    if db_connected:
        try:
            result = await db.execute(
                select(Task.state, func.count(Task.id))
                .where(Task.superseded_by.is_(None))
                .group_by(Task.state)
            )
            tasks_by_state = {
                (state.value if hasattr(state, "value") else state): count
                for state, count in result.all()
            }

            cutoff = datetime.utcnow() - timedelta(seconds=settings.WORKER_LIVENESS_TIMEOUT_SECONDS)
            stale = (
                await db.execute(
                    select(func.count(Task.id)).where(
                        Task.state == TaskState.RUNNING,
                        Task.heartbeat_at < cutoff
                    )
                )
            ).scalar_one()

            run = (
                await db.execute(select(PipelineRun).order_by(PipelineRun.id.desc()).limit(1))
            ).scalar_one_or_none()
            if run is not None:
                last_run = RunSummary.model_validate(run)
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch task status: {str(e)}")

    return HealthCheckResponse(
        status="healthy",  # Derived by the validator
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        tasks_by_state=tasks_by_state,
        stale_running_tasks=stale,
        last_run=last_run
    )
