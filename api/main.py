"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, runs, watermarks
from core.config import settings
from core.database import async_session_maker
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from ingestion.pipeline import build_pipeline
from ingestion.triggers import PipelineTriggers
from api.middleware import RequestContextMiddleware
from schemas.api import ErrorResponse
import logging

# Configure logging
setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Stage/Load Orchestrator API",
    description="Run status, manual triggers and watermark control for the extract/stage/load pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(runs.router)
app.include_router(watermarks.router)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(error="Pipeline not configured", detail=exc.message).model_dump(mode="json")
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting stage/load orchestrator API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    pipeline = build_pipeline(async_session_maker)
    app.state.pipeline = pipeline
    app.state.triggers = None

    if settings.START_WORKERS:
        await pipeline.workers.start()

    if settings.START_TRIGGERS:
        triggers = PipelineTriggers(pipeline.scheduler)
        triggers.start()
        app.state.triggers = triggers


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down stage/load orchestrator API")
    if getattr(app.state, "triggers", None) is not None:
        app.state.triggers.stop()
    if getattr(app.state, "pipeline", None) is not None and settings.START_WORKERS:
        await app.state.pipeline.workers.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Stage/Load Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "runs": "/runs",
            "tasks": "/tasks/{task_id}",
            "watermarks": "/watermarks"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
