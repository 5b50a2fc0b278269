"""
Core utilities and configuration for the stage/load orchestrator.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import build_engine, build_session_maker
    from core.exceptions import SourceUnavailable, LoadRejected
    from core.logging import setup_logging

Example:
    setup_logging()
    engine = build_engine()
    session_maker = build_session_maker(engine)
    # Scheduler, watermark store and loader all share session_maker
"""

__all__ = [
    "settings",
    "build_engine",
    "build_session_maker",
    "setup_logging",
    # Exceptions
    "ETLException",
    "RetryableError",
    "NonRetryableError",
    "ExtractionError",
    "SourceUnavailable",
    "RateLimitError",
    "SchemaMismatch",
    "AuthenticationError",
    "ResourceNotFoundError",
    "StagingError",
    "StorageWriteError",
    "ChecksumMismatch",
    "LoadError",
    "WarehouseUnavailable",
    "LoadRejected",
    "SchedulerError",
    "TaskNotFound",
    "RunNotFound",
    "InvalidTaskTransition",
    "WorkerLost",
    "WatermarkError",
    "ConfigurationError",
    "Cancelled",
]
