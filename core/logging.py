"""
Logging configuration
"""

import logging
import sys
from core.config import settings

# Identifiers passed through `extra=` by the scheduler, workers and loaders
CONTEXT_FIELDS = ("run_id", "task_id", "source_id", "worker_id", "error_type")


class TaskContextFilter(logging.Filter):
    """Append run/task identifiers from `extra=` to the log line"""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        ]
        record.context = f" [{' '.join(parts)}]" if parts else ""
        return True


def setup_logging(level: str = None):
    """Configure application logging"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TaskContextFilter())

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s%(context)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler]
    )

    # Quiet noisy third-party loggers
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx", "botocore"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
