"""
Script to run one pipeline run for all configured sources (or a subset)
in the foreground, without the API process.

    python scripts/run_pipeline.py [--sources orders,customers] [--definition pipeline.yaml]
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine, build_session_maker
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from ingestion.pipeline import build_pipeline
from models.base import RunStatus, TriggerType
from schemas.source import load_pipeline_definition

setup_logging()
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the extract/stage/load pipeline once")
    parser.add_argument("--definition", default=settings.SOURCES_FILE, help="Pipeline YAML file")
    parser.add_argument("--sources", default=None, help="Comma-separated source ids (default: all)")
    parser.add_argument("--concurrency", type=int, default=settings.WORKER_CONCURRENCY)
    return parser.parse_args(argv)


async def run_pipeline(args) -> RunStatus:
    """Submit one manual run and drive it until no task is runnable"""
    engine = build_engine(settings.DATABASE_URL)
    session_maker = build_session_maker(engine)

    try:
        definition = load_pipeline_definition(args.definition)
        source_ids = args.sources.split(",") if args.sources else None
        pipeline = build_pipeline(session_maker, concurrency=args.concurrency)

        await pipeline.watermark_store.reconcile_all()
        await pipeline.scheduler.recover_stale()

        handle = await pipeline.scheduler.submit(
            definition.to_run_request(
                TriggerType.MANUAL,
                trigger_ref="cli:run_pipeline",
                source_ids=source_ids,
            )
        )
        logger.info(f"Submitted run {handle.run_id} with {len(handle.task_ids)} tasks")

        executed = 0
        while True:
            executed += await pipeline.workers.run_until_idle()
            status = await pipeline.scheduler.status(handle.run_id)
            if status not in (RunStatus.PENDING, RunStatus.RUNNING):
                break
            # Retries are waiting out their backoff
            await asyncio.sleep(settings.POLL_INTERVAL_SECONDS)
        logger.info(f"Run {handle.run_id} finished as {status.value} after {executed} task executions")

        for row in await pipeline.watermark_store.list():
            logger.info(f"Watermark {row.source_id}: {row.kind.value} {row.value} (version {row.version})")
        return status
    finally:
        await engine.dispose()


if __name__ == "__main__":
    try:
        status = asyncio.run(run_pipeline(parse_args()))
    except ConfigurationError as e:
        logger.error(f"Pipeline configuration error: {e}")
        sys.exit(2)
    sys.exit(0 if status == RunStatus.SUCCEEDED else 1)
