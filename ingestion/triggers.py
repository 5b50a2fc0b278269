"""
Run triggers: interval schedule and file sensor.

Both turn the pipeline definition into a RunRequest and hand it to
TaskScheduler.submit(), the same entry point manual API calls use.
"""

import glob
import logging
import os
from typing import Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.exceptions import ETLException
from ingestion.scheduler import RunHandle, TaskScheduler
from models.base import SourceType, TriggerType
from schemas.source import PipelineDefinition, load_pipeline_definition

logger = logging.getLogger(__name__)


class PipelineTriggers:
    """
    APScheduler jobs producing runs.

    - schedule: every `interval_minutes` (or on the `cron` expression), a
      run over all sources
    - sensor: every `sensor_interval_seconds`, a run over the file_glob
      sources whose glob gained or changed files since the last scan
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        definition_path: Optional[str] = None,
        interval_minutes: int = settings.SCHEDULE_INTERVAL_MINUTES,
        cron: Optional[str] = settings.SCHEDULE_CRON,
        sensor_interval_seconds: int = settings.SENSOR_INTERVAL_SECONDS
    ):
        self.task_scheduler = scheduler
        self.definition_path = definition_path or settings.SOURCES_FILE
        self.interval_minutes = interval_minutes
        self.cron = cron
        self.sensor_interval_seconds = sensor_interval_seconds
        self.scheduler = AsyncIOScheduler()
        self._seen_files: Dict[str, Dict[str, float]] = {}

    def _definition(self) -> PipelineDefinition:
        return load_pipeline_definition(self.definition_path)

    async def run_scheduled(self) -> Optional[RunHandle]:
        """Job: submit a run over every source"""
        logger.info("Scheduler: submitting scheduled run")
        try:
            request = self._definition().to_run_request(
                TriggerType.SCHEDULE,
                trigger_ref=self._schedule_ref(),
            )
            return await self.task_scheduler.submit(request)
        except ETLException as e:
            logger.error(f"Scheduler: scheduled run not submitted - {e}")
            return None

    def _schedule_ref(self) -> str:
        return f"cron:{self.cron}" if self.cron else f"interval:{self.interval_minutes}m"

    def _schedule_trigger(self):
        if self.cron:
            return CronTrigger.from_crontab(self.cron)
        return IntervalTrigger(minutes=self.interval_minutes)

    def _scan(self, pattern: str) -> Dict[str, float]:
        return {
            path: os.path.getmtime(path)
            for path in glob.glob(pattern)
            if os.path.isfile(path)
        }

    def detect_changes(self, definition: PipelineDefinition) -> List[Tuple[str, List[str]]]:
        """(source_id, changed files) for each file_glob source with new/modified files"""
        changes = []
        for source in definition.sources:
            if source.source_type != SourceType.FILE_GLOB:
                continue
            current = self._scan(source.connection.get("pattern", ""))
            previous = self._seen_files.get(source.source_id)
            self._seen_files[source.source_id] = current
            if previous is None:
                continue  # First scan only records the baseline
            changed = sorted(p for p, mtime in current.items() if previous.get(p) != mtime)
            if changed:
                changes.append((source.source_id, changed))
        return changes

    async def run_sensor(self) -> Optional[RunHandle]:
        """Job: submit a run for file sources that received files"""
        try:
            definition = self._definition()
            changes = self.detect_changes(definition)
            if not changes:
                return None
            source_ids = [source_id for source_id, _ in changes]
            first_file = changes[0][1][0]
            logger.info(f"Sensor: new files for {source_ids} (e.g. {first_file})")
            request = definition.to_run_request(
                TriggerType.SENSOR,
                trigger_ref=first_file,
                source_ids=source_ids,
            )
            return await self.task_scheduler.submit(request)
        except ETLException as e:
            logger.error(f"Sensor: run not submitted - {e}")
            return None

    def start(self):
        """Start the scheduler"""
        try:
            self.detect_changes(self._definition())
        except ETLException as e:
            logger.warning(f"Sensor baseline not recorded: {e}")

        self.scheduler.add_job(
            self.run_scheduled,
            trigger=self._schedule_trigger(),
            id="scheduled_run",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_sensor,
            trigger=IntervalTrigger(seconds=self.sensor_interval_seconds),
            id="file_sensor",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Pipeline triggers started (schedule: {self._schedule_ref()})")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Pipeline triggers stopped")
