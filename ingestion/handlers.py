"""
Task handlers: what each task kind does when a worker runs it.

    extract    read new records after the watermark and spool them to the
               object store (spool/<source>/<task id>/part-NNNN.jsonl)
    stage      turn the spool into a staged object with a manifest
    load       apply the manifest to the warehouse, advance the watermark
    transform  run SQL once every load it depends on succeeded

An extract attempt interrupted by SourceUnavailable keeps the pages it had
fully consumed: they are spooled and the resume position is stored in the
task checkpoint, so the next attempt continues instead of starting over.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ConfigurationError, SourceUnavailable, StagingError
from ingestion.extractors import build_extractor
from ingestion.loaders.warehouse_loader import WarehouseLoader
from ingestion.scheduler import TaskOutcome, TaskScheduler
from ingestion.staging.object_store import ObjectStore
from ingestion.staging.stage_writer import StageWriter, decode_jsonl, encode_jsonl
from ingestion.transforms import TransformRunner
from ingestion.watermarks import WatermarkStore
from models.base import TaskKind, WatermarkKind
from models.task import Task
from schemas.source import SourceConfig, TransformConfig
from schemas.watermark import Watermark, WatermarkRange

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Run one claimed task and report a TaskOutcome"""

    def __init__(
        self,
        scheduler: TaskScheduler,
        store: ObjectStore,
        stage_writer: StageWriter,
        loader: WarehouseLoader,
        watermark_store: WatermarkStore,
        transform_runner: TransformRunner,
        extract_timeout: Optional[float] = None,
        extractor_factory: Callable = build_extractor,
        spool_prefix: str = "spool"
    ):
        self.scheduler = scheduler
        self.store = store
        self.stage_writer = stage_writer
        self.loader = loader
        self.watermark_store = watermark_store
        self.transform_runner = transform_runner
        self.extract_timeout = extract_timeout
        self.extractor_factory = extractor_factory
        self.spool_prefix = spool_prefix.strip("/")

        self.handlers = {
            TaskKind.EXTRACT: self.extract,
            TaskKind.STAGE: self.stage,
            TaskKind.LOAD: self.load,
            TaskKind.TRANSFORM: self.transform,
        }

    async def execute(self, task: Task) -> TaskOutcome:
        """
        Run the handler for task.kind.

        Errors become failure outcomes; asyncio cancellation propagates to
        the worker.
        """
        handler = self.handlers.get(task.kind)
        if handler is None:
            return TaskOutcome.failure(ConfigurationError(
                f"No handler for task kind {task.kind}",
                context={"task_id": task.id}
            ))
        try:
            return await handler(task)
        except Exception as e:
            logger.error(
                f"Task {task.id} ({task.name}) raised {type(e).__name__}: {e}",
                extra={"task_id": task.id, "source_id": task.source_id}
            )
            return TaskOutcome.failure(e)

    # ------------------------------------------------------------------
    # Extract
    # ------------------------------------------------------------------

    def _spool_key(self, task: Task, part: int) -> str:
        return f"{self.spool_prefix}/{task.source_id}/{task.id}/part-{part:04d}.jsonl"

    async def _spool(self, task: Task, part: int, records: List[Dict[str, Any]]) -> str:
        key = self._spool_key(task, part)
        await self.store.put(key, encode_jsonl(records))
        return key

    async def extract(self, task: Task) -> TaskOutcome:
        source = SourceConfig(**task.params["source"])
        checkpoint = task.checkpoint or {}

        missing = [key for key in checkpoint.get("parts", []) if not await self.store.exists(key)]
        if missing:
            logger.warning(
                f"Spooled parts {missing} of task {task.id} are gone; "
                f"extracting {source.source_id} from the start of the range",
                extra={"task_id": task.id, "source_id": source.source_id}
            )
            checkpoint = {}

        if checkpoint:
            # Continue an interrupted attempt
            low = Watermark.from_dict(checkpoint.get("range_low"))
            resume_from = Watermark.from_dict(checkpoint.get("resume_watermark"))
            parts = list(checkpoint.get("parts", []))
            spooled_rows = checkpoint.get("row_count", 0)
            extracted_at = datetime.fromisoformat(checkpoint["extracted_at"])
            logger.info(
                f"Resuming extraction of {source.source_id} from {resume_from} "
                f"({spooled_rows} records already spooled)"
            )
        else:
            low = await self.watermark_store.get(source.source_id) if source.incremental else None
            resume_from = low
            parts = []
            spooled_rows = 0
            extracted_at = datetime.utcnow()

        extractor = self.extractor_factory(source, timeout=self.extract_timeout)
        extraction = extractor.extract(resume_from)

        try:
            records, high = await extraction.collect()
        except SourceUnavailable as e:
            if not source.incremental:
                # A full refresh has no resumable position
                return TaskOutcome.failure(e)
            if e.records:
                parts.append(await self._spool(task, len(parts), e.records))
                spooled_rows += len(e.records)
            resume_at = e.resume_watermark or resume_from
            return TaskOutcome.failure(e, checkpoint={
                "range_low": low.to_dict() if low else None,
                "resume_watermark": resume_at.to_dict() if resume_at else None,
                "parts": parts,
                "row_count": spooled_rows,
                "extracted_at": extracted_at.isoformat(),
            })

        if records:
            parts.append(await self._spool(task, len(parts), records))
        row_count = spooled_rows + len(records)

        if not source.incremental:
            high = Watermark.of(WatermarkKind.TIMESTAMP, extracted_at)

        output = {
            "source_id": source.source_id,
            "parts": parts,
            "row_count": row_count,
            "extracted_at": extracted_at.isoformat(),
            "range": None,
        }
        if high is None or row_count == 0:
            logger.info(f"No new records for {source.source_id} after {low}")
            return TaskOutcome.success(output)

        watermark_range = WatermarkRange(low=low, high=high)
        if watermark_range.is_empty:
            logger.info(f"No new records for {source.source_id} after {low}")
            return TaskOutcome.success(output)

        output["range"] = watermark_range.to_dict()
        logger.info(f"Extracted {row_count} records from {source.source_id} for range {watermark_range}")
        return TaskOutcome.success(output)

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    async def _read_spool(self, parts: List[str]) -> List[Dict[str, Any]]:
        records = []
        for key in parts:
            records.extend(decode_jsonl(await self.store.get(key)))
        return records

    async def stage(self, task: Task) -> TaskOutcome:
        source = SourceConfig(**task.params["source"])
        extracted = await self.scheduler.upstream_output(task.id, TaskKind.EXTRACT)
        if extracted is None:
            raise StagingError(
                f"Stage task {task.id} has no extract output",
                context={"task_id": task.id, "source_id": source.source_id}
            )

        if extracted.get("range") is None:
            return TaskOutcome.success({
                "source_id": source.source_id,
                "manifest_key": None,
                "row_count": 0,
                "spool_parts": extracted.get("parts", []),
            })

        records = await self._read_spool(extracted["parts"])
        manifest = await self.stage_writer.stage(
            source,
            records,
            WatermarkRange.from_dict(extracted["range"]),
            extracted_at=datetime.fromisoformat(extracted["extracted_at"]),
        )
        return TaskOutcome.success({
            "source_id": source.source_id,
            "manifest_key": manifest.manifest_key,
            "checksum": manifest.checksum,
            "row_count": manifest.row_count,
            "range": manifest.watermark_range.to_dict(),
            "spool_parts": extracted["parts"],
        })

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self, task: Task) -> TaskOutcome:
        staged = await self.scheduler.upstream_output(task.id, TaskKind.STAGE)
        if staged is None:
            raise StagingError(
                f"Load task {task.id} has no stage output",
                context={"task_id": task.id, "source_id": task.source_id}
            )

        if staged.get("manifest_key") is None:
            await self._discard_spool(staged.get("spool_parts", []))
            return TaskOutcome.success({
                "source_id": task.source_id,
                "skipped": True,
                "rows_received": 0,
                "rows_merged": 0,
            })

        manifest = await self.stage_writer.read_manifest(staged["manifest_key"])
        result = await self.loader.load(manifest, task_id=task.id)
        await self._discard_spool(staged.get("spool_parts", []))
        return TaskOutcome.success(result.to_dict())

    async def _discard_spool(self, parts: List[str]):
        """Spool objects are scratch data once the range is loaded"""
        for key in parts:
            try:
                await self.store.delete(key)
            except StagingError as e:
                logger.warning(f"Could not delete spool object {key}: {e}")

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------

    async def transform(self, task: Task) -> TaskOutcome:
        transform = TransformConfig(**task.params["transform"])
        statements = await self.transform_runner.run(transform)
        return TaskOutcome.success({"transform": transform.name, "statements": statements})
