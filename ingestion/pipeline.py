"""
Component wiring shared by the API process, scripts and tests
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from ingestion.extractors import build_extractor
from ingestion.handlers import TaskExecutor
from ingestion.loaders.warehouse_loader import WarehouseLoader
from ingestion.runner import WorkerPool
from ingestion.scheduler import TaskScheduler
from ingestion.staging.object_store import ObjectStore, build_object_store
from ingestion.staging.stage_writer import StageWriter
from ingestion.transforms import TransformRunner
from ingestion.watermarks import WatermarkStore


@dataclass
class Pipeline:
    session_maker: async_sessionmaker
    store: ObjectStore
    watermark_store: WatermarkStore
    stage_writer: StageWriter
    loader: WarehouseLoader
    transform_runner: TransformRunner
    scheduler: TaskScheduler
    executor: TaskExecutor
    workers: WorkerPool


def build_pipeline(
    session_maker: async_sessionmaker,
    store: Optional[ObjectStore] = None,
    concurrency: int = settings.WORKER_CONCURRENCY,
    deadline: Optional[float] = settings.TASK_DEADLINE_SECONDS,
    clock: Callable[[], datetime] = datetime.utcnow,
    extractor_factory: Callable = build_extractor,
    **scheduler_options
) -> Pipeline:
    """Build every component on one database and one object store"""
    store = store or build_object_store()
    watermark_store = WatermarkStore(session_maker)
    stage_writer = StageWriter(store, session_maker=session_maker)
    loader = WarehouseLoader(session_maker, stage_writer, watermark_store, timeout=deadline)
    transform_runner = TransformRunner(session_maker, timeout=deadline)
    scheduler = TaskScheduler(session_maker, clock=clock, **scheduler_options)
    executor = TaskExecutor(
        scheduler=scheduler,
        store=store,
        stage_writer=stage_writer,
        loader=loader,
        watermark_store=watermark_store,
        transform_runner=transform_runner,
        extract_timeout=deadline,
        extractor_factory=extractor_factory,
    )
    workers = WorkerPool(
        scheduler,
        executor,
        watermark_store=watermark_store,
        concurrency=concurrency,
        deadline=deadline,
    )
    return Pipeline(
        session_maker=session_maker,
        store=store,
        watermark_store=watermark_store,
        stage_writer=stage_writer,
        loader=loader,
        transform_runner=transform_runner,
        scheduler=scheduler,
        executor=executor,
        workers=workers,
    )
