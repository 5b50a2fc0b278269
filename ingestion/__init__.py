"""
Extract/stage/load pipeline components.

Modules:
    base: Source extractor contract (lazy, bounded, resumable extractions)
    watermarks: Versioned per-source watermarks with compare-and-swap advance
    scheduler: Durable task DAG, retries with backoff, crash recovery
    handlers: What each task kind does (extract, stage, load, transform)
    runner: Worker pool with heartbeats, deadlines and cancellation
    transforms: SQL transforms after a run's loads
    triggers: APScheduler interval schedule and file sensor
    pipeline: Component wiring

Subpackages:
    extractors: Source adapters (database table, file glob, REST API)
    staging: Object stores and the stage writer (payload + manifest)
    loaders: Warehouse loader with ledger-based idempotency

Architecture:
    Every trigger submits a RunRequest. Per source the scheduler creates

        extract ──▶ stage ──▶ load ──▶ (transforms)

    The extract reads records after the source's watermark, the stage task
    commits them as an immutable staged object keyed by (source, range),
    and the load merges that object into the warehouse and advances the
    watermark in the same transaction. Any step can be retried: staging
    overwrites the same keys, and the load ledger turns a replayed range
    into a no-op.

Usage:
    from ingestion.pipeline import build_pipeline

    pipeline = build_pipeline(async_session_maker)
    handle = await pipeline.scheduler.submit(definition.to_run_request(TriggerType.MANUAL))
    await pipeline.workers.run_until_idle()
    print(await pipeline.scheduler.status(handle.run_id))

Error Handling:
    All components raise exceptions from core.exceptions. Retryable kinds
    (SourceUnavailable, StorageWriteError, WarehouseUnavailable) are retried
    with exponential backoff; non-retryable kinds fail the task and block
    its dependents until an operator re-triggers it.
"""

__all__ = [
    "SourceExtractor",
    "Extraction",
    "WatermarkStore",
    "TaskScheduler",
    "TaskExecutor",
    "WorkerPool",
    "PipelineTriggers",
    "build_pipeline",
]
