"""
End-to-end runs: scheduler, workers, handlers, staging and loads on SQLite
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ingestion.pipeline import build_pipeline
from ingestion.runner import WorkerPool
from models.base import RunStatus, TaskState, TriggerType
from models.load_ledger import LoadLedgerEntry
from models.warehouse import WarehouseRow
from schemas.source import RunRequest, TransformConfig
from schemas.watermark import Watermark
from tests.factories import ListExtractor, make_source, order_rows


def integer(value) -> Watermark:
    return Watermark.of("integer", value)


def factory_for(extractor):
    """Extractor factory handing the same instance to every attempt"""
    def factory(source, timeout=None):
        extractor.timeout = timeout
        return extractor
    return factory


async def count(session_maker, model):
    async with session_maker() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def task_state(pipeline, handle, name):
    return (await pipeline.scheduler.task_status(handle.task_ids[name])).state


@pytest_asyncio.fixture
async def shop_db(tmp_path):
    """Source database with orders 1..150"""
    url = f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}"
    engine = create_async_engine(url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE orders (id INTEGER PRIMARY KEY, amount INTEGER)"))
        await conn.execute(
            text("INSERT INTO orders (id, amount) VALUES (:id, :amount)"),
            order_rows(1, 150)
        )
    await engine.dispose()
    return url


class TestIncrementalRun:
    """Extract, stage and load of one database source"""

    @pytest.mark.asyncio
    async def test_orders_after_watermark(self, session_maker, object_store, clock, shop_db):
        pipeline = build_pipeline(session_maker, store=object_store, clock=clock, concurrency=1)
        source = make_source(connection={"url": shop_db, "table": "orders"}, batch_size=20)
        await pipeline.watermark_store.reset("orders", integer(100), reason="backfill start")

        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))
        executed = await pipeline.workers.run_until_idle()

        assert executed == 3
        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        assert await pipeline.watermark_store.get("orders") == integer(150)
        assert await count(session_maker, WarehouseRow) == 50
        assert await count(session_maker, LoadLedgerEntry) == 1

        # Spool objects are gone, the staged object and manifest remain
        assert await object_store.list("spool/") == []
        manifests = await pipeline.stage_writer.list_manifests("orders")
        assert len(manifests) == 1

        # Replaying the same staged range changes nothing
        manifest = await pipeline.stage_writer.read_manifest(manifests[0])
        replay = await pipeline.loader.load(manifest)
        assert replay.skipped
        assert await count(session_maker, WarehouseRow) == 50
        assert await count(session_maker, LoadLedgerEntry) == 1
        assert await pipeline.watermark_store.get("orders") == integer(150)

    @pytest.mark.asyncio
    async def test_run_without_new_records(self, session_maker, object_store, clock, shop_db):
        pipeline = build_pipeline(session_maker, store=object_store, clock=clock, concurrency=1)
        source = make_source(connection={"url": shop_db, "table": "orders"})
        await pipeline.watermark_store.reset("orders", integer(150), reason="caught up")

        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))
        await pipeline.workers.run_until_idle()

        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        load = await pipeline.scheduler.task_status(handle.task_ids["load:orders"])
        assert load.output["skipped"]
        assert await count(session_maker, LoadLedgerEntry) == 0
        assert await pipeline.watermark_store.get("orders") == integer(150)

    @pytest.mark.asyncio
    async def test_transform_runs_after_loads(self, session_maker, object_store, clock):
        orders = make_source("orders")
        customers = make_source("customers")
        extractors = {
            "orders": ListExtractor(orders, order_rows(1, 5)),
            "customers": ListExtractor(customers, [{"id": 1}, {"id": 2}]),
        }
        pipeline = build_pipeline(
            session_maker, store=object_store, clock=clock,
            extractor_factory=lambda source, timeout=None: extractors[source.source_id],
        )
        transform = TransformConfig(name="row_counts", sql=[
            "CREATE TABLE IF NOT EXISTS row_counts (source_id TEXT PRIMARY KEY, n INTEGER)",
            "DELETE FROM row_counts",
            "INSERT INTO row_counts SELECT source_id, COUNT(*) FROM warehouse_rows GROUP BY source_id",
        ])

        handle = await pipeline.scheduler.submit(
            RunRequest(sources=[orders, customers], transforms=[transform])
        )
        await pipeline.workers.run_until_idle()

        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        transform_task = await pipeline.scheduler.task_status(handle.task_ids["transform:row_counts"])
        assert transform_task.output == {"transform": "row_counts", "statements": 3}
        async with session_maker() as session:
            result = await session.execute(text("SELECT source_id, n FROM row_counts ORDER BY source_id"))
            assert result.all() == [("customers", 2), ("orders", 5)]


class TestFailureHandling:
    """Retries, resumption and recovery through the worker pool"""

    @pytest.mark.asyncio
    async def test_source_unavailable_twice_then_success(self, session_maker, object_store, clock):
        source = make_source()
        extractor = ListExtractor(source, order_rows(101, 150), fail_times=2)
        pipeline = build_pipeline(
            session_maker, store=object_store, clock=clock,
            extractor_factory=factory_for(extractor), base_delay=1.0, max_attempts=3,
        )
        await pipeline.watermark_store.reset("orders", integer(100), reason="test")
        handle = await pipeline.scheduler.submit(RunRequest(sources=[source], trigger=TriggerType.MANUAL))
        extract_id = handle.task_ids["extract:orders"]

        await pipeline.workers.run_until_idle()
        task = await pipeline.scheduler.task_status(extract_id)
        assert task.state == TaskState.RETRYING
        assert task.next_attempt_at == clock.now + timedelta(seconds=1)

        clock.advance(1)
        await pipeline.workers.run_until_idle()
        task = await pipeline.scheduler.task_status(extract_id)
        assert task.state == TaskState.RETRYING
        assert task.next_attempt_at == clock.now + timedelta(seconds=2)

        clock.advance(2)
        await pipeline.workers.run_until_idle()

        events = await pipeline.scheduler.task_events(extract_id)
        assert [e.to_state for e in events] == [
            TaskState.PENDING,
            TaskState.RUNNING,
            TaskState.RETRYING,
            TaskState.RUNNING,
            TaskState.RETRYING,
            TaskState.RUNNING,
            TaskState.SUCCEEDED,
        ]
        assert extractor.calls == [integer(100)] * 3
        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        assert await pipeline.watermark_store.get("orders") == integer(150)
        assert await count(session_maker, WarehouseRow) == 50

    @pytest.mark.asyncio
    async def test_interrupted_extract_resumes_from_checkpoint(self, session_maker, object_store, clock):
        source = make_source(batch_size=20)
        extractor = ListExtractor(source, order_rows(101, 150), fail_times=1, fail_after_pages=2)
        pipeline = build_pipeline(
            session_maker, store=object_store, clock=clock,
            extractor_factory=factory_for(extractor),
        )
        await pipeline.watermark_store.reset("orders", integer(100), reason="test")
        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))

        await pipeline.workers.run_until_idle()
        task = await pipeline.scheduler.task_status(handle.task_ids["extract:orders"])
        assert task.checkpoint["resume_watermark"] == integer(140).to_dict()
        assert task.checkpoint["row_count"] == 40
        assert len(await object_store.list("spool/orders/")) == 1

        clock.advance(1)
        await pipeline.workers.run_until_idle()

        assert extractor.calls == [integer(100), integer(140)]
        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        assert await pipeline.watermark_store.get("orders") == integer(150)
        assert await count(session_maker, WarehouseRow) == 50
        ledger = await count(session_maker, LoadLedgerEntry)
        assert ledger == 1
        assert await object_store.list("spool/") == []

    @pytest.mark.asyncio
    async def test_non_retryable_failure_blocks_load(self, session_maker, object_store, clock):
        source = make_source()
        # Records without the primary key field
        extractor = ListExtractor(make_source(watermark_field="seq"), [{"seq": 1}, {"seq": 2}])
        pipeline = build_pipeline(
            session_maker, store=object_store, clock=clock,
            extractor_factory=factory_for(extractor),
        )
        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))

        await pipeline.workers.run_until_idle()

        stage = await pipeline.scheduler.task_status(handle.task_ids["stage:orders"])
        assert stage.state == TaskState.FAILED
        assert stage.last_error["error_type"] == "SchemaMismatch"
        assert await task_state(pipeline, handle, "load:orders") == TaskState.BLOCKED
        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.FAILED
        assert await pipeline.watermark_store.get("orders") is None

    @pytest.mark.asyncio
    async def test_lost_worker_task_is_recovered(self, session_maker, object_store, clock):
        source = make_source()
        extractor = ListExtractor(source, order_rows(1, 10))
        pipeline = build_pipeline(
            session_maker, store=object_store, clock=clock,
            extractor_factory=factory_for(extractor), liveness_timeout=60,
        )
        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))

        # A worker claims the extract and dies without reporting
        claimed = await pipeline.scheduler.poll("crashed-worker")
        assert await pipeline.workers.run_until_idle() == 0

        clock.advance(61)
        assert await pipeline.scheduler.recover_stale() == [claimed.id]
        clock.advance(1)
        await pipeline.workers.run_until_idle()

        extract = await pipeline.scheduler.task_status(claimed.id)
        assert extract.state == TaskState.SUCCEEDED
        assert extract.attempts == 2
        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        assert await pipeline.watermark_store.get("orders") == integer(10)

    @pytest.mark.asyncio
    async def test_deadline_is_a_retryable_failure(self, session_maker, object_store, clock):
        source = make_source()

        class HangingExtractor(ListExtractor):
            async def read_pages(self, from_watermark):
                await asyncio.sleep(5)
                yield  # pragma: no cover

        pipeline = build_pipeline(
            session_maker, store=object_store, clock=clock, deadline=0.05,
            extractor_factory=factory_for(HangingExtractor(source, [])),
        )
        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))

        await pipeline.workers.run_until_idle()

        extract = await pipeline.scheduler.task_status(handle.task_ids["extract:orders"])
        assert extract.state == TaskState.RETRYING
        assert extract.last_error["error_type"] == "SourceUnavailable"

    @pytest.mark.asyncio
    async def test_cancel_while_running(self, session_maker, object_store, clock):
        source = make_source()
        pipeline = build_pipeline(session_maker, store=object_store, clock=clock, deadline=None)
        handle = None

        class CancelledMidway(ListExtractor):
            async def read_pages(self, from_watermark):
                await pipeline.scheduler.cancel_run(handle.run_id)
                await asyncio.sleep(5)
                yield  # pragma: no cover

        pipeline.executor.extractor_factory = factory_for(CancelledMidway(source, []))
        workers = WorkerPool(pipeline.scheduler, pipeline.executor, deadline=None, heartbeat_interval=0.2)
        handle = await pipeline.scheduler.submit(RunRequest(sources=[source]))

        await workers.run_until_idle()

        extract = await pipeline.scheduler.task_status(handle.task_ids["extract:orders"])
        assert extract.state == TaskState.CANCELLED
        assert await task_state(pipeline, handle, "load:orders") == TaskState.CANCELLED
        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.CANCELLED


class TestWorkerPoolLifecycle:
    """Background workers started and stopped around a run"""

    @pytest.mark.asyncio
    async def test_pool_drains_runs(self, session_maker, object_store):
        sources = [make_source(name) for name in ("orders", "customers", "payments")]
        extractors = {s.source_id: ListExtractor(s, order_rows(1, 30)) for s in sources}
        pipeline = build_pipeline(
            session_maker, store=object_store, concurrency=1,
            extractor_factory=lambda source, timeout=None: extractors[source.source_id],
        )
        workers = WorkerPool(
            pipeline.scheduler, pipeline.executor, concurrency=1,
            poll_interval=0.01, heartbeat_interval=10,
        )
        handle = await pipeline.scheduler.submit(RunRequest(sources=sources))

        await workers.start()
        try:
            for _ in range(500):
                if await pipeline.scheduler.status(handle.run_id) not in (RunStatus.PENDING, RunStatus.RUNNING):
                    break
                await asyncio.sleep(0.02)
        finally:
            await workers.stop()

        assert await pipeline.scheduler.status(handle.run_id) == RunStatus.SUCCEEDED
        assert await count(session_maker, WarehouseRow) == 90
        assert await count(session_maker, LoadLedgerEntry) == 3
