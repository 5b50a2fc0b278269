"""
Unit tests for schedule and file sensor triggers
"""

import os

import pytest
import yaml

from ingestion.scheduler import TaskScheduler
from ingestion.triggers import PipelineTriggers
from models.base import RunStatus, TriggerType


def write_definition(tmp_path):
    definition = {
        "sources": [
            {
                "source_id": "orders",
                "source_type": "database_table",
                "connection": {"url": "sqlite+aiosqlite://", "table": "orders"},
                "watermark_field": "id",
            },
            {
                "source_id": "products",
                "source_type": "file_glob",
                "connection": {"pattern": str(tmp_path / "inbox" / "products_*.csv")},
                "extraction_mode": "full_refresh",
                "primary_key": ["sku"],
            },
        ],
        "transforms": [
            {"name": "catalog", "sql": ["SELECT 1"], "depends_on_sources": ["products"]},
            {"name": "everything", "sql": ["SELECT 1"]},
        ],
    }
    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.safe_dump(definition))
    (tmp_path / "inbox").mkdir()
    return str(path)


@pytest.fixture
def scheduler(session_maker, clock):
    return TaskScheduler(session_maker, clock=clock)


@pytest.fixture
def triggers(scheduler, tmp_path):
    return PipelineTriggers(scheduler, definition_path=write_definition(tmp_path))


class TestPipelineTriggers:
    """Runs produced by the interval schedule and the file sensor"""

    @pytest.mark.asyncio
    async def test_scheduled_run_covers_every_source(self, triggers, scheduler):
        handle = await triggers.run_scheduled()

        assert set(handle.task_ids) == {
            "extract:orders", "stage:orders", "load:orders",
            "extract:products", "stage:products", "load:products",
            "transform:catalog", "transform:everything",
        }
        run = await scheduler.get_run(handle.run_id)
        assert run.trigger == TriggerType.SCHEDULE
        assert run.trigger_ref == "interval:30m"
        assert run.status == RunStatus.PENDING

    @pytest.mark.asyncio
    async def test_scheduled_run_with_broken_definition(self, scheduler, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("sources: [")
        triggers = PipelineTriggers(scheduler, definition_path=str(path))

        assert await triggers.run_scheduled() is None
        assert await scheduler.list_runs() == []

    def test_first_scan_records_baseline(self, triggers, tmp_path):
        (tmp_path / "inbox" / "products_1.csv").write_text("sku\nA\n")
        definition = triggers._definition()

        assert triggers.detect_changes(definition) == []

        new_file = tmp_path / "inbox" / "products_2.csv"
        new_file.write_text("sku\nB\n")
        assert triggers.detect_changes(definition) == [("products", [str(new_file)])]
        assert triggers.detect_changes(definition) == []

    def test_modified_file_is_a_change(self, triggers, tmp_path):
        path = tmp_path / "inbox" / "products_1.csv"
        path.write_text("sku\nA\n")
        definition = triggers._definition()
        triggers.detect_changes(definition)

        stat = os.stat(path)
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert triggers.detect_changes(definition) == [("products", [str(path)])]

    @pytest.mark.asyncio
    async def test_sensor_submits_run_for_changed_sources(self, triggers, scheduler, tmp_path):
        assert await triggers.run_sensor() is None

        new_file = tmp_path / "inbox" / "products_7.csv"
        new_file.write_text("sku\nA\n")
        handle = await triggers.run_sensor()

        # Only transforms fully covered by the changed sources come along
        assert set(handle.task_ids) == {
            "extract:products", "stage:products", "load:products", "transform:catalog",
        }
        run = await scheduler.get_run(handle.run_id)
        assert run.trigger == TriggerType.SENSOR
        assert run.trigger_ref == str(new_file)

        assert await triggers.run_sensor() is None

    @pytest.mark.asyncio
    async def test_cron_schedule(self, scheduler, tmp_path):
        triggers = PipelineTriggers(
            scheduler, definition_path=write_definition(tmp_path), cron="0 * * * *"
        )

        handle = await triggers.run_scheduled()

        run = await scheduler.get_run(handle.run_id)
        assert run.trigger_ref == "cron:0 * * * *"

    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, triggers):
        triggers.start()
        try:
            assert {job.id for job in triggers.scheduler.get_jobs()} == {"scheduled_run", "file_sensor"}
        finally:
            triggers.stop()
