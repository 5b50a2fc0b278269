"""
Unit tests for the warehouse loader
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from core.exceptions import ChecksumMismatch, WarehouseUnavailable
from ingestion.loaders.warehouse_loader import WarehouseLoader
from ingestion.staging.stage_writer import StageWriter
from ingestion.watermarks import WatermarkStore
from models.load_ledger import LoadLedgerEntry
from models.warehouse import LoadStagingRow, WarehouseRow
from schemas.watermark import Watermark, WatermarkRange
from tests.factories import make_source, order_rows


def integer(value) -> Watermark:
    return Watermark.of("integer", value)


def int_range(low, high) -> WatermarkRange:
    return WatermarkRange(low=integer(low) if low is not None else None, high=integer(high))


@pytest.fixture
def stage_writer(object_store):
    return StageWriter(object_store)


@pytest.fixture
def watermark_store(session_maker):
    return WatermarkStore(session_maker)


@pytest.fixture
def loader(session_maker, stage_writer, watermark_store):
    return WarehouseLoader(session_maker, stage_writer, watermark_store)


async def count(session_maker, model, *criteria):
    async with session_maker() as session:
        query = select(func.count()).select_from(model)
        if criteria:
            query = query.where(*criteria)
        return (await session.execute(query)).scalar_one()


async def warehouse_rows(session_maker, source_id):
    async with session_maker() as session:
        result = await session.execute(
            select(WarehouseRow).where(WarehouseRow.source_id == source_id).order_by(WarehouseRow.record_key)
        )
        return {row.record_key: row for row in result.scalars().all()}


class TestWarehouseLoader:
    """Ledger-based idempotent loads"""

    @pytest.mark.asyncio
    async def test_orders_range_advances_watermark(
        self, loader, stage_writer, watermark_store, session_maker, orders_source
    ):
        await watermark_store.advance("orders", integer(100))
        manifest = await stage_writer.stage(orders_source, order_rows(101, 150), int_range(100, 150))

        result = await loader.load(manifest, task_id=3)

        assert result.rows_received == 50
        assert result.rows_merged == 50
        assert result.watermark_advanced
        assert await watermark_store.get("orders") == integer(150)
        assert await count(session_maker, WarehouseRow) == 50
        assert await count(
            session_maker, LoadLedgerEntry,
            LoadLedgerEntry.source_id == "orders",
            LoadLedgerEntry.range_low == integer(100).sortable(),
            LoadLedgerEntry.range_high == integer(150).sortable(),
        ) == 1
        # Scratch rows do not outlive the transaction
        assert await count(session_maker, LoadStagingRow) == 0
        assert (await watermark_store.list())[0].advanced_by == "load:3"

    @pytest.mark.asyncio
    async def test_replay_is_a_noop(self, loader, stage_writer, watermark_store, session_maker, orders_source):
        await watermark_store.advance("orders", integer(100))
        manifest = await stage_writer.stage(orders_source, order_rows(101, 150), int_range(100, 150))
        await loader.load(manifest)

        replay = await loader.load(manifest)

        assert replay.skipped
        assert replay.rows_merged == 0
        assert not replay.watermark_advanced
        assert await count(session_maker, WarehouseRow) == 50
        assert await count(session_maker, LoadLedgerEntry) == 1

    @pytest.mark.asyncio
    async def test_replay_after_rewind_does_not_move_watermark(
        self, loader, stage_writer, watermark_store, orders_source
    ):
        manifest = await stage_writer.stage(orders_source, order_rows(101, 150), int_range(100, 150))
        await loader.load(manifest)
        await watermark_store.reset("orders", integer(120))

        assert (await loader.load(manifest)).skipped
        assert await watermark_store.get("orders") == integer(120)

    @pytest.mark.asyncio
    async def test_duplicate_keys_in_batch_keep_last_position(
        self, loader, stage_writer, session_maker
    ):
        source = make_source("customers", watermark_field="version")
        records = [
            {"id": 1, "version": 1, "name": "old"},
            {"id": 2, "version": 2, "name": "other"},
            {"id": 1, "version": 3, "name": "new"},
        ]
        manifest = await stage_writer.stage(source, records, int_range(None, 3))

        result = await loader.load(manifest)

        rows = await warehouse_rows(session_maker, "customers")
        assert result.rows_merged == 2
        assert rows["1"].payload["name"] == "new"
        assert rows["2"].payload["name"] == "other"

    @pytest.mark.asyncio
    async def test_older_extraction_never_overwrites_newer(
        self, loader, stage_writer, session_maker, orders_source
    ):
        fresh = await stage_writer.stage(
            orders_source, [{"id": 1, "amount": 20}], int_range(1, 2),
            extracted_at=datetime(2024, 1, 15, 12)
        )
        stale = await stage_writer.stage(
            orders_source, [{"id": 1, "amount": 10}], int_range(0, 1),
            extracted_at=datetime(2024, 1, 15, 12) - timedelta(hours=1)
        )

        await loader.load(fresh)
        await loader.load(stale)

        rows = await warehouse_rows(session_maker, "orders")
        assert rows["1"].payload["amount"] == 20

    @pytest.mark.asyncio
    async def test_overlapping_ranges_upsert(self, loader, stage_writer, session_maker, orders_source):
        first = await stage_writer.stage(orders_source, order_rows(1, 10), int_range(None, 10))
        second = await stage_writer.stage(
            orders_source, order_rows(5, 15, status="shipped"), int_range(4, 15),
            extracted_at=datetime.utcnow() + timedelta(seconds=1)
        )

        await loader.load(first)
        await loader.load(second)

        rows = await warehouse_rows(session_maker, "orders")
        assert len(rows) == 15
        assert rows["7"].payload["status"] == "shipped"
        assert "status" not in rows["3"].payload

    @pytest.mark.asyncio
    async def test_corrupt_payload_rejected_before_writing(
        self, loader, stage_writer, object_store, session_maker, orders_source
    ):
        manifest = await stage_writer.stage(orders_source, order_rows(101, 110), int_range(100, 110))
        await object_store.put(manifest.data_key, b"{}\n")

        with pytest.raises(ChecksumMismatch):
            await loader.load(manifest)
        assert await count(session_maker, WarehouseRow) == 0
        assert await count(session_maker, LoadLedgerEntry) == 0

    @pytest.mark.asyncio
    async def test_connection_failure_is_retryable(self, loader, stage_writer, watermark_store, orders_source):
        manifest = await stage_writer.stage(orders_source, order_rows(101, 110), int_range(100, 110))

        with patch.object(
            loader, "_merge",
            side_effect=OperationalError("INSERT", {}, Exception("connection reset"))
        ):
            with pytest.raises(WarehouseUnavailable) as exc_info:
                await loader.load(manifest)

        assert exc_info.value.retryable
        assert exc_info.value.context["operation"] == "MERGE"
        assert await watermark_store.get("orders") is None

        # The retry applies the range once
        result = await loader.load(manifest)
        assert not result.skipped
        assert await watermark_store.get("orders") == integer(110)
