"""
Unit tests for object stores and the stage writer
"""

import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError
from sqlalchemy import select

from core.exceptions import ChecksumMismatch, SchemaMismatch, StagingError, StorageWriteError
from ingestion.staging.object_store import LocalObjectStore, S3ObjectStore, build_object_store
from ingestion.staging.stage_writer import StageWriter, checksum_of, decode_jsonl, encode_jsonl
from models.staged_object import StagedObjectRecord
from schemas.watermark import Watermark, WatermarkRange
from tests.factories import make_source, order_rows


def orders_range(low=100, high=150) -> WatermarkRange:
    return WatermarkRange(
        low=Watermark.of("integer", low) if low is not None else None,
        high=Watermark.of("integer", high)
    )


class TestLocalObjectStore:
    """Filesystem backend"""

    @pytest.mark.asyncio
    async def test_put_get_overwrite(self, object_store):
        await object_store.put("a/b.txt", b"one")
        await object_store.put("a/b.txt", b"two")
        assert await object_store.get("a/b.txt") == b"two"
        assert await object_store.exists("a/b.txt")

    @pytest.mark.asyncio
    async def test_put_if_absent(self, object_store):
        assert await object_store.put_if_absent("k", b"first") is True
        assert await object_store.put_if_absent("k", b"second") is False
        assert await object_store.get("k") == b"first"

    @pytest.mark.asyncio
    async def test_list_skips_temp_files(self, object_store, tmp_path):
        await object_store.put("staged/orders/x/data.jsonl", b"{}")
        (tmp_path / "objects" / "staged" / "orders" / "x" / ".data.jsonl.123.tmp").write_bytes(b"")
        assert await object_store.list("staged/orders/") == ["staged/orders/x/data.jsonl"]

    @pytest.mark.asyncio
    async def test_missing_object(self, object_store):
        with pytest.raises(StagingError):
            await object_store.get("nope")

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, object_store):
        await object_store.delete("never-written")

    def test_key_cannot_escape_root(self, object_store):
        with pytest.raises(StagingError):
            object_store._path("../outside")

    @pytest.mark.asyncio
    async def test_write_failure_is_retryable(self, object_store):
        with patch("ingestion.staging.object_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageWriteError) as exc_info:
                await object_store.put("a.txt", b"data")
        assert exc_info.value.retryable
        # The temp file was cleaned up
        assert await object_store.list() == []


class TestS3ObjectStore:
    """S3 backend with a mocked boto3 client"""

    def _store(self, client):
        return S3ObjectStore(bucket="stage-bucket", prefix="/etl/", client=client)

    @pytest.mark.asyncio
    async def test_put_uses_prefixed_key(self):
        client = MagicMock()
        store = self._store(client)
        await store.put("staged/orders/data.jsonl", b"x")
        client.put_object.assert_called_once()
        assert client.put_object.call_args.kwargs["Key"] == "etl/staged/orders/data.jsonl"
        assert store.location("k") == "s3://stage-bucket/etl/k"

    @pytest.mark.asyncio
    async def test_client_error_is_storage_write_error(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "SlowDown", "Message": "slow down"}}, "PutObject"
        )
        store = self._store(client)
        with pytest.raises(StorageWriteError):
            await store.put("k", b"x")

    def test_build_object_store_from_url(self, tmp_path):
        assert isinstance(build_object_store(f"file://{tmp_path}"), LocalObjectStore)
        with patch("ingestion.staging.object_store.boto3.client"):
            assert isinstance(build_object_store("s3://bucket/prefix"), S3ObjectStore)


class TestStageWriter:
    """Staged objects and manifests"""

    def test_jsonl_encoding_is_deterministic(self):
        rows = [{"b": 1, "a": datetime(2024, 1, 1)}]
        assert encode_jsonl(rows) == encode_jsonl([{"a": datetime(2024, 1, 1), "b": 1}])
        assert decode_jsonl(encode_jsonl(rows)) == [{"a": "2024-01-01 00:00:00", "b": 1}]

    @pytest.mark.asyncio
    async def test_stage_writes_payload_and_manifest(self, object_store, orders_source):
        writer = StageWriter(object_store)
        manifest = await writer.stage(orders_source, order_rows(101, 150), orders_range())

        assert manifest.row_count == 50
        assert manifest.range_low == Watermark.of("integer", 100).sortable()
        assert await object_store.exists(manifest.data_key)
        payload = await object_store.get(manifest.data_key)
        assert checksum_of(payload) == manifest.checksum

        reread = await writer.read_manifest(manifest.manifest_key)
        assert reread.checksum == manifest.checksum
        records = await writer.read_records(reread)
        assert [r.key for r in records][:2] == ["101", "102"]
        assert records[0].position == Watermark.of("integer", 101).sortable()

    @pytest.mark.asyncio
    async def test_restaging_same_range_overwrites(self, object_store, orders_source):
        writer = StageWriter(object_store)
        first = await writer.stage(orders_source, order_rows(101, 150), orders_range())
        second = await writer.stage(orders_source, order_rows(101, 150), orders_range())

        assert first.manifest_key == second.manifest_key
        assert await writer.list_manifests("orders") == [first.manifest_key]

    @pytest.mark.asyncio
    async def test_retried_stage_keeps_first_commit(self, object_store, orders_source):
        writer = StageWriter(object_store)
        extracted_at = datetime(2024, 1, 15)
        first = await writer.stage(orders_source, order_rows(101, 150), orders_range(), extracted_at=extracted_at)
        retried = await writer.stage(orders_source, order_rows(101, 150), orders_range(), extracted_at=extracted_at)

        assert retried.checksum == first.checksum
        assert retried.created_at == first.created_at

        changed = await writer.stage(orders_source, order_rows(101, 150, note="v2"), orders_range(), extracted_at=extracted_at)

        assert changed.checksum != first.checksum
        assert (await writer.read_manifest(first.manifest_key)).checksum == changed.checksum

    @pytest.mark.asyncio
    async def test_checksum_mismatch_detected(self, object_store, orders_source):
        writer = StageWriter(object_store)
        manifest = await writer.stage(orders_source, order_rows(101, 105), orders_range(100, 105))
        await object_store.put(manifest.data_key, b'{"tampered": true}\n')

        with pytest.raises(ChecksumMismatch) as exc_info:
            await writer.read_records(manifest)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_record_without_key_is_rejected(self, object_store, orders_source):
        writer = StageWriter(object_store)
        with pytest.raises(SchemaMismatch):
            await writer.stage(orders_source, [{"amount": 5}], orders_range(100, 101))

    @pytest.mark.asyncio
    async def test_extracted_at_field_overrides_batch_time(self, object_store):
        source = make_source("customers", extracted_at_field="updated_at")
        writer = StageWriter(object_store)
        manifest = await writer.stage(
            source,
            [{"id": 1, "updated_at": "2024-01-10T08:00:00Z"}],
            orders_range(0, 1),
            extracted_at=datetime(2024, 1, 15)
        )
        records = await writer.read_records(manifest)
        assert records[0].extracted_at == datetime(2024, 1, 10, 8, 0)

    @pytest.mark.asyncio
    async def test_manifest_catalogued(self, object_store, orders_source, session_maker):
        writer = StageWriter(object_store, session_maker=session_maker)
        await writer.stage(orders_source, order_rows(101, 150), orders_range())
        await writer.stage(orders_source, order_rows(101, 150), orders_range())

        async with session_maker() as session:
            rows = (await session.execute(select(StagedObjectRecord))).scalars().all()
        assert len(rows) == 1
        assert rows[0].row_count == 50
