"""
Stage Writer: turns extracted records into immutable staged objects.

Layout in object storage:
    staged/<source_id>/<range token>/data.jsonl      payload (JSON lines)
    staged/<source_id>/<range token>/manifest.json   StagedManifest

Keys derive only from (source id, watermark range), so staging the same
range again overwrites the same objects instead of creating duplicates.
The payload is written first and the manifest last: a visible manifest
implies a complete payload with the recorded checksum.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.database import dialect_insert
from core.exceptions import ChecksumMismatch, SchemaMismatch, StagingError
from ingestion.staging.object_store import ObjectStore
from models.staged_object import StagedObjectRecord
from schemas.source import SourceConfig
from schemas.staging import StagedManifest, StagedRecord
from schemas.watermark import Watermark, WatermarkRange

logger = logging.getLogger(__name__)


def encode_jsonl(rows: Iterable[Dict[str, Any]]) -> bytes:
    """Deterministic JSON-lines encoding (sorted keys, ISO datetimes)"""
    return b"".join(
        json.dumps(row, sort_keys=True, default=str, allow_nan=False).encode("utf-8") + b"\n"
        for row in rows
    )


def decode_jsonl(payload: bytes) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in payload.decode("utf-8").splitlines() if line.strip()]


def checksum_of(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class StageWriter:
    """
    Write staged objects and their manifests.

    Ensures:
    - Idempotent staging (deterministic keys, overwrite on re-stage)
    - Manifest committed last, after the payload
    - SHA-256 checksum verified on every read
    """

    def __init__(
        self,
        store: ObjectStore,
        session_maker: Optional[async_sessionmaker] = None,
        prefix: str = "staged"
    ):
        self.store = store
        self.session_maker = session_maker
        self.prefix = prefix.strip("/")

    def keys_for(self, source_id: str, watermark_range: WatermarkRange) -> Tuple[str, str]:
        base = f"{self.prefix}/{source_id}/{watermark_range.storage_token()}"
        return f"{base}/data.jsonl", f"{base}/manifest.json"

    def _to_staged_records(
        self,
        source: SourceConfig,
        records: Iterable[Dict[str, Any]],
        watermark_range: WatermarkRange,
        extracted_at: datetime
    ) -> List[StagedRecord]:
        staged = []
        for ordinal, record in enumerate(records):
            watermark = source.record_watermark(record) if source.incremental else None
            # Cursor pages and full refreshes have no per-record position:
            # fall back to the order within the batch
            position = (
                watermark.sortable() if watermark is not None
                else f"{watermark_range.high_key}:{ordinal:010d}"
            )
            record_extracted_at = extracted_at
            if source.extracted_at_field and record.get(source.extracted_at_field):
                try:
                    record_extracted_at = datetime.fromisoformat(
                        Watermark.of("timestamp", record[source.extracted_at_field]).value
                    )
                except (TypeError, ValueError) as e:
                    raise SchemaMismatch(
                        f"Field '{source.extracted_at_field}' is not a timestamp",
                        context={
                            "source_id": source.source_id,
                            "field_name": source.extracted_at_field
                        },
                        original_exception=e
                    )
            staged.append(StagedRecord(
                key=source.record_key(record),
                position=position,
                extracted_at=record_extracted_at,
                data=record,
            ))
        return staged

    async def stage(
        self,
        source: SourceConfig,
        records: Iterable[Dict[str, Any]],
        watermark_range: WatermarkRange,
        extracted_at: Optional[datetime] = None
    ) -> StagedManifest:
        """
        Stage a batch of records for one watermark range.

        Returns:
            The committed StagedManifest

        Raises:
            SchemaMismatch: A record lacks its key or watermark field
            StorageWriteError: Transient storage fault (retryable)
        """
        extracted_at = extracted_at or datetime.utcnow()
        data_key, manifest_key = self.keys_for(source.source_id, watermark_range)

        staged = self._to_staged_records(source, records, watermark_range, extracted_at)
        try:
            payload = encode_jsonl(r.model_dump(mode="json") for r in staged)
        except ValueError as e:
            raise SchemaMismatch(
                "Records contain values that cannot be staged as JSON",
                context={"source_id": source.source_id, "range": str(watermark_range)},
                original_exception=e
            )
        checksum = checksum_of(payload)

        # 1. Payload
        await self.store.put(data_key, payload)

        # 2. Manifest (commit point)
        manifest = StagedManifest(
            source_id=source.source_id,
            watermark_range=watermark_range,
            data_key=data_key,
            manifest_key=manifest_key,
            checksum=checksum,
            row_count=len(staged),
            extracted_at=extracted_at,
        )
        body = manifest.model_dump_json().encode("utf-8")
        if not await self.store.put_if_absent(manifest_key, body):
            committed = await self.read_manifest(manifest_key)
            if committed.checksum == checksum:
                # A retried stage of the same content keeps the first commit
                manifest = committed
            else:
                logger.info(f"Replacing staged range {watermark_range} of {source.source_id}")
                await self.store.put(manifest_key, body)

        if self.session_maker is not None:
            await self._catalog(manifest)

        logger.info(
            f"Staged {manifest.row_count} records for {source.source_id} "
            f"range {watermark_range} at {self.store.location(data_key)}"
        )
        return manifest

    async def _catalog(self, manifest: StagedManifest):
        """Mirror the manifest into staged_objects (upsert on source + range)"""
        async with self.session_maker() as session:
            insert = dialect_insert(session)
            values = {
                "source_id": manifest.source_id,
                "range_low": manifest.range_low,
                "range_high": manifest.range_high,
                "data_key": manifest.data_key,
                "manifest_key": manifest.manifest_key,
                "checksum": manifest.checksum,
                "row_count": manifest.row_count,
                "high_watermark": manifest.watermark_range.high.to_dict(),
                "extracted_at": manifest.extracted_at,
                "created_at": manifest.created_at,
            }
            stmt = insert(StagedObjectRecord).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["source_id", "range_low", "range_high"],
                set_={
                    "data_key": stmt.excluded.data_key,
                    "manifest_key": stmt.excluded.manifest_key,
                    "checksum": stmt.excluded.checksum,
                    "row_count": stmt.excluded.row_count,
                    "extracted_at": stmt.excluded.extracted_at,
                    "created_at": stmt.excluded.created_at,
                }
            )
            await session.execute(stmt)
            await session.commit()

    async def read_manifest(self, manifest_key: str) -> StagedManifest:
        raw = await self.store.get(manifest_key)
        try:
            return StagedManifest.model_validate_json(raw)
        except PydanticValidationError as e:
            raise StagingError(
                f"Invalid manifest: {manifest_key}",
                context={"manifest_key": manifest_key},
                original_exception=e
            )

    async def read_records(self, manifest: StagedManifest) -> List[StagedRecord]:
        """
        Read and verify a staged payload.

        Raises:
            ChecksumMismatch: Payload differs from what the manifest committed
        """
        payload = await self.store.get(manifest.data_key)
        actual = checksum_of(payload)
        if actual != manifest.checksum:
            raise ChecksumMismatch(
                f"Checksum mismatch for {manifest.data_key}",
                context={
                    "source_id": manifest.source_id,
                    "range": str(manifest.watermark_range),
                    "expected": manifest.checksum,
                    "actual": actual
                }
            )
        return [StagedRecord(**row) for row in decode_jsonl(payload)]

    async def list_manifests(self, source_id: str) -> List[str]:
        keys = await self.store.list(f"{self.prefix}/{source_id}/")
        return [k for k in keys if k.endswith("/manifest.json")]
