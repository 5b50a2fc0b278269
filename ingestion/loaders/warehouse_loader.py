"""
Load staged objects into the warehouse with ledger-based idempotency.

One load is one transaction:

    1. Ledger check      (source, range) already applied -> no-op
    2. Stage             bulk insert into load_staging under a load id
    3. Deduplicate       ROW_NUMBER() OVER (PARTITION BY record_key
                         ORDER BY extracted_at DESC, position DESC)
    4. Merge             upsert into warehouse_rows, newer extraction wins
    5. Clean up          delete the load's staging rows
    6. Ledger entry      unique (source, range_low, range_high)
    7. Watermark         advanced in the same transaction
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import dialect_insert
from core.exceptions import LoadRejected, WarehouseUnavailable
from ingestion.staging.stage_writer import StageWriter
from ingestion.watermarks import WatermarkStore
from models.load_ledger import LoadLedgerEntry
from models.warehouse import LoadStagingRow, WarehouseRow
from schemas.staging import StagedManifest, StagedRecord

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    source_id: str
    range_low: str
    range_high: str
    rows_received: int = 0
    rows_merged: int = 0
    skipped: bool = False
    watermark_advanced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _AlreadyApplied(Exception):
    """Another transaction committed the same ledger key first"""


class WarehouseLoader:
    """
    Apply staged manifests to warehouse_rows.

    Ensures:
    - A (source, range) is merged at most once (ledger unique key)
    - Duplicate keys within and across ranges resolve to the most recently
      extracted record
    - The watermark never runs ahead of the data: it is advanced inside the
      load transaction
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        stage_writer: StageWriter,
        watermark_store: WatermarkStore,
        timeout: Optional[float] = None,
        chunk_size: int = 500
    ):
        self.session_maker = session_maker
        self.stage_writer = stage_writer
        self.watermark_store = watermark_store
        self.timeout = timeout
        self.chunk_size = chunk_size

    async def load(self, manifest: StagedManifest, task_id: Optional[int] = None) -> LoadResult:
        """
        Apply one staged object.

        Raises:
            ChecksumMismatch: Staged payload is corrupt
            LoadRejected: Malformed data or constraint violation (non-retryable)
            WarehouseUnavailable: Connection failure or deadline exceeded (retryable)
        """
        context = {
            "source_id": manifest.source_id,
            "range_low": manifest.range_low,
            "range_high": manifest.range_high,
            "manifest_key": manifest.manifest_key,
        }
        records = await self.stage_writer.read_records(manifest)

        try:
            if self.timeout:
                return await asyncio.wait_for(
                    self._apply(manifest, records, task_id, context), timeout=self.timeout
                )
            return await self._apply(manifest, records, task_id, context)
        except asyncio.TimeoutError as e:
            raise WarehouseUnavailable(
                f"Load of {manifest.source_id} exceeded deadline",
                context={**context, "timeout": self.timeout},
                original_exception=e
            )

    async def _apply(
        self,
        manifest: StagedManifest,
        records: List[StagedRecord],
        task_id: Optional[int],
        context: Dict[str, Any]
    ) -> LoadResult:
        result = LoadResult(
            source_id=manifest.source_id,
            range_low=manifest.range_low,
            range_high=manifest.range_high,
            rows_received=len(records),
        )
        operation = "LEDGER_CHECK"

        try:
            async with self.session_maker() as session:
                try:
                    async with session.begin():
                        if await self._ledger_entry(session, manifest) is not None:
                            result.skipped = True
                            logger.info(
                                f"Range {manifest.watermark_range} of {manifest.source_id} "
                                "already applied; skipping"
                            )
                            return result

                        load_id = str(uuid.uuid4())
                        operation = "STAGE"
                        await self._stage_rows(session, load_id, manifest, records)

                        operation = "MERGE"
                        result.rows_merged = await self._merge(session, load_id, manifest)

                        operation = "CLEANUP"
                        await session.execute(
                            delete(LoadStagingRow).where(LoadStagingRow.load_id == load_id)
                        )

                        operation = "LEDGER_WRITE"
                        await self._write_ledger(session, manifest, result, task_id)

                        operation = "WATERMARK"
                        result.watermark_advanced = await self.watermark_store.advance(
                            manifest.source_id,
                            manifest.watermark_range.high,
                            session=session,
                            advanced_by=f"load:{task_id}" if task_id else "load"
                        )
                except _AlreadyApplied:
                    # The losing transaction was rolled back as a whole
                    logger.info(
                        f"Concurrent load of {manifest.source_id} range "
                        f"{manifest.watermark_range} won the race; treating as replay"
                    )
                    return LoadResult(
                        source_id=manifest.source_id,
                        range_low=manifest.range_low,
                        range_high=manifest.range_high,
                        rows_received=len(records),
                        skipped=True,
                    )

        except (IntegrityError, DataError, ProgrammingError) as e:
            raise LoadRejected(
                f"Warehouse rejected load of {manifest.source_id}",
                context={**context, "operation": operation},
                original_exception=e
            )
        except (OperationalError, InterfaceError, DBAPIError, OSError) as e:
            raise WarehouseUnavailable(
                f"Warehouse unavailable while loading {manifest.source_id}",
                context={**context, "operation": operation},
                original_exception=e
            )

        logger.info(
            f"Loaded {result.rows_merged}/{result.rows_received} rows for "
            f"{manifest.source_id} range {manifest.watermark_range}",
            extra={"source_id": manifest.source_id, "task_id": task_id}
        )
        return result

    async def _ledger_entry(
        self,
        session: AsyncSession,
        manifest: StagedManifest
    ) -> Optional[LoadLedgerEntry]:
        query = select(LoadLedgerEntry).where(
            LoadLedgerEntry.source_id == manifest.source_id,
            LoadLedgerEntry.range_low == manifest.range_low,
            LoadLedgerEntry.range_high == manifest.range_high,
        )
        return (await session.execute(query)).scalar_one_or_none()

    async def _stage_rows(
        self,
        session: AsyncSession,
        load_id: str,
        manifest: StagedManifest,
        records: List[StagedRecord]
    ):
        rows = [
            {
                "load_id": load_id,
                "source_id": manifest.source_id,
                "record_key": record.key,
                "payload": record.data,
                "extracted_at": record.extracted_at,
                "position": record.position,
                "ordinal": ordinal,
            }
            for ordinal, record in enumerate(records)
        ]
        for i in range(0, len(rows), self.chunk_size):
            await session.execute(insert(LoadStagingRow), rows[i:i + self.chunk_size])

    async def _merge(self, session: AsyncSession, load_id: str, manifest: StagedManifest) -> int:
        """Deduplicate the staged rows and upsert the winners"""
        ranked = (
            select(
                LoadStagingRow.record_key,
                LoadStagingRow.payload,
                LoadStagingRow.extracted_at,
                LoadStagingRow.position,
                func.row_number().over(
                    partition_by=LoadStagingRow.record_key,
                    order_by=(
                        LoadStagingRow.extracted_at.desc(),
                        LoadStagingRow.position.desc(),
                        LoadStagingRow.ordinal.desc(),
                    )
                ).label("rn")
            )
            .where(LoadStagingRow.load_id == load_id)
            .subquery()
        )
        winners = (
            await session.execute(
                select(
                    ranked.c.record_key,
                    ranked.c.payload,
                    ranked.c.extracted_at,
                    ranked.c.position,
                ).where(ranked.c.rn == 1)
            )
        ).all()

        now = datetime.utcnow()
        values = [
            {
                "source_id": manifest.source_id,
                "record_key": row.record_key,
                "payload": row.payload,
                "extracted_at": row.extracted_at,
                "position": row.position,
                "range_high": manifest.range_high,
                "loaded_at": now,
            }
            for row in winners
        ]

        merged = 0
        dialect_specific_insert = dialect_insert(session)
        for i in range(0, len(values), self.chunk_size):
            stmt = dialect_specific_insert(WarehouseRow).values(values[i:i + self.chunk_size])
            stmt = stmt.on_conflict_do_update(
                index_elements=["source_id", "record_key"],
                set_={
                    "payload": stmt.excluded.payload,
                    "extracted_at": stmt.excluded.extracted_at,
                    "position": stmt.excluded.position,
                    "range_high": stmt.excluded.range_high,
                    "loaded_at": stmt.excluded.loaded_at,
                },
                # An older extraction never overwrites a newer one
                where=WarehouseRow.extracted_at <= stmt.excluded.extracted_at
            )
            outcome = await session.execute(stmt)
            merged += max(outcome.rowcount or 0, 0)
        return merged

    async def _write_ledger(
        self,
        session: AsyncSession,
        manifest: StagedManifest,
        result: LoadResult,
        task_id: Optional[int]
    ):
        session.add(LoadLedgerEntry(
            source_id=manifest.source_id,
            range_low=manifest.range_low,
            range_high=manifest.range_high,
            manifest_key=manifest.manifest_key,
            checksum=manifest.checksum,
            high_watermark=manifest.watermark_range.high.to_dict(),
            rows_received=result.rows_received,
            rows_merged=result.rows_merged,
            task_id=task_id,
            applied_at=datetime.utcnow(),
        ))
        try:
            await session.flush()
        except IntegrityError as e:
            raise _AlreadyApplied() from e
