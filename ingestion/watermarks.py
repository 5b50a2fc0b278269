"""
Watermark Store: durable "last successfully loaded position" per source.

Rows are versioned and every change is a compare-and-swap on the version,
so parallel workers cannot lose each other's updates. Advances that would
move a watermark backwards are rejected (logged no-op); only an explicit
operator reset may rewind.
"""

from typing import Dict, List, Optional
from datetime import datetime
import logging

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import dialect_insert
from core.exceptions import WarehouseUnavailable, WatermarkError
from models.load_ledger import LoadLedgerEntry
from models.watermark import SourceWatermark
from schemas.watermark import Watermark

logger = logging.getLogger(__name__)


def _to_watermark(row: SourceWatermark) -> Watermark:
    return Watermark(kind=row.kind, value=row.value, sequence=row.sequence)


class WatermarkStore:
    """
    Versioned watermark rows with compare-and-swap advance.

    Methods accept an optional session: with one, the change joins the
    caller's transaction (the load driver commits ledger entry and
    watermark together); without one, the store opens and commits its own.
    """

    def __init__(self, session_maker: async_sessionmaker, max_cas_retries: int = 5):
        self.session_maker = session_maker
        self.max_cas_retries = max_cas_retries

    async def _row(self, session: AsyncSession, source_id: str) -> Optional[SourceWatermark]:
        result = await session.execute(
            select(SourceWatermark)
            .where(SourceWatermark.source_id == source_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, source_id: str, session: Optional[AsyncSession] = None) -> Optional[Watermark]:
        """Current watermark for a source, or None if nothing was loaded yet"""
        if session is not None:
            row = await self._row(session, source_id)
        else:
            async with self.session_maker() as own_session:
                row = await self._row(own_session, source_id)
        return _to_watermark(row) if row else None

    async def advance(
        self,
        source_id: str,
        new_watermark: Watermark,
        session: Optional[AsyncSession] = None,
        advanced_by: Optional[str] = None
    ) -> bool:
        """
        Move the watermark forward.

        Returns:
            True if the stored value changed, False for a rejected (stale)
            or equal value

        Raises:
            WatermarkError: Kind mismatch
            WarehouseUnavailable: CAS conflicts beyond the retry limit
        """
        if session is not None:
            return await self._advance(session, source_id, new_watermark, advanced_by)

        async with self.session_maker() as own_session:
            advanced = await self._advance(own_session, source_id, new_watermark, advanced_by)
            await own_session.commit()
            return advanced

    async def _advance(
        self,
        session: AsyncSession,
        source_id: str,
        new_watermark: Watermark,
        advanced_by: Optional[str]
    ) -> bool:
        for _ in range(self.max_cas_retries):
            row = await self._row(session, source_id)

            if row is None:
                insert = dialect_insert(session)
                stmt = insert(SourceWatermark).values(
                    source_id=source_id,
                    kind=new_watermark.kind,
                    value=new_watermark.value,
                    sequence=new_watermark.sequence,
                    sort_value=new_watermark.sortable(),
                    version=1,
                    advanced_by=advanced_by,
                    created_at=datetime.utcnow(),
                    updated_at=datetime.utcnow(),
                ).on_conflict_do_nothing(index_elements=["source_id"])
                result = await session.execute(stmt)
                if result.rowcount == 1:
                    logger.info(f"Watermark for {source_id} initialized at {new_watermark}")
                    return True
                continue  # Lost the race to another writer; re-read

            current = _to_watermark(row)
            if current.kind != new_watermark.kind:
                raise WatermarkError(
                    f"Watermark kind mismatch for {source_id}",
                    context={
                        "source_id": source_id,
                        "current_kind": current.kind.value,
                        "new_kind": new_watermark.kind.value
                    }
                )

            if new_watermark < current:
                logger.warning(
                    f"Rejected stale watermark for {source_id}: {new_watermark} < {current}",
                    extra={"source_id": source_id, "advanced_by": advanced_by}
                )
                return False
            if new_watermark == current:
                return False

            result = await session.execute(
                update(SourceWatermark)
                .where(
                    SourceWatermark.source_id == source_id,
                    SourceWatermark.version == row.version
                )
                .values(
                    value=new_watermark.value,
                    sequence=new_watermark.sequence,
                    sort_value=new_watermark.sortable(),
                    version=row.version + 1,
                    advanced_by=advanced_by,
                    note=None,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.info(f"Watermark for {source_id} advanced {current} -> {new_watermark}")
                return True

            logger.debug(f"Watermark CAS conflict for {source_id}, retrying")

        raise WarehouseUnavailable(
            f"Could not advance watermark for {source_id}: too many concurrent updates",
            context={
                "source_id": source_id,
                "new_watermark": str(new_watermark),
                "operation": "WATERMARK_CAS"
            }
        )

    async def reset(
        self,
        source_id: str,
        watermark: Optional[Watermark],
        reason: str = "operator reset"
    ) -> Optional[Watermark]:
        """
        Operator action: set (possibly rewind) or clear a watermark.

        Loads recorded in the ledger before the reset are not replayed into
        the watermark by reconcile().
        """
        async with self.session_maker() as session:
            row = await self._row(session, source_id)
            previous = _to_watermark(row) if row else None

            if watermark is None:
                await session.execute(
                    delete(SourceWatermark).where(SourceWatermark.source_id == source_id)
                )
            elif row is None:
                session.add(SourceWatermark(
                    source_id=source_id,
                    kind=watermark.kind,
                    value=watermark.value,
                    sequence=watermark.sequence,
                    sort_value=watermark.sortable(),
                    version=1,
                    advanced_by="operator",
                    note=reason,
                ))
            else:
                row.kind = watermark.kind
                row.value = watermark.value
                row.sequence = watermark.sequence
                row.sort_value = watermark.sortable()
                row.version = row.version + 1
                row.advanced_by = "operator"
                row.note = reason
                row.updated_at = datetime.utcnow()

            await session.commit()

        logger.warning(
            f"Watermark for {source_id} reset by operator: {previous} -> {watermark} ({reason})"
        )
        return previous

    async def reconcile(self, source_id: str) -> Optional[Watermark]:
        """
        Re-derive the watermark from the load ledger (the source of truth).

        Only ledger entries applied after the last watermark change count,
        so an operator rewind is not undone. A cleared watermark (no row)
        stays cleared.
        """
        async with self.session_maker() as session:
            row = await self._row(session, source_id)
            if row is None:
                return None
            query = select(LoadLedgerEntry).where(
                LoadLedgerEntry.source_id == source_id,
                LoadLedgerEntry.applied_at >= row.updated_at
            )
            result = await session.execute(
                query.order_by(LoadLedgerEntry.range_high.desc()).limit(1)
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                return _to_watermark(row)

            ledger_high = Watermark.from_dict(entry.high_watermark)
            if await self._advance(session, source_id, ledger_high, advanced_by="reconcile"):
                logger.warning(
                    f"Watermark for {source_id} re-derived from load ledger: {ledger_high}"
                )
            await session.commit()

            current = await self._row(session, source_id)
            return _to_watermark(current) if current else None

    async def reconcile_all(self) -> Dict[str, Optional[Watermark]]:
        """Reconcile every source that has load ledger entries"""
        async with self.session_maker() as session:
            result = await session.execute(select(LoadLedgerEntry.source_id).distinct())
            source_ids = sorted(result.scalars().all())
        return {source_id: await self.reconcile(source_id) for source_id in source_ids}

    async def list(self) -> List[SourceWatermark]:
        async with self.session_maker() as session:
            result = await session.execute(select(SourceWatermark).order_by(SourceWatermark.source_id))
            return list(result.scalars().all())
