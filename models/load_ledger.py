from sqlalchemy import Column, String, DateTime, Integer, Index, BigInteger
from datetime import datetime
from models.base import Base, BigIntId, JSONType


class LoadLedgerEntry(Base):
    """
    Warehouse-resident record of applied staged objects.

    Purpose:
    - Idempotency key (source_id, range_low, range_high): a range is merged
      at most once; replays see the entry and no-op
    - Source of truth when the watermark has to be re-derived after a crash

    The unique index is what rejects a second, concurrent apply.
    """
    __tablename__ = "load_ledger"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    source_id = Column(String(100), nullable=False, index=True)
    range_low = Column(String(255), nullable=False)
    range_high = Column(String(255), nullable=False)

    manifest_key = Column(String(1024), nullable=False)
    checksum = Column(String(64), nullable=False)
    high_watermark = Column(JSONType, nullable=False)

    rows_received = Column(Integer, nullable=False, default=0)
    rows_merged = Column(Integer, nullable=False, default=0)
    task_id = Column(BigInteger, nullable=True)

    applied_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_ledger_source_range", "source_id", "range_low", "range_high", unique=True),
    )
