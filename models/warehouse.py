from sqlalchemy import Column, String, DateTime, Integer, Index
from datetime import datetime
from models.base import Base, BigIntId, JSONType


class WarehouseRow(Base):
    """
    Target table: one logical row per (source, primary key).

    Schema Design:
    - record_key is the joined primary key of the source record
    - payload keeps the record as extracted (JSONB on PostgreSQL)
    - extracted_at / position drive "most recently extracted wins" when
      duplicate or overlapping ranges are merged
    """
    __tablename__ = "warehouse_rows"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    source_id = Column(String(100), nullable=False, index=True)
    record_key = Column(String(512), nullable=False)

    payload = Column(JSONType, nullable=False)
    extracted_at = Column(DateTime, nullable=False)
    position = Column(String(255), nullable=True)

    # Lineage
    range_high = Column(String(255), nullable=True)
    loaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_warehouse_source_key", "source_id", "record_key", unique=True),
    )


class LoadStagingRow(Base):
    """
    Scratch table for the set-based load.

    Rows of one staged object are bulk inserted under a load_id,
    deduplicated with a window function, merged into warehouse_rows and
    deleted again inside the same transaction.
    """
    __tablename__ = "load_staging"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    load_id = Column(String(36), nullable=False, index=True)

    source_id = Column(String(100), nullable=False)
    record_key = Column(String(512), nullable=False)
    payload = Column(JSONType, nullable=False)
    extracted_at = Column(DateTime, nullable=False)
    position = Column(String(255), nullable=True)
    ordinal = Column(Integer, nullable=False)
