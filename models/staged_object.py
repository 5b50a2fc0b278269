from sqlalchemy import Column, String, DateTime, Integer, Index
from datetime import datetime
from models.base import Base, BigIntId, JSONType


class StagedObjectRecord(Base):
    """
    Catalog entry for a committed staged object.

    The manifest in object storage is authoritative; this row mirrors it so
    staged ranges can be listed and audited from SQL. Re-staging the same
    (source, range) overwrites the same keys and refreshes this row.
    """
    __tablename__ = "staged_objects"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    source_id = Column(String(100), nullable=False, index=True)
    range_low = Column(String(255), nullable=False)  # order-preserving encodings
    range_high = Column(String(255), nullable=False)

    data_key = Column(String(1024), nullable=False)
    manifest_key = Column(String(1024), nullable=False)
    checksum = Column(String(64), nullable=False)  # SHA-256
    row_count = Column(Integer, nullable=False, default=0)

    high_watermark = Column(JSONType, nullable=False)
    extracted_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_staged_source_range", "source_id", "range_low", "range_high", unique=True),
    )
