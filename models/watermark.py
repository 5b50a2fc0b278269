from sqlalchemy import Column, Integer, String, Enum, DateTime, BigInteger, Text
from datetime import datetime
from models.base import Base, WatermarkKind


class SourceWatermark(Base):
    """
    Last successfully loaded position per source.

    Purpose:
    - Resume extraction from the last durable load
    - Never rewound automatically (operator reset only)

    Design:
    - One versioned row per source
    - Updates are compare-and-swap on version, so concurrent workers
      cannot lose each other's advances
    - sort_value is the order-preserving encoding used for comparisons
    """
    __tablename__ = "watermarks"

    source_id = Column(String(100), primary_key=True)

    # Watermark data
    kind = Column(Enum(WatermarkKind), nullable=False)
    value = Column(String(255), nullable=False)
    sequence = Column(BigInteger, nullable=False, default=0)  # cursor page sequence
    sort_value = Column(String(255), nullable=False)

    # CAS version
    version = Column(Integer, nullable=False, default=1)

    # Audit
    advanced_by = Column(String(100), nullable=True)  # "load:<task id>", "operator", "reconcile"
    note = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
