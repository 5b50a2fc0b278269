from sqlalchemy import Column, String, Enum, DateTime, Text, Index, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, BigIntId, JSONType, RunStatus, TriggerType


class PipelineRun(Base):
    """
    One scheduling trigger's worth of related tasks across sources.

    Purpose:
    - Groups extract/stage/load tasks per source plus transforms
    - Audit trail of every trigger (schedule, sensor, manual)
    - Run-level status for monitoring

    A run succeeds iff all its tasks succeed; partial success is
    representable and never blocks unrelated runs.
    """
    __tablename__ = "pipeline_runs"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    run_id = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, nullable=False, index=True)

    # Trigger
    trigger = Column(Enum(TriggerType), nullable=False, default=TriggerType.MANUAL)
    trigger_ref = Column(String(255), nullable=True)  # job id, sensed file, user
    logical_date = Column(DateTime, nullable=True)

    # Run metadata
    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False, index=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text, nullable=True)

    # Configuration snapshot (sources and transforms at submission time)
    config_snapshot = Column(JSONType, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    tasks = relationship("Task", back_populates="run", order_by="Task.id")

    __table_args__ = (
        Index("idx_run_status_created", "status", "created_at"),
    )
