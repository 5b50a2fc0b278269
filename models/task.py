from sqlalchemy import (
    Column, String, Integer, Enum, DateTime, Boolean, ForeignKey, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntId, JSONType, TaskKind, TaskState


class Task(Base):
    """
    Durable unit of work tracked by the scheduler.

    Design:
    - State machine: pending → running → {succeeded | retrying → running | failed}
      plus blocked (upstream failed) and cancelled (operator abort)
    - Dependencies live in task_dependencies and must point to tasks of the
      same or an earlier run
    - params is the configuration snapshot the handler executes with;
      output is what downstream tasks consume; checkpoint holds partial
      progress between attempts
    - retry_of / superseded_by link an operator re-trigger chain without
      rewriting the failed task's history
    """
    __tablename__ = "tasks"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    run_id = Column(BigIntId, ForeignKey("pipeline_runs.id"), nullable=False, index=True)

    # Identity
    kind = Column(Enum(TaskKind), nullable=False)
    source_id = Column(String(100), nullable=True, index=True)  # NULL for transforms
    name = Column(String(200), nullable=False)

    # State
    state = Column(Enum(TaskState), default=TaskState.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)

    # Worker lease
    worker_id = Column(String(100), nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    # Payloads
    params = Column(JSONType, nullable=True)
    output = Column(JSONType, nullable=True)
    checkpoint = Column(JSONType, nullable=True)
    last_error = Column(JSONType, nullable=True)

    # Re-trigger chain
    retry_of = Column(BigIntId, ForeignKey("tasks.id"), nullable=True)
    superseded_by = Column(BigIntId, ForeignKey("tasks.id"), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    run = relationship("PipelineRun", back_populates="tasks")

    __table_args__ = (
        Index("idx_task_state_next_attempt", "state", "next_attempt_at"),
        Index("idx_task_source_kind", "source_id", "kind"),
    )


class TaskDependency(Base):
    """Edge of the task DAG: task_id may run only after depends_on_id succeeded."""
    __tablename__ = "task_dependencies"

    task_id = Column(BigIntId, ForeignKey("tasks.id"), primary_key=True)
    depends_on_id = Column(BigIntId, ForeignKey("tasks.id"), primary_key=True, index=True)


class TaskEvent(Base):
    """
    Append-only history of task state transitions.

    Used for monitoring and for replaying what happened to a task
    (attempt number, error, timing) without reading logs.
    """
    __tablename__ = "task_events"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    task_id = Column(BigIntId, ForeignKey("tasks.id"), nullable=False, index=True)
    run_id = Column(BigIntId, ForeignKey("pipeline_runs.id"), nullable=False, index=True)

    from_state = Column(Enum(TaskState), nullable=True)
    to_state = Column(Enum(TaskState), nullable=False)
    attempt = Column(Integer, nullable=False, default=0)
    error = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
