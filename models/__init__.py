"""
SQLAlchemy ORM models for database tables.

This package defines the durable state of the orchestrator:

Models:
    base: Base declarative class and shared enums (SourceType, TaskKind, TaskState, ...)
    run: Pipeline runs (one per trigger)
    task: Tasks, dependency edges and the state transition history
    watermark: Versioned per-source watermark rows
    staged_object: Catalog of committed staged objects
    load_ledger: Applied (source, watermark range) entries
    warehouse: Target rows and the load staging table

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).

Usage:
    from models import PipelineRun, Task, SourceWatermark, LoadLedgerEntry
    from models.base import TaskKind, TaskState

Relationships:
    - PipelineRun → Task (one-to-many)
    - Task → TaskDependency (DAG edges)
    - Task → TaskEvent (append-only history)
"""

from models.base import Base
from models.run import PipelineRun
from models.task import Task, TaskDependency, TaskEvent
from models.watermark import SourceWatermark
from models.staged_object import StagedObjectRecord
from models.load_ledger import LoadLedgerEntry
from models.warehouse import WarehouseRow, LoadStagingRow

__all__ = [
    "Base",
    "PipelineRun",
    "Task",
    "TaskDependency",
    "TaskEvent",
    "SourceWatermark",
    "StagedObjectRecord",
    "LoadLedgerEntry",
    "WarehouseRow",
    "LoadStagingRow",
]
