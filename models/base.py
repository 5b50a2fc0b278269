from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid) on SQLite
BigIntId = BigInteger().with_variant(Integer(), "sqlite")

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, enum.Enum):
    """Source adapter types"""
    DATABASE_TABLE = "database_table"
    FILE_GLOB = "file_glob"
    API_ENDPOINT = "api_endpoint"


class ExtractionMode(str, enum.Enum):
    """How a source is read on each run"""
    FULL_REFRESH = "full_refresh"
    INCREMENTAL = "incremental"


class WatermarkKind(str, enum.Enum):
    """Type of the ordered position tracked per source"""
    INTEGER = "integer"
    TIMESTAMP = "timestamp"
    CURSOR = "cursor"


class TaskKind(str, enum.Enum):
    """Unit of work types, in pipeline order"""
    EXTRACT = "extract"
    STAGE = "stage"
    LOAD = "load"
    TRANSFORM = "transform"


class TaskState(str, enum.Enum):
    """Task lifecycle state"""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class RunStatus(str, enum.Enum):
    """Run status derived from its tasks"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class TriggerType(str, enum.Enum):
    """What produced a run request"""
    SCHEDULE = "schedule"
    SENSOR = "sensor"
    MANUAL = "manual"


# States a task can be claimed from by a worker
CLAIMABLE_STATES = (TaskState.PENDING, TaskState.RETRYING)

# States that never change again without an operator re-trigger
TERMINAL_STATES = (
    TaskState.SUCCEEDED,
    TaskState.FAILED,
    TaskState.BLOCKED,
    TaskState.CANCELLED,
)
