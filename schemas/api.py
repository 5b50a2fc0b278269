"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import RunStatus, TaskKind, TaskState, TriggerType, WatermarkKind


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="healthy | degraded | unhealthy")
    timestamp: datetime
    database_connected: bool
    tasks_by_state: Dict[str, int] = Field(default_factory=dict)
    stale_running_tasks: int = 0
    last_run: Optional["RunSummary"] = None

    @model_validator(mode="after")
    def derive_status(self):
        """Status follows database connectivity and task health"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.stale_running_tasks or self.tasks_by_state.get(TaskState.FAILED.value, 0):
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "tasks_by_state": {"succeeded": 42, "pending": 3},
                "stale_running_tasks": 0
            }
        }


# ============================================================================
# Run / Task Schemas
# ============================================================================

class TaskEventResponse(BaseModel):
    from_state: Optional[TaskState]
    to_state: TaskState
    attempt: int
    error: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class TaskResponse(BaseModel):
    """Task state, attempts and the last error"""
    id: int
    run_id: int
    kind: TaskKind
    source_id: Optional[str]
    name: str
    state: TaskState
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    last_error: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    retry_of: Optional[int] = None
    superseded_by: Optional[int] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    depends_on: List[int] = Field(default_factory=list)
    events: List[TaskEventResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True
        use_enum_values = True


class RunSummary(BaseModel):
    run_id: str
    trigger: TriggerType
    trigger_ref: Optional[str] = None
    status: RunStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class RunDetailResponse(RunSummary):
    logical_date: Optional[datetime] = None
    cancel_requested: bool = False
    tasks: List[TaskResponse] = Field(default_factory=list)


class RunListResponse(BaseModel):
    runs: List[RunSummary]
    count: int


class SubmitRunRequest(BaseModel):
    """Manual trigger: all sources of the pipeline definition, or a subset"""
    source_ids: Optional[List[str]] = Field(None, min_length=1)
    trigger_ref: Optional[str] = Field(None, max_length=255)


class SubmitRunResponse(BaseModel):
    run_id: str
    task_ids: Dict[str, int]


class CancelRunResponse(BaseModel):
    run_id: str
    cancelled: int
    flagged: int


# ============================================================================
# Watermark Schemas
# ============================================================================

class WatermarkResponse(BaseModel):
    source_id: str
    kind: WatermarkKind
    value: str
    sequence: int
    version: int
    advanced_by: Optional[str] = None
    note: Optional[str] = None
    updated_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class WatermarkResetRequest(BaseModel):
    """Operator rewind; value None clears the watermark (full re-extraction)"""
    kind: Optional[WatermarkKind] = None
    value: Optional[Any] = None
    sequence: int = Field(0, ge=0)
    reason: str = Field(..., min_length=1, max_length=500)

    @model_validator(mode="after")
    def kind_with_value(self):
        if self.value is not None and self.kind is None:
            raise ValueError("kind is required when value is given")
        return self


class WatermarkResetResponse(BaseModel):
    source_id: str
    previous: Optional[Dict[str, Any]] = None
    current: Optional[Dict[str, Any]] = None


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Resource not found",
                "detail": "Run 550e8400-e29b-41d4-a716-446655440000 not found",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }


HealthCheckResponse.model_rebuild()
