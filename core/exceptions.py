"""
Custom exceptions for the extract/stage/load pipeline with structured error context.

This module provides the exception hierarchy used by extractors, the stage
writer, the load driver and the task scheduler. Each exception carries
context (source, watermark range, attempt, cause) so a failed task can be
replayed by an operator without digging through logs.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── SourceUnavailable        (retryable)
    │   ├── SchemaMismatch           (non-retryable)
    │   ├── AuthenticationError      (non-retryable)
    │   └── ResourceNotFoundError    (non-retryable)
    ├── StagingError
    │   ├── StorageWriteError        (retryable)
    │   └── ChecksumMismatch         (non-retryable)
    ├── LoadError
    │   ├── WarehouseUnavailable     (retryable)
    │   └── LoadRejected             (non-retryable)
    ├── SchedulerError
    │   ├── TaskNotFound
    │   ├── RunNotFound
    │   ├── InvalidTaskTransition
    │   └── WorkerLost               (retryable)
    ├── WatermarkError
    ├── ConfigurationError
    ├── Cancelled
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, range, attempt, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    @property
    def retryable(self) -> bool:
        return isinstance(self, RetryableError)

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that the scheduler retries with exponential backoff.

    Use this for transient errors like:
    - Network timeouts and unreachable sources
    - Rate limiting (HTTP 429)
    - Temporary storage or warehouse connection issues
    - Deadline exceeded on an extractor or load call
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that fail a task immediately.

    These need operator correction (schema fix, data fix) and an explicit
    re-trigger; they never consume retry budget.
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class SourceUnavailable(RetryableError, ExtractionError):
    """
    The upstream system is unreachable, rate limited or too slow.

    Context should include:
        - source_id: Source that failed
        - from_watermark: Watermark the extraction started from

    Attributes:
        resume_watermark: Last fully consumed page position (paginated sources)
        records: Records read from fully consumed pages before the failure
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        resume_watermark=None,
        records=None
    ):
        super().__init__(message, context, original_exception)
        self.resume_watermark = resume_watermark
        self.records = records or []


class RateLimitError(SourceUnavailable):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class SchemaMismatch(NonRetryableError, ExtractionError):
    """
    A record violates the expected contract (missing key or watermark field,
    wrong type, malformed response body).

    Context should include:
        - source_id: Source that produced the record
        - field_name: Field that is missing or malformed
    """
    pass


class AuthenticationError(NonRetryableError, ExtractionError):
    """API authentication failure (HTTP 401/403); needs a credential fix."""
    pass


class ResourceNotFoundError(NonRetryableError, ExtractionError):
    """Configured endpoint does not exist (HTTP 404)."""
    pass


# ============================================================================
# Staging Errors
# ============================================================================

class StagingError(ETLException):
    """Base exception for object storage failures."""
    pass


class StorageWriteError(RetryableError, StagingError):
    """
    Transient object storage fault while writing payload or manifest.

    Context should include:
        - key: Object key being written
    """
    pass


class ChecksumMismatch(NonRetryableError, StagingError):
    """A staged payload does not match the checksum in its manifest."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for warehouse loading failures."""
    pass


class WarehouseUnavailable(RetryableError, LoadError):
    """
    Warehouse connection failure, deadlock or deadline exceeded.

    Context should include:
        - source_id, range_low, range_high
        - operation: Step that failed (LEDGER_CHECK, STAGE, MERGE, ...)
    """
    pass


class LoadRejected(NonRetryableError, LoadError):
    """
    Malformed data or a constraint violation in the warehouse.

    Context should include:
        - source_id, range_low, range_high
        - constraint_name: Name of violated constraint (if applicable)
    """
    pass


# ============================================================================
# Scheduler / Watermark Errors
# ============================================================================

class SchedulerError(ETLException):
    """Base exception for task scheduler failures."""
    pass


class TaskNotFound(SchedulerError):
    pass


class RunNotFound(SchedulerError):
    pass


class InvalidTaskTransition(SchedulerError):
    """A state change that the task state machine does not allow."""
    pass


class WorkerLost(RetryableError, SchedulerError):
    """A running task stopped heartbeating (worker crash or restart)."""
    pass


class WatermarkError(NonRetryableError):
    """Watermark of a different kind than the one stored for the source."""
    pass


class ConfigurationError(NonRetryableError):
    """Invalid source, transform or pipeline configuration."""
    pass


class Cancelled(ETLException):
    """
    Task aborted by operator request.

    Terminal and distinct from a failure: does not count against retry history.
    """
    pass
