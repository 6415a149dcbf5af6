"""
Custom exceptions for the batch engine with structured error context.

This module provides the exception hierarchy used by record sources, mappers,
processors, writers, the chunk loop and the execution tracker. Each exception
carries context information for logging and for the error details persisted
on a failed step execution.

Exception Hierarchy:
    BatchException (base)
    ├── SourceError
    │   └── SourceUnavailableError
    ├── SkippableError
    │   ├── MalformedRecordError
    │   ├── MappingError
    │   └── ProcessingError
    ├── WriteError
    ├── WriteExhaustedError
    ├── SkipLimitExceededError
    ├── StoreError
    │   └── StoreUnavailableError
    ├── ExecutionError
    │   ├── DuplicateExecutionError
    │   │   └── ExecutionAlreadyRunningError
    │   └── ExecutionNotFoundError
    ├── InvalidJobParametersError
    └── RetryableError / NonRetryableError (mixins)

Error classes by severity:
    field-level     SkippableError subclasses, recovered by the skip policy
    chunk-level     WriteError, retried as a unit
    systemic        SourceUnavailableError, StoreUnavailableError, fatal at once
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


class BatchException(Exception):
    """
    Base exception for all batch-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (step, offset, timestamp, etc.)
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
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

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

class RetryableError(BatchException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Deadlocks and lock timeouts
    - Constraint races between concurrent writers
    - Writer timeouts
    """
    pass


class NonRetryableError(BatchException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Missing or unreadable source files
    - Lost database connections
    - Duplicate executions
    """
    pass


# ============================================================================
# Source Errors
# ============================================================================

class SourceError(BatchException):
    """Base exception for record source failures."""
    pass


class SourceUnavailableError(NonRetryableError, SourceError):
    """
    Raised when the underlying medium of a record source cannot be opened.

    Context should include:
        - location: Path or URI of the medium
    """
    pass


# ============================================================================
# Record-level (skippable) Errors
# ============================================================================

class SkippableError(BatchException):
    """
    Base exception for per-record failures routed to the skip policy.

    Attributes:
        offset: 1-based position of the record in its source (filled in by the
            chunk loop when the raiser does not know it)
        raw_content: Raw text of the record, when available
    """

    def __init__(
        self,
        message: str,
        offset: Optional[int] = None,
        raw_content: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        context = dict(context or {})
        if offset is not None:
            context.setdefault("offset", offset)
        super().__init__(message, context, original_exception)
        self.offset = offset
        self.raw_content = raw_content

    @property
    def reason(self) -> str:
        return self.message


class MalformedRecordError(SkippableError):
    """
    Raised when a line cannot be tokenized into the expected field count.

    Context should include:
        - expected_fields: Number of fields the source expects
        - actual_fields: Number of fields found on the line
    """
    pass


class MappingError(SkippableError):
    """
    Raised when a raw record cannot be converted into a domain record.

    Context should include:
        - field_errors: Field name -> validation message
    """
    pass


class ProcessingError(SkippableError):
    """
    Raised by an item processor that rejects a record.

    Context should include:
        - field_name: Field that failed validation (if applicable)
    """
    pass


# ============================================================================
# Write Errors
# ============================================================================

class WriteError(RetryableError):
    """
    Raised when a chunk cannot be persisted.

    The whole chunk is retried; partial chunk failures are treated as total.

    Context should include:
        - chunk_size: Number of records in the chunk
        - attempt: Attempt number (if known)
    """
    pass


class WriteExhaustedError(NonRetryableError):
    """
    Raised when a chunk still fails after the configured number of retries.

    Context should include:
        - step_name: Step whose chunk could not be written
        - attempts: Number of write attempts made
    """
    pass


class SkipLimitExceededError(NonRetryableError):
    """
    Raised when the number of skipped records exceeds the skip limit.

    Attributes:
        pending_skips: Skip records of the in-flight chunk, still to be logged
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        pending_skips: Optional[List[Any]] = None
    ):
        super().__init__(message, context, original_exception)
        self.pending_skips = pending_skips or []


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(BatchException):
    """Base exception for persistent store failures."""
    pass


class StoreUnavailableError(NonRetryableError, StoreError):
    """
    Raised when the persistent store cannot be reached.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, SELECT)
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Execution Errors
# ============================================================================

class ExecutionError(BatchException):
    """Base exception for job execution bookkeeping failures."""
    pass


class DuplicateExecutionError(NonRetryableError, ExecutionError):
    """
    Raised when a job with identical parameters already completed.

    Context should include:
        - job_name: Name of the job
        - parameters_hash: Identity hash of the job parameters
        - job_execution_id: Existing execution
    """
    pass


class ExecutionAlreadyRunningError(DuplicateExecutionError):
    """Raised when a job with identical parameters is running in this process."""
    pass


class ExecutionNotFoundError(NonRetryableError, ExecutionError):
    """Raised when no execution matches a lookup."""
    pass


class InvalidJobParametersError(NonRetryableError):
    """
    Raised when job parameters cannot be built or parsed.

    Context should include:
        - parameter: Name of the offending parameter
        - value: Offending value or expression
    """
    pass
