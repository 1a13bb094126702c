"""
Custom exceptions for the bulk export pipeline with structured error context.

Each exception carries a context dictionary so that failures can be logged,
persisted with the job outcome, and shown to operators without re-running
the job.

Exception Hierarchy:
    ExportException (base)
    ├── ConfigurationError
    ├── MalformedInputError
    │   └── EmptyInputError
    ├── ItemError (skippable, per identifier)
    │   ├── NotFoundError
    │   └── TransformError
    ├── UpstreamError
    ├── SkipLimitExceededError
    ├── WriteError
    └── JobCancelledError
"""

from typing import Optional, Dict, Any, List
from datetime import datetime


class ExportException(Exception):
    """
    Base exception for all export-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job id, identifier, line, etc.)
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
            "context": {k: str(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


class ConfigurationError(ExportException):
    """Raised when a job is wired with an unsupported combination of options."""
    pass


# ============================================================================
# Input Errors
# ============================================================================

class MalformedInputError(ExportException):
    """
    Raised when the uploaded identifiers file cannot be tokenized.

    Context should include:
        - line_number: Line of the offending row (if known)
        - source: Name of the identifiers file
    """

    @property
    def line_number(self) -> Optional[int]:
        return self.context.get("line_number")


class EmptyInputError(MalformedInputError):
    """Raised when the identifiers file holds no data rows."""
    pass


# ============================================================================
# Per-item Errors (skippable)
# ============================================================================

class ItemError(ExportException):
    """Base exception for failures that only affect a single identifier."""
    pass


class NotFoundError(ItemError):
    """
    Raised when the lookup collaborator has no entity for an identifier.

    Context should include:
        - entity_type: Entity kind being resolved
        - identifier: Identifier value
    """
    pass


class TransformError(ItemError):
    """
    Raised when a resolved entity cannot be mapped into an export row.

    Context should include:
        - identifier: Identifier value
        - field: Declared field path that failed
    """
    pass


# ============================================================================
# Job-level Errors (fatal)
# ============================================================================

class UpstreamError(ExportException):
    """
    Raised when the lookup collaborator is unreachable or answers with a
    non-recoverable response.

    `transient` marks failures (timeouts, 5xx, connection errors) that a
    retry policy may retry before the error becomes fatal.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        transient: bool = False
    ):
        super().__init__(message, context, original_exception)
        self.transient = transient
        self.context["transient"] = transient


class SkipLimitExceededError(ExportException):
    """Raised by the chunk runner once the skip limit has been crossed."""

    def __init__(
        self,
        message: str,
        skip_limit: int,
        skip_records: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        context = context or {}
        context["skip_limit"] = skip_limit
        context["skipped"] = len(skip_records or [])
        super().__init__(message, context)
        self.skip_limit = skip_limit
        self.skip_records = list(skip_records or [])


class WriteError(ExportException):
    """
    Raised when staged output cannot be written or promoted.

    Context should include:
        - job_id: Job being written
        - format: Output format (if applicable)
        - path: Staged file or object key
    """
    pass


class JobCancelledError(ExportException):
    """Raised when a job was cancelled between chunks or its task was cancelled."""
    pass
