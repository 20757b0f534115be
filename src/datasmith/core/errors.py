from __future__ import annotations

from enum import Enum


class ErrorType(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    API_ERROR = "api_error"
    PROCESSING_ERROR = "processing_error"
    STORAGE_ERROR = "storage_error"


class FailureReason(str, Enum):
    EXCESSIVE_TIMEOUTS = "excessive_timeouts"
    TIMEOUT = "timeout"
    PROCESSING_ERROR = "processing_error"
    STORAGE_ERROR = "storage_error"


class DatasmithError(Exception):
    """Base error for all user-facing Datasmith exceptions."""


class ConfigurationError(DatasmithError):
    """Raised when configuration is invalid or incomplete."""


class ProjectNotInitializedError(DatasmithError):
    """Raised when .datasmith metadata is missing."""


class ValidationError(DatasmithError):
    """Raised when model invariants fail."""


class SegmentationError(DatasmithError):
    """Raised when a document cannot be split into units."""


class UnknownPipelineError(DatasmithError):
    """Raised when no stage set is registered for a pipeline kind."""


class CompletionError(DatasmithError):
    """Raised when the completion service call fails."""

    error_type: ErrorType = ErrorType.API_ERROR


class CompletionTimeoutError(CompletionError):
    """Raised when a completion call exceeds its deadline."""

    error_type = ErrorType.TIMEOUT


class RateLimitedError(CompletionError):
    """Raised when the completion service keeps throttling a call."""

    error_type = ErrorType.RATE_LIMIT


class CompletionApiError(CompletionError):
    """Raised for any other completion service failure."""

    error_type = ErrorType.API_ERROR


class StorageError(DatasmithError):
    """Raised when the object store or job store fails."""


class ObjectNotFoundError(StorageError):
    """Raised when an object key does not exist."""


class JobNotFoundError(DatasmithError):
    """Raised when a job id is unknown."""


class JobStateError(DatasmithError):
    """Raised when an operation is not valid for the job's current state."""


class PipelineFailure(DatasmithError):
    """Raised by the orchestrator when a job must fail."""

    def __init__(self, reason: FailureReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
