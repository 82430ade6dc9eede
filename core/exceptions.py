"""
Custom exceptions for the export connector with structured error context.

This module provides the exception hierarchy used throughout the
ingestion pipeline. Each exception carries context information
(bundle id, time range, attempt number, ...) so that a failure can be
replayed by hand from the log line alone.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── APIExtractionError
    │   │   └── SourceStatusError
    │   │       ├── RateLimitError
    │   │       ├── SourceServerError
    │   │       ├── AuthenticationError
    │   │       └── ResourceNotFoundError
    │   ├── BundleDownloadError
    │   └── BundleDecodeError
    ├── TransformationError
    │   ├── RecordTransformError
    │   └── SchemaValidationError
    ├── LoadError
    │   ├── StagingError
    │   ├── StorageError
    │   ├── DatabaseError
    │   └── SchemaCompatibilityError
    ├── CheckpointError
    ├── ConfigurationError
    └── BackoffExhaustedError
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all connector errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (bundle id, table, etc.)
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
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for failures talking to the export source."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when a call to the export API fails.

    Context should include:
        - api_url: The API endpoint that failed
        - bundle_id: Bundle being downloaded (if applicable)
    """
    pass


class SourceStatusError(APIExtractionError):
    """
    The HTTP round trip succeeded but the response status was not 200.

    Attributes:
        status_code: HTTP status code of the response
        retry_after: Seconds the server asked us to wait (0 when absent)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        retry_after: float = 0.0,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        self.retry_after = retry_after
        self.context["status_code"] = status_code
        if retry_after:
            self.context["retry_after"] = retry_after


class RateLimitError(SourceStatusError):
    """HTTP 429 from the export API."""
    pass


class SourceServerError(SourceStatusError):
    """HTTP 5xx from the export API."""
    pass


class AuthenticationError(SourceStatusError):
    """HTTP 401/403 from the export API."""
    pass


class ResourceNotFoundError(SourceStatusError):
    """HTTP 404 from the export API."""
    pass


class BundleDownloadError(ExtractionError):
    """
    Raised when a bundle could not be downloaded within the allowed attempts.

    Context should include:
        - bundle_id: ID of the bundle
        - attempts: Number of attempts made
    """
    pass


class BundleDecodeError(ExtractionError):
    """The bundle body is not a gzip/JSON array of records."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for record transformation failures."""
    pass


class RecordTransformError(TransformationError):
    """
    A single record could not be turned into a row. The record is skipped,
    the batch carries on.
    """
    pass


class SchemaValidationError(TransformationError):
    """The canonical schema definition is malformed."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for staging and loading failures."""
    pass


class StagingError(LoadError):
    """
    Writing the local staged file failed.

    Context should include:
        - filename: Path of the staged file
        - bundle_ids: Bundles in the batch
    """
    pass


class StorageError(LoadError):
    """
    Exception raised when an object store or local disk operation fails.

    Context should include:
        - operation: save, read, delete
        - ref: Object reference
    """
    pass


class DatabaseError(LoadError):
    """
    Exception raised when warehouse operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, DELETE, ALTER)
        - table_name: Name of the table
    """
    pass


class SchemaCompatibilityError(LoadError):
    """The export table cannot be made compatible with the canonical schema."""
    pass


# ============================================================================
# Checkpoint / control errors
# ============================================================================

class CheckpointError(ETLException):
    """
    Exception raised when reading or writing the sync point fails.

    Context should include:
        - operation: read or write
        - sync_point: The sync point involved
    """
    pass


class ConfigurationError(ETLException):
    """Invalid connector configuration."""
    pass


class BackoffExhaustedError(ETLException):
    """
    The loop failed more times in a row than BACKOFF_STEPS_MAX allows.
    Operator intervention is required; the process should exit.
    """
    pass
