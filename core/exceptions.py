"""
Custom exceptions for the ingestion pipeline with structured error context.

This module provides the exception hierarchy used by the scheduler, the
ingestion consumer and the retry/dead-letter manager. Each exception
includes context information for debugging and for the dead-letter record.

Exception Hierarchy:
    IngestionException (base)
    ├── SourceError
    │   ├── TransientSourceError      (retryable)
    │   ├── RateLimitedError          (retryable, retry_after hint)
    │   ├── AuthError                 (non-retryable)
    │   ├── NotFoundError             (non-retryable)
    │   ├── MalformedResponseError    (non-retryable)
    │   └── InvalidRequestError       (non-retryable)
    ├── SinkWriteError                (retryable)
    │   ├── ArchiveWriteError
    │   └── UpsertError
    ├── InfrastructureError           (fatal to the process)
    │   ├── BusUnavailableError
    │   └── WatermarkStoreError
    ├── ConfigurationError            (non-retryable)
    └── RetryableError / NonRetryableError (mixins)
"""

import enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class IngestionException(Exception):
    """
    Base exception for all ingestion-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, profile, etc.)
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
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(IngestionException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Sink write failures
    """
    pass


class NonRetryableError(IngestionException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    - Schema drift in the source response
    """
    pass


# ============================================================================
# Source Errors
# ============================================================================

class SourceError(IngestionException):
    """
    Base exception for source adapter failures.

    Context should include:
        - source_name: Name of the source
        - handle: Profile handle being fetched
        - status_code: HTTP status code (if applicable)
    """
    pass


class TransientSourceError(RetryableError, SourceError):
    """Network errors, timeouts and 5xx responses."""
    pass


class RateLimitedError(RetryableError, SourceError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthError(NonRetryableError, SourceError):
    """Credential failures; needs an operator fix."""
    pass


class NotFoundError(NonRetryableError, SourceError):
    """Profile handle no longer resolves on the source."""
    pass


class MalformedResponseError(NonRetryableError, SourceError):
    """Response did not match the expected schema."""
    pass


class InvalidRequestError(NonRetryableError, SourceError):
    """Any other 4xx the source rejects outright."""
    pass


# ============================================================================
# Sink Errors
# ============================================================================

class SinkWriteError(RetryableError):
    """
    Exception raised when writing to a sink fails.

    Context should include:
        - operation: Type of write (PUT, UPSERT)
        - profile_id / post_id or path
    """
    pass


class ArchiveWriteError(SinkWriteError):
    pass


class UpsertError(SinkWriteError):
    pass


# ============================================================================
# Infrastructure Errors
# ============================================================================

class InfrastructureError(IngestionException):
    """Failures that halt the process; the cycle is retried on the next trigger."""
    pass


class BusUnavailableError(InfrastructureError):
    pass


class WatermarkStoreError(InfrastructureError):
    pass


class ConfigurationError(NonRetryableError):
    """Missing adapter, credentials or an unsupported setup."""
    pass


# ============================================================================
# Classification
# ============================================================================

class ErrorKind(str, enum.Enum):
    """Error taxonomy recorded on fetch log and dead-letter entries"""
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    INVALID_REQUEST = "invalid_request"
    SINK_WRITE = "sink_write"
    CONFIGURATION = "configuration"


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception onto the error taxonomy; unknown errors count as transient."""
    if isinstance(exc, RateLimitedError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, AuthError):
        return ErrorKind.AUTH
    if isinstance(exc, NotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, MalformedResponseError):
        return ErrorKind.MALFORMED
    if isinstance(exc, InvalidRequestError):
        return ErrorKind.INVALID_REQUEST
    if isinstance(exc, SinkWriteError):
        return ErrorKind.SINK_WRITE
    if isinstance(exc, ConfigurationError):
        return ErrorKind.CONFIGURATION
    return ErrorKind.TRANSIENT


def is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, NonRetryableError)
