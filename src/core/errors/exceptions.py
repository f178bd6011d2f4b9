"""
Exception types and error classification for the gallery pipeline.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for pipeline errors
- Error classification utilities
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should be redelivered
                   (e.g., store timeouts, throttling)
        PERMANENT: Failures that won't succeed on redelivery
                   (e.g., rejected file extension, malformed event)
        CONFIGURATION: Setup failures, fatal at topology build time
        CAPACITY: A durable resource is exhausted (dead-letter queue full)
        UNKNOWN: Unclassified errors, redelivered conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIGURATION = "configuration"
    CAPACITY = "capacity"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether redelivery could make this error go away."""
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transient Errors
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class StoreUnavailableError(TransientError):
    """Object store or record store temporarily unavailable."""

    pass


class StreamProcessingError(TransientError):
    """
    A change-stream batch failed in its handler.

    Never skipped: the joiner retries the same batch from the same
    checkpoint until it succeeds.
    """

    def __init__(
        self,
        message: str,
        first_sequence: Optional[int] = None,
        last_sequence: Optional[int] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            cause,
            {"first_sequence": first_sequence, "last_sequence": last_sequence},
        )
        self.first_sequence = first_sequence
        self.last_sequence = last_sequence


# =============================================================================
# Permanent Errors
# =============================================================================


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ValidationError(PermanentError):
    """Event or record data failed validation."""

    pass


class InvalidImageError(ValidationError):
    """Uploaded object is not an accepted image type."""

    def __init__(self, key: str, extension: str):
        super().__init__(
            f"Object '{key}' has unsupported extension '{extension}'",
            context={"key": key, "extension": extension},
        )
        self.key = key
        self.extension = extension


class NotFoundError(PermanentError):
    """Object or record not found."""

    pass


class CapabilityDeniedError(PermanentError):
    """A handler attempted a side effect it was not granted."""

    def __init__(self, handler_name: str, capability: str):
        super().__init__(
            f"Handler '{handler_name}' is not granted capability '{capability}'",
            context={"handler": handler_name, "capability": capability},
        )
        self.handler_name = handler_name
        self.capability = capability


class ConfigurationError(PipelineError):
    """Invalid configuration or topology. Fatal at build time, never retried."""

    category = ErrorCategory.CONFIGURATION


# =============================================================================
# Queue Errors
# =============================================================================


class LeaseLostError(PipelineError):
    """
    Ack or nack presented a lease token that is no longer current.

    Happens when a handler outlives its visibility timeout and the
    message was redelivered to another consumer.
    """

    category = ErrorCategory.PERMANENT

    def __init__(self, queue_name: str, message_id: str):
        super().__init__(
            f"Lease for message '{message_id}' on queue '{queue_name}' is no longer held",
            context={"queue": queue_name, "message_id": message_id},
        )
        self.queue_name = queue_name
        self.message_id = message_id


class DeadLetterQueueFullError(PipelineError):
    """Dead-letter queue has no room for another record."""

    category = ErrorCategory.CAPACITY

    def __init__(self, queue_name: str, capacity: int):
        super().__init__(
            f"Dead-letter queue '{queue_name}' is full ({capacity} records)",
            context={"queue": queue_name, "capacity": capacity},
        )
        self.queue_name = queue_name
        self.capacity = capacity


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_exception(exc: Exception) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if isinstance(exc, (ConnectionError, OSError)) and not isinstance(
        exc, (FileNotFoundError, PermissionError)
    ):
        return ErrorCategory.TRANSIENT

    # Timeout errors
    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    # Throttling
    if "throttl" in exc_str or "rate limit" in exc_str or "slowdown" in exc_str:
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (KeyError, ValueError, TypeError, FileNotFoundError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def is_retryable_error(exc: Exception) -> bool:
    """Whether redelivery could make this error go away."""
    return classify_exception(exc) in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)

