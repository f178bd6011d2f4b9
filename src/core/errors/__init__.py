"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    # Enums
    ErrorCategory,
    # Base classes
    PipelineError,
    TransientError,
    PermanentError,
    ConfigurationError,
    # Transient errors
    StoreUnavailableError,
    StreamProcessingError,
    # Permanent errors
    ValidationError,
    InvalidImageError,
    NotFoundError,
    CapabilityDeniedError,
    # Queue errors
    LeaseLostError,
    DeadLetterQueueFullError,
    # Classification utilities
    classify_exception,
    is_retryable_error,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    "ConfigurationError",
    # Transient errors
    "StoreUnavailableError",
    "StreamProcessingError",
    # Permanent errors
    "ValidationError",
    "InvalidImageError",
    "NotFoundError",
    "CapabilityDeniedError",
    # Queue errors
    "LeaseLostError",
    "DeadLetterQueueFullError",
    # Classification utilities
    "classify_exception",
    "is_retryable_error",
]
