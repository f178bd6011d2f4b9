"""Tests for error classification."""

import pytest

from core.errors import (
    CapabilityDeniedError,
    ConfigurationError,
    DeadLetterQueueFullError,
    ErrorCategory,
    InvalidImageError,
    LeaseLostError,
    PipelineError,
    StoreUnavailableError,
    StreamProcessingError,
    ValidationError,
    classify_exception,
    is_retryable_error,
)


class TestClassifyException:
    @pytest.mark.parametrize(
        "exc, category",
        [
            (StoreUnavailableError("table busy"), ErrorCategory.TRANSIENT),
            (InvalidImageError("notes.txt", ".txt"), ErrorCategory.PERMANENT),
            (CapabilityDeniedError("update-status", "send_email"), ErrorCategory.PERMANENT),
            (ConfigurationError("bad"), ErrorCategory.CONFIGURATION),
            (DeadLetterQueueFullError("dlq", 10), ErrorCategory.CAPACITY),
            (LeaseLostError("q", "m-1"), ErrorCategory.PERMANENT),
            (ConnectionError("reset by peer"), ErrorCategory.TRANSIENT),
            (RuntimeError("request timeout"), ErrorCategory.TRANSIENT),
            (RuntimeError("SlowDown: please reduce your request rate"), ErrorCategory.TRANSIENT),
            (KeyError("id"), ErrorCategory.PERMANENT),
            (FileNotFoundError("missing"), ErrorCategory.PERMANENT),
            (RuntimeError("something odd"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(self, exc, category):
        assert classify_exception(exc) is category

    def test_unknown_errors_are_retryable(self):
        """Unclassified failures are redelivered conservatively."""
        assert is_retryable_error(RuntimeError("something odd"))
        assert not is_retryable_error(ValidationError("bad body"))


class TestPipelineError:
    def test_base_error_is_unknown_and_retryable(self):
        error = PipelineError("odd")
        assert error.category is ErrorCategory.UNKNOWN
        assert error.is_retryable

    def test_str_includes_cause(self):
        error = StoreUnavailableError("write failed", cause=OSError("disk full"))
        assert str(error) == "write failed | Caused by: disk full"

    def test_stream_processing_error_positions(self):
        error = StreamProcessingError("batch failed", first_sequence=3, last_sequence=5)

        assert error.is_retryable
        assert error.context == {"first_sequence": 3, "last_sequence": 5}

    def test_invalid_image_context(self):
        error = InvalidImageError("notes.txt", ".txt")

        assert isinstance(error, ValidationError)
        assert error.context == {"key": "notes.txt", "extension": ".txt"}
        assert not error.is_retryable

