"""Fault tolerance primitives."""

from core.resilience.retry import DIRECT_INVOKE_RETRY, RetryConfig, retry_async

__all__ = [
    "DIRECT_INVOKE_RETRY",
    "RetryConfig",
    "retry_async",
]
