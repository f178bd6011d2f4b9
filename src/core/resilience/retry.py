"""
Retry with exponential backoff for async operations.

Usage:
    await retry_async(lambda: handler.handle(event, ctx), DIRECT_INVOKE_RETRY)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from core.errors.exceptions import is_retryable_error
from core.logging.utilities import get_logger, log_exception

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    # Total attempts including the first
    max_attempts: int = 3

    # Delay before the second attempt (seconds)
    base_delay: float = 1.0

    # Upper bound for any single delay (seconds)
    max_delay: float = 60.0

    exponential_base: float = 2.0

    # Randomize each delay by +/- this fraction
    jitter: float = 0.1

    # Stop immediately on errors classified as permanent
    respect_permanent: bool = True

    def get_delay(self, attempt: int) -> float:
        """
        Delay to wait after a failed attempt.

        Args:
            attempt: Failed attempt number (1-indexed)
        """
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)


# Asynchronous direct invocation: the first attempt plus two retries
DIRECT_INVOKE_RETRY = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=60.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    description: str = "operation",
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying failures per config.

    Raises the last exception once attempts are exhausted, or the first
    permanent error when ``respect_permanent`` is set.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if config.respect_permanent and not is_retryable_error(e):
                raise
            if attempt >= config.max_attempts:
                raise
            delay = config.get_delay(attempt)
            log_exception(
                logger,
                e,
                f"{description} failed, retrying",
                level=logging.WARNING,
                include_traceback=False,
                attempt=attempt,
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await sleep(delay)

