"""Tests for async retry with backoff."""

import pytest

from core.errors import ValidationError
from core.resilience import DIRECT_INVOKE_RETRY, RetryConfig, retry_async


class Flaky:
    def __init__(self, failures: int, error: Exception = None):
        self.failures = failures
        self.error = error or ConnectionError("store timeout")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def sleeps():
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


class TestRetryConfig:
    def test_exponential_delays(self):
        config = RetryConfig(base_delay=1.0, max_delay=60.0, jitter=0.0)
        assert [config.get_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert config.get_delay(10) == 5.0

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay=10.0, jitter=0.1)
        for _ in range(50):
            assert 9.0 <= config.get_delay(1) <= 11.0


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleeps):
        operation = Flaky(failures=2)
        config = RetryConfig(max_attempts=3, base_delay=1.0, jitter=0.0)

        assert await retry_async(operation, config, sleep=sleeps) == "ok"

        assert operation.calls == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self, sleeps):
        operation = Flaky(failures=5)
        retries = []

        with pytest.raises(ConnectionError):
            await retry_async(
                operation,
                RetryConfig(max_attempts=3, jitter=0.0),
                on_retry=lambda attempt, e: retries.append(attempt),
                sleep=sleeps,
            )

        assert operation.calls == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_permanent_error_stops_immediately(self, sleeps):
        operation = Flaky(failures=5, error=ValidationError("bad body"))

        with pytest.raises(ValidationError):
            await retry_async(operation, RetryConfig(max_attempts=3), sleep=sleeps)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_permanent_error_retried_when_not_respected(self, sleeps):
        operation = Flaky(failures=1, error=ValidationError("bad body"))
        config = RetryConfig(max_attempts=2, respect_permanent=False, jitter=0.0)

        assert await retry_async(operation, config, sleep=sleeps) == "ok"

    @pytest.mark.asyncio
    async def test_no_retry(self, sleeps):
        operation = Flaky(failures=1)

        with pytest.raises(ConnectionError):
            await retry_async(operation, RetryConfig(max_attempts=1), sleep=sleeps)
        assert sleeps.delays == []

    def test_direct_invoke_default(self):
        """Direct deliveries get the first attempt plus two retries."""
        assert DIRECT_INVOKE_RETRY.max_attempts == 3
        assert DIRECT_INVOKE_RETRY.respect_permanent
