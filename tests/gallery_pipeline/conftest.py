"""
Shared fixtures for gallery pipeline tests.

Provides:
- A controllable monotonic clock for lease timing
- A no-op sleep for direct-delivery retries
- Retry and dead-letter queues on the fake clock
- Factories for recording handlers and application events
"""

from typing import List, Optional

import pytest

from gallery_pipeline.handlers import EventHandler, HandlerContext
from gallery_pipeline.queues import DeadLetterQueue, RetryQueue
from gallery_pipeline.schemas import Event, upload_event


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHandler(EventHandler):
    """Handler that records invocations and fails the first ``fail_times`` calls."""

    name = "recording"

    def __init__(
        self,
        name: str = "recording",
        fail_times: int = 0,
        error: Optional[Exception] = None,
        **kwargs,
    ):
        self.name = name
        super().__init__(**kwargs)
        self.fail_times = fail_times
        self.error = error or ConnectionError("store timeout")
        self.calls: List[HandlerContext] = []
        self.events: List[Event] = []

    async def handle(self, event: Event, context: HandlerContext) -> None:
        self.calls.append(context)
        if len(self.calls) <= self.fail_times:
            raise self.error
        self.events.append(event)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep():
    """Awaitable sleep that records requested delays without waiting."""
    delays: List[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def dead_letter(clock) -> DeadLetterQueue:
    return DeadLetterQueue("image-dead-letter-queue", clock=clock)


@pytest.fixture
def image_queue(clock, dead_letter) -> RetryQueue:
    return RetryQueue(
        "valid-image-queue",
        dead_letter=dead_letter,
        max_receive_count=3,
        visibility_timeout=30.0,
        clock=clock,
    )


@pytest.fixture
def put_event() -> Event:
    return upload_event("photo-bucket", "cat.png", 1024)


@pytest.fixture
def make_handler():
    """Factory for recording handlers. ``fail_times=-1`` fails on every call."""

    def factory(
        name: str = "recording",
        fail_times: int = 0,
        error: Optional[Exception] = None,
    ) -> RecordingHandler:
        if fail_times < 0:
            fail_times = 10**6
        return RecordingHandler(name=name, fail_times=fail_times, error=error)

    return factory


@pytest.fixture
def make_metadata_event():
    def factory(key: str = "cat.png", metadata_type: str = "Caption", value: str = "A cat") -> Event:
        return Event(
            kind="MetadataUpdate",
            attributes={"metadata_type": metadata_type},
            payload_ref=f"record://image-table/{key}",
            body={"id": key, "value": value},
        )

    return factory


@pytest.fixture
def make_status_event():
    def factory(key: str = "cat.png", status: str = "confirmed", reason: Optional[str] = None) -> Event:
        body = {"id": key, "status": status}
        if reason:
            body["reason"] = reason
        return Event(
            kind="StatusUpdate",
            attributes={"message_type": "StatusUpdate"},
            payload_ref=f"record://image-table/{key}",
            body=body,
        )

    return factory
