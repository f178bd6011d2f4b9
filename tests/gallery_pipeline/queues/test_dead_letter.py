"""Tests for dead-letter queue retention, capacity and redrive."""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import DeadLetterQueueFullError
from gallery_pipeline.queues import DeadLetterQueue, RetryQueue
from gallery_pipeline.schemas import QueueMessage


class WallClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def dlq(clock, wall_clock):
    return DeadLetterQueue(
        "image-dead-letter-queue",
        retention=timedelta(days=14),
        max_records=10,
        clock=clock,
        wall_clock=wall_clock,
    )


def _record(dlq, event, reason="permanent: bad"):
    return dlq.build_record(QueueMessage(event=event, delivery_count=3), "valid-image-queue", reason)


class TestPut:
    def test_put_and_receive(self, dlq, put_event, wall_clock):
        record = dlq.put(_record(dlq, put_event))

        lease = dlq.receive_nowait()

        assert lease.message_id == record.record_id
        assert lease.event.id == put_event.id
        assert record.dead_lettered_at == wall_clock.now
        assert record.expires_at == wall_clock.now + timedelta(days=14)

    def test_failed_compensation_is_redelivered(self, dlq, put_event):
        """Dead-letter records have no receive budget of their own."""
        dlq.put(_record(dlq, put_event))

        for _ in range(5):
            lease = dlq.receive_nowait()
            dlq.nack(lease.message_id, lease.token)

        assert len(dlq) == 1
        assert dlq.receive_nowait().receive_count == 6

    def test_capacity(self, clock, put_event):
        dlq = DeadLetterQueue("dlq", max_records=1, clock=clock)
        dlq.put(_record(dlq, put_event))

        with pytest.raises(DeadLetterQueueFullError) as exc_info:
            dlq.put(_record(dlq, put_event))

        assert exc_info.value.capacity == 1
        assert len(dlq) == 1

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            DeadLetterQueue("dlq", max_records=0)


class TestPurgeExpired:
    def test_drops_records_past_retention(self, dlq, wall_clock, put_event, make_status_event):
        dlq.put(_record(dlq, put_event))
        wall_clock.now += timedelta(days=10)
        dlq.put(_record(dlq, make_status_event()))

        wall_clock.now += timedelta(days=5)
        removed = dlq.purge_expired()

        assert removed == 1
        assert len(dlq) == 1
        assert dlq.items()[0].event.kind == "StatusUpdate"

    def test_keeps_leased_records(self, dlq, wall_clock, put_event):
        dlq.put(_record(dlq, put_event))
        dlq.receive_nowait()

        assert dlq.purge_expired(now=wall_clock.now + timedelta(days=30)) == 0
        assert len(dlq) == 1

    def test_nothing_expired(self, dlq, put_event):
        dlq.put(_record(dlq, put_event))
        assert dlq.purge_expired() == 0


class TestRedrive:
    def test_redrive_enqueues_with_fresh_budget(self, dlq, clock, put_event):
        source = RetryQueue("valid-image-queue", dead_letter=dlq, max_receive_count=3, clock=clock)
        record = dlq.put(_record(dlq, put_event))

        message = dlq.redrive(record.record_id, source)

        assert len(dlq) == 0
        assert message.event.id == put_event.id
        assert message.delivery_count == 0
        assert source.receive_nowait().receive_count == 1

    def test_redrive_unknown_record(self, dlq, image_queue):
        with pytest.raises(KeyError):
            dlq.redrive("missing", image_queue)

    def test_redrive_leased_record(self, dlq, image_queue, put_event):
        record = dlq.put(_record(dlq, put_event))
        dlq.receive_nowait()

        with pytest.raises(ValueError, match="leased"):
            dlq.redrive(record.record_id, image_queue)
