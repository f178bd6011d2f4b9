"""
Tests for the queue worker.

Test Coverage:
    - Ack on success, nack on failure
    - Dead-lettering through repeated handler failures
    - Full dead-letter queue handling
    - Concurrent consume loop and graceful stop
"""

import asyncio

import pytest

from core.errors import ValidationError
from gallery_pipeline.queues import DeadLetterQueue, RetryQueue
from gallery_pipeline.schemas import QueueMessage
from gallery_pipeline.workers import QueueWorker


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_success_acks(self, image_queue, make_handler, put_event):
        handler = make_handler("log-image")
        worker = QueueWorker(image_queue, handler)
        image_queue.enqueue(put_event)

        assert await worker.run_once() is True

        assert len(image_queue) == 0
        assert handler.events == [put_event]
        assert worker.stats["processed"] == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, image_queue, make_handler):
        worker = QueueWorker(image_queue, make_handler("log-image"))
        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_failure_nacks_for_redelivery(self, image_queue, make_handler, put_event):
        handler = make_handler("log-image", fail_times=1)
        worker = QueueWorker(image_queue, handler)
        image_queue.enqueue(put_event)

        await worker.run_once()
        assert len(image_queue) == 1
        assert worker.stats["failed"] == 1

        await worker.run_once()
        assert len(image_queue) == 0
        assert [c.delivery_count for c in handler.calls] == [1, 2]

    @pytest.mark.asyncio
    async def test_context_carries_queue_identity(self, image_queue, make_handler, put_event):
        handler = make_handler("log-image")
        message = image_queue.enqueue(put_event)

        await QueueWorker(image_queue, handler).run_once()

        context = handler.calls[0]
        assert str(context.source) == "queue:valid-image-queue"
        assert context.message_id == message.message_id

    @pytest.mark.asyncio
    async def test_permanent_failure_dead_letters_after_budget(
        self, image_queue, dead_letter, make_handler, put_event
    ):
        """Permanent errors are redelivered like any other until max_receive_count."""
        handler = make_handler("log-image", fail_times=-1, error=ValidationError("bad extension"))
        worker = QueueWorker(image_queue, handler)
        image_queue.enqueue(put_event)

        assert await worker.drain() == 3

        assert len(image_queue) == 0
        assert len(dead_letter) == 1
        record = dead_letter.items()[0]
        assert record.delivery_count == 3
        assert record.reason == "permanent: bad extension"

    @pytest.mark.asyncio
    async def test_full_dead_letter_parks_without_raising(self, clock, make_handler, put_event, make_status_event):
        dlq = DeadLetterQueue("tiny-dlq", max_records=1, clock=clock)
        dlq.put(dlq.build_record(QueueMessage(event=make_status_event(), delivery_count=1), "elsewhere", None))
        queue = RetryQueue("source", dead_letter=dlq, max_receive_count=1, clock=clock)
        worker = QueueWorker(queue, make_handler("log-image", fail_times=-1))
        message = queue.enqueue(put_event)

        assert await worker.run_once() is True

        assert message.message_id in queue
        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_lease_lost_before_ack_is_tolerated(self, image_queue, clock, put_event, make_handler):
        """A handler outliving its lease finishes without failing the worker."""
        handler = make_handler("slow")

        async def slow_handle(event, context):
            clock.advance(31)
            image_queue.receive_nowait()

        handler.handle = slow_handle
        image_queue.enqueue(put_event)
        worker = QueueWorker(image_queue, handler)

        assert await worker.run_once() is True
        assert len(image_queue) == 1

    def test_invalid_concurrency(self, image_queue, make_handler):
        with pytest.raises(ValueError):
            QueueWorker(image_queue, make_handler(), concurrency=0)


class TestConsumeLoop:
    @pytest.mark.asyncio
    async def test_processes_messages_concurrently(self, image_queue, make_handler, make_status_event):
        handler = make_handler("log-image")
        for i in range(5):
            image_queue.enqueue(make_status_event(key=f"img{i}.png"))
        worker = QueueWorker(image_queue, handler, concurrency=3, poll_interval=0.01)

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if len(image_queue) == 0:
                break
            await asyncio.sleep(0.005)

        assert worker.is_running
        await worker.stop()
        await task

        assert not worker.is_running
        assert len(handler.events) == 5
        assert worker.stats == {"processed": 5, "failed": 0, "in_flight": 0}

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_message(self, image_queue, put_event, make_handler):
        handler = make_handler("slow")
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_handle(event, context):
            started.set()
            await release.wait()

        handler.handle = slow_handle
        image_queue.enqueue(put_event)
        worker = QueueWorker(image_queue, handler, poll_interval=0.01)
        task = asyncio.create_task(worker.start())
        await asyncio.wait_for(started.wait(), timeout=1)

        stopping = asyncio.create_task(worker.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        release.set()
        await asyncio.wait_for(stopping, timeout=1)
        await task
        assert len(image_queue) == 0

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, image_queue, make_handler):
        await QueueWorker(image_queue, make_handler()).stop()
