"""
Pull-based worker for a lease queue.

Receives messages from one queue and invokes its bound handler:
    - handler returns: ack (message removed)
    - handler raises: nack (queue redelivers or dead-letters)

Each lease gets exactly one in-flight invocation. Different messages are
processed concurrently, bounded by ``concurrency``, with no ordering
guarantee between them.
"""

import asyncio
import logging
import time
from typing import Optional, Set

from core.errors import DeadLetterQueueFullError, LeaseLostError, classify_exception
from core.logging import LoggedClass, MessageLogContext, set_log_context
from gallery_pipeline.handlers.base import EventHandler, EventSource, HandlerContext, SourceKind
from gallery_pipeline.queues import Lease, LeaseQueue


class QueueWorker(LoggedClass):
    """
    Consume loop over one queue.

    Args:
        queue: Retry queue or dead-letter queue to consume
        handler: Handler bound to the queue
        concurrency: Maximum leases processed at once
        poll_interval: Seconds a receive waits before polling again
        stage: Log stage name set for the worker task

    Usage:
        >>> worker = QueueWorker(image_queue, log_image_handler, concurrency=10)
        >>> task = asyncio.create_task(worker.start())
        >>> ...
        >>> await worker.stop()
    """

    log_fields = {"queue_name": "queue", "handler_name": "handler"}

    def __init__(
        self,
        queue: LeaseQueue,
        handler: EventHandler,
        concurrency: int = 10,
        poll_interval: float = 1.0,
        stage: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stage = stage
        self.queue_name = queue.name
        self.handler_name = handler.name
        self.source = EventSource(SourceKind.QUEUE, queue.name)

        self._running = False
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight: Set[asyncio.Task] = set()
        self._processed = 0
        self._failed = 0
        super().__init__()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        return {
            "processed": self._processed,
            "failed": self._failed,
            "in_flight": len(self._in_flight),
        }

    async def start(self) -> None:
        """Run the consume loop until stop() is called."""
        if self._running:
            self._log(logging.WARNING, "Worker already running, ignoring duplicate start call")
            return

        self._running = True
        self._stopped.clear()
        if self.stage:
            set_log_context(stage=self.stage)
        self._log(logging.INFO, "Starting queue worker", batch_size=self.concurrency)
        try:
            await self._consume_loop()
        except asyncio.CancelledError:
            self._log(logging.INFO, "Worker loop cancelled, shutting down")
            raise
        finally:
            self._running = False
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            self._stopped.set()
            self._log(logging.INFO, "Queue worker stopped", **self.stats)

    async def stop(self) -> None:
        """
        Stop receiving and wait for in-flight invocations to finish.

        Leases of invocations that never finish expire and are redelivered.
        Safe to call multiple times.
        """
        self._running = False
        await self._stopped.wait()

    async def run_once(self) -> bool:
        """
        Receive and process at most one message without waiting.

        Returns:
            True if a message was processed
        """
        lease = self.queue.receive_nowait()
        if lease is None:
            return False
        await self._process(lease)
        return True

    async def drain(self) -> int:
        """Process available messages one at a time until none are left."""
        count = 0
        while await self.run_once():
            count += 1
        return count

    async def _consume_loop(self) -> None:
        while self._running:
            await self._semaphore.acquire()
            try:
                lease = await self.queue.receive(wait_seconds=self.poll_interval)
            except BaseException:
                self._semaphore.release()
                raise

            if lease is None:
                self._semaphore.release()
                continue

            task = asyncio.create_task(self._process(lease))
            self._in_flight.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._semaphore.release()
        if not task.cancelled() and task.exception() is not None:
            self._log_exception(task.exception(), "Unexpected worker task failure")

    async def _process(self, lease: Lease) -> None:
        event = lease.event
        with MessageLogContext(
            queue=self.queue_name,
            message_id=lease.message_id,
            event_id=event.id,
            delivery_count=lease.receive_count,
        ):
            context = HandlerContext(
                handler_name=self.handler_name,
                source=self.source,
                delivery_count=lease.receive_count,
                message_id=lease.message_id,
            )
            start = time.perf_counter()
            try:
                await self.handler(event, context)
            except Exception as e:
                self._failed += 1
                self._handle_processing_error(lease, e, time.perf_counter() - start)
                return

            self._processed += 1
            try:
                self.queue.ack(lease.message_id, lease.token)
            except LeaseLostError as e:
                # Processed after the lease expired; the redelivery will be a duplicate
                self._log_exception(
                    e,
                    "Lease lost before ack",
                    level=logging.WARNING,
                    message_id=lease.message_id,
                )

    def _handle_processing_error(self, lease: Lease, error: Exception, duration: float) -> None:
        category = classify_exception(error)
        self._log_exception(
            error,
            "Handler failed, releasing message",
            level=logging.WARNING,
            include_traceback=False,
            message_id=lease.message_id,
            attempt=lease.receive_count,
            error_category=category.value,
            duration_ms=round(duration * 1000, 2),
        )
        try:
            self.queue.nack(lease.message_id, lease.token, reason=f"{category.value}: {error}")
        except LeaseLostError as e:
            self._log_exception(e, "Lease lost before nack", level=logging.WARNING)
        except DeadLetterQueueFullError as e:
            # Message stays parked in the source queue until the DLQ has room
            self._log_exception(e, "Dead-letter queue full", level=logging.CRITICAL)

