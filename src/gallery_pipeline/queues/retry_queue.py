"""
Durable queue with bounded redelivery and a dead-letter path.

Every receive increments the message's delivery_count. When a lease ends
without an ack (nack or visibility timeout) and delivery_count has
reached max_receive_count, the message moves to the dead-letter queue
instead of becoming available again. The move is atomic with respect to
this queue: the record is stored in the dead-letter queue before the
message is removed here, with no await in between. If the dead-letter
queue is full the message stays here, parked, and the move is retried on
every subsequent receive.
"""

import logging
import time
from typing import Callable, Optional

from core.errors import DeadLetterQueueFullError
from gallery_pipeline.metrics import record_dead_lettered, record_queue_operation
from gallery_pipeline.queues.base import LeaseQueue, _Entry
from gallery_pipeline.queues.dead_letter import DeadLetterQueue
from gallery_pipeline.schemas import DeadLetterRecord, Event, QueueMessage


class RetryQueue(LeaseQueue[QueueMessage]):
    """
    Queue feeding a pull-based handler, with retry then dead-letter.

    Args:
        name: Queue name
        dead_letter: Queue receiving messages that exhaust their budget
        max_receive_count: Deliveries allowed before dead-lettering (fixed)
        visibility_timeout: Lease length in seconds
        clock: Monotonic clock, injectable for tests

    Usage:
        >>> dlq = DeadLetterQueue("images-dlq")
        >>> queue = RetryQueue("images", dead_letter=dlq, max_receive_count=3)
        >>> queue.enqueue(event)
        >>> lease = queue.receive_nowait()
        >>> queue.nack(lease.message_id, lease.token, reason="store timeout")
    """

    def __init__(
        self,
        name: str,
        dead_letter: DeadLetterQueue,
        max_receive_count: int = 3,
        visibility_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_receive_count < 1:
            raise ValueError("max_receive_count must be at least 1")
        super().__init__(name, visibility_timeout=visibility_timeout, clock=clock)
        self.dead_letter = dead_letter
        self.max_receive_count = max_receive_count

    def _message_id(self, item: QueueMessage) -> str:
        return item.message_id

    def enqueue(self, event: Event) -> QueueMessage:
        """Append an event with delivery_count 0."""
        message = QueueMessage(event=event)
        self._append(message)
        record_queue_operation(self.name, "enqueued")
        self._log(
            logging.DEBUG,
            "Message enqueued",
            message_id=message.message_id,
            event_id=event.id,
        )
        return message

    def _on_receive(self, entry: _Entry[QueueMessage]) -> None:
        entry.item.delivery_count += 1

    def _release(self, entry: _Entry[QueueMessage], reason: Optional[str]) -> None:
        message = entry.item
        if message.delivery_count >= self.max_receive_count:
            self._dead_letter(entry, reason)
            return

        self._make_available(entry)
        self._log(
            logging.INFO,
            "Message returned for redelivery",
            message_id=message.message_id,
            delivery_count=message.delivery_count,
            max_receive_count=self.max_receive_count,
            reason=reason,
        )

    def _release_after_expiry(self, entry: _Entry[QueueMessage]) -> None:
        # Not the caller's fault the DLQ is full; report without failing receive
        try:
            self._release(entry, "visibility timeout expired")
        except DeadLetterQueueFullError as e:
            self._log_exception(
                e, "Dead-letter move deferred", message_id=entry.item.message_id
            )

    def _before_receive(self) -> None:
        for entry in [e for e in self._entries.values() if e.parked]:
            try:
                self._move_to_dead_letter(entry, reason=None)
            except DeadLetterQueueFullError:
                return

    def _dead_letter(self, entry: _Entry[QueueMessage], reason: Optional[str]) -> None:
        # Park first so a full DLQ leaves the message held but undeliverable
        entry.lease_token = None
        entry.lease_expires_at = None
        entry.parked = True
        entry.park_reason = reason
        self._move_to_dead_letter(entry, reason)

    def _move_to_dead_letter(
        self, entry: _Entry[QueueMessage], reason: Optional[str]
    ) -> DeadLetterRecord:
        message = entry.item
        reason = reason or entry.park_reason
        record = self.dead_letter.build_record(message, self.name, reason)

        self.dead_letter.put(record)
        del self._entries[message.message_id]

        record_dead_lettered(self.name)
        self._update_depth()
        self._log(
            logging.WARNING,
            "Message exhausted retries, moved to dead-letter queue",
            message_id=message.message_id,
            event_id=message.event.id,
            delivery_count=message.delivery_count,
            max_receive_count=self.max_receive_count,
            reason=reason,
        )
        return record
