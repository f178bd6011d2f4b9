"""
Dead-letter queue.

Holds DeadLetterRecords for messages that exhausted their retry budget
on a source queue. Consumed by a compensation handler with the same
lease discipline as any other queue; a failed compensation is simply
redelivered. Records persist until acked or until their retention window
passes and purge_expired() drops them.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from core.errors import DeadLetterQueueFullError
from gallery_pipeline.metrics import record_dead_letter_full
from gallery_pipeline.queues.base import LeaseQueue, _Entry
from gallery_pipeline.schemas import DeadLetterRecord, QueueMessage

if TYPE_CHECKING:
    from gallery_pipeline.queues.retry_queue import RetryQueue

DEFAULT_RETENTION = timedelta(days=14)


class DeadLetterQueue(LeaseQueue[DeadLetterRecord]):
    """
    Durable queue of DeadLetterRecords.

    Args:
        name: Queue name
        retention: How long a record is kept before purge may drop it
        max_records: Capacity; put() beyond it raises DeadLetterQueueFullError
        visibility_timeout: Lease length for the compensation handler
        clock: Monotonic clock for leases
        wall_clock: UTC clock for retention timestamps
    """

    def __init__(
        self,
        name: str,
        retention: timedelta = DEFAULT_RETENTION,
        max_records: int = 100_000,
        visibility_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        super().__init__(name, visibility_timeout=visibility_timeout, clock=clock)
        self.retention = retention
        self.max_records = max_records
        self._wall_clock = wall_clock

    def _message_id(self, item: DeadLetterRecord) -> str:
        return item.record_id

    @property
    def is_full(self) -> bool:
        return len(self) >= self.max_records

    def put(self, record: DeadLetterRecord) -> DeadLetterRecord:
        """
        Store a dead-letter record.

        Raises:
            DeadLetterQueueFullError: If the queue is at capacity
        """
        if self.is_full:
            record_dead_letter_full(self.name)
            raise DeadLetterQueueFullError(self.name, self.max_records)
        self._append(record)
        self._log(
            logging.WARNING,
            "Record dead-lettered",
            message_id=record.message.message_id,
            event_id=record.event.id,
            delivery_count=record.delivery_count,
            reason=record.reason,
        )
        return record

    def build_record(
        self, message: QueueMessage, source_queue: str, reason: Optional[str]
    ) -> DeadLetterRecord:
        return DeadLetterRecord.from_message(
            message,
            source_queue=source_queue,
            retention=self.retention,
            reason=reason,
            now=self._wall_clock(),
        )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop records whose retention window has passed.

        Leased records are left alone until their lease resolves.

        Returns:
            Number of records removed
        """
        now = now or self._wall_clock()
        expired = [
            record_id
            for record_id, entry in self._entries.items()
            if not entry.leased and entry.item.is_expired(now)
        ]
        for record_id in expired:
            del self._entries[record_id]
        if expired:
            self._update_depth()
            self._log(logging.INFO, "Purged expired dead-letter records", batch_size=len(expired))
        return len(expired)

    def redrive(self, record_id: str, target: "RetryQueue") -> QueueMessage:
        """
        Move a record's event back onto a source queue with a fresh budget.

        Raises:
            KeyError: If the record does not exist
            ValueError: If the record is currently leased
        """
        entry: Optional[_Entry[DeadLetterRecord]] = self._entries.get(record_id)
        if entry is None:
            raise KeyError(record_id)
        if entry.leased:
            raise ValueError(f"Record {record_id} is leased and cannot be redriven")

        message = target.enqueue(entry.item.event)
        del self._entries[record_id]
        self._update_depth()
        self._log(
            logging.INFO,
            "Dead-letter record redriven",
            message_id=message.message_id,
            event_id=entry.item.event.id,
        )
        return message
