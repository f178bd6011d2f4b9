"""
Queue message schemas.

QueueMessage wraps an Event while it sits in a retry queue.
DeadLetterRecord wraps a QueueMessage that exhausted its delivery budget.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from gallery_pipeline.schemas.events import Event


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QueueMessage(BaseModel):
    """An event buffered in a durable queue.

    ``delivery_count`` starts at 0 and is incremented by the queue on
    every receive, the first one included. Nothing outside the queue
    writes it.

    Attributes:
        message_id: Queue-assigned identifier, distinct from the event id
        event: The buffered event
        delivery_count: Number of receives so far
        enqueued_at: When the event entered the queue
    """

    model_config = ConfigDict(validate_assignment=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event: Event
    delivery_count: int = Field(default=0, ge=0)
    enqueued_at: datetime = Field(default_factory=_now)

    @field_serializer("enqueued_at")
    def serialize_enqueued_at(self, enqueued_at: datetime) -> str:
        return enqueued_at.isoformat()


class DeadLetterRecord(BaseModel):
    """A QueueMessage moved verbatim to the dead-letter queue.

    The embedded message keeps the delivery_count it had when its budget
    ran out. Dead-letter records are never redelivered to the handler of
    the source queue.

    Attributes:
        record_id: Dead-letter queue identifier for this record
        message: Frozen copy of the source QueueMessage
        source_queue: Name of the queue the message came from
        reason: Last failure reason reported by the handler, if any
        dead_lettered_at: When the move happened
        expires_at: End of the retention window, after which purge may drop it
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message: QueueMessage
    source_queue: str
    reason: Optional[str] = None
    dead_lettered_at: datetime = Field(default_factory=_now)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_message(
        cls,
        message: QueueMessage,
        source_queue: str,
        retention: timedelta,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "DeadLetterRecord":
        moved_at = now or _now()
        return cls(
            message=message.model_copy(deep=True),
            source_queue=source_queue,
            reason=reason,
            dead_lettered_at=moved_at,
            expires_at=moved_at + retention,
        )

    @property
    def event(self) -> Event:
        return self.message.event

    @property
    def delivery_count(self) -> int:
        return self.message.delivery_count

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _now()) >= self.expires_at

    @field_serializer("dead_lettered_at", "expires_at")
    def serialize_timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None
