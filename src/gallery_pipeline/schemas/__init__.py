"""Pydantic schemas for events, queue messages and change records."""

from gallery_pipeline.schemas.changes import ChangeRecord, ChangeType
from gallery_pipeline.schemas.events import (
    OBJECT_CREATED_COMPLETE_MULTIPART,
    OBJECT_CREATED_COPY,
    OBJECT_CREATED_KINDS,
    OBJECT_CREATED_POST,
    OBJECT_CREATED_PUT,
    Event,
    parse_payload_ref,
    thaw,
    upload_event,
)
from gallery_pipeline.schemas.messages import DeadLetterRecord, QueueMessage

__all__ = [
    "ChangeRecord",
    "ChangeType",
    "Event",
    "OBJECT_CREATED_COMPLETE_MULTIPART",
    "OBJECT_CREATED_COPY",
    "OBJECT_CREATED_KINDS",
    "OBJECT_CREATED_POST",
    "OBJECT_CREATED_PUT",
    "parse_payload_ref",
    "thaw",
    "upload_event",
    "DeadLetterRecord",
    "QueueMessage",
]
