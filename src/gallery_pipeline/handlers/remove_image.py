"""
Compensation handler for rejected uploads.

Source: the dead-letter queue.
"""

import logging
from typing import TYPE_CHECKING

from core.errors import ValidationError
from core.logging import get_logger, log_with_context
from gallery_pipeline.handlers.base import EventHandler, HandlerContext
from gallery_pipeline.schemas import Event, parse_payload_ref

if TYPE_CHECKING:
    from gallery_pipeline.storage import InMemoryObjectStore

logger = get_logger(__name__)


class RemoveImageHandler(EventHandler):
    """Deletes the object behind a dead-lettered upload. Absent objects are a no-op."""

    name = "remove-image"

    def __init__(self, object_store: "InMemoryObjectStore", **kwargs):
        super().__init__(**kwargs)
        self.object_store = object_store

    async def handle(self, event: Event, context: HandlerContext) -> None:
        try:
            bucket, key = parse_payload_ref(event.payload_ref)
        except ValueError as e:
            raise ValidationError(str(e), cause=e, context={"event_id": event.id})

        if bucket != self.object_store.bucket:
            log_with_context(
                logger,
                logging.WARNING,
                "Dead-lettered event refers to another bucket, nothing to remove",
                handler=self.name,
                event_id=event.id,
                bucket=bucket,
            )
            return

        removed = self.object_store.delete_object(key)
        log_with_context(
            logger,
            logging.INFO,
            "Rejected image removed" if removed else "Rejected image already gone",
            handler=self.name,
            event_id=event.id,
            key=key,
        )
