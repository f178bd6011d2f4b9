"""
Status handler.

Source: direct topic subscription filtered on message_type.
"""

import logging
from typing import TYPE_CHECKING

from core.errors import ValidationError
from core.logging import get_logger, log_with_context
from gallery_pipeline.handlers.base import EventHandler, HandlerContext
from gallery_pipeline.schemas import Event

if TYPE_CHECKING:
    from gallery_pipeline.storage import InMemoryRecordStore

logger = get_logger(__name__)


class UpdateStatusHandler(EventHandler):
    """Sets ``status`` (and an optional ``reason``) on an image record."""

    name = "update-status"

    def __init__(self, record_store: "InMemoryRecordStore", **kwargs):
        super().__init__(**kwargs)
        self.record_store = record_store

    async def handle(self, event: Event, context: HandlerContext) -> None:
        body = event.body or {}
        key = body.get("id")
        status = body.get("status")
        if not key or not isinstance(status, str) or not status.strip():
            raise ValidationError(
                "Status event body needs id and status",
                context={"event_id": event.id},
            )

        changes = {"status": status.strip()}
        if body.get("reason"):
            changes["reason"] = body["reason"]

        self.record_store.update_item(key, changes)
        log_with_context(
            logger,
            logging.INFO,
            "Status updated",
            handler=self.name,
            event_id=event.id,
            key=key,
            status=changes["status"],
        )
