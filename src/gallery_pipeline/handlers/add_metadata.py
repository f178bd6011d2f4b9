"""
Metadata handler.

Source: direct topic subscription filtered on metadata_type.
"""

import logging
from typing import TYPE_CHECKING

from core.errors import ValidationError
from core.logging import get_logger, log_with_context
from gallery_pipeline.handlers.base import EventHandler, HandlerContext
from gallery_pipeline.schemas import Event, thaw

if TYPE_CHECKING:
    from gallery_pipeline.storage import InMemoryRecordStore

logger = get_logger(__name__)


class AddMetadataHandler(EventHandler):
    """
    Sets one metadata attribute on an image record.

    The attribute name comes from the event's ``metadata_type`` attribute;
    the body supplies ``id`` (the image key) and ``value``. Setting the same
    value twice leaves the record unchanged.
    """

    name = "add-metadata"

    def __init__(self, record_store: "InMemoryRecordStore", **kwargs):
        super().__init__(**kwargs)
        self.record_store = record_store

    async def handle(self, event: Event, context: HandlerContext) -> None:
        metadata_type = event.attributes.get("metadata_type")
        body = event.body or {}
        key = body.get("id")
        if not isinstance(metadata_type, str) or not key or "value" not in body:
            raise ValidationError(
                "Metadata event needs a metadata_type attribute and a body with id and value",
                context={"event_id": event.id},
            )

        field = metadata_type.lower()
        self.record_store.update_item(key, {field: thaw(body["value"])})
        log_with_context(
            logger,
            logging.INFO,
            "Metadata added",
            handler=self.name,
            event_id=event.id,
            key=key,
            field=field,
        )
