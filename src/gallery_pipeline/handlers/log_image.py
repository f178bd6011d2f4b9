"""
Ingestion handler for uploaded images.

Source: the image queue (upload events filtered on eventName).
"""

import logging
import posixpath
from typing import TYPE_CHECKING, Iterable

from core.errors import InvalidImageError, ValidationError
from core.logging import get_logger, log_with_context
from gallery_pipeline.handlers.base import EventHandler, HandlerContext
from gallery_pipeline.schemas import Event, parse_payload_ref

if TYPE_CHECKING:
    from gallery_pipeline.storage import InMemoryObjectStore, InMemoryRecordStore

logger = get_logger(__name__)

PENDING = "pending"


class LogImageHandler(EventHandler):
    """
    Registers a newly uploaded image in the record store.

    Writes ``{id: key, status: "pending"}`` if no record exists yet, copying
    the uploader's email from the object metadata when present. Objects with
    an extension outside the allow-list raise InvalidImageError; the queue
    redelivers them until they are dead-lettered and removed.
    """

    name = "log-image"

    def __init__(
        self,
        object_store: "InMemoryObjectStore",
        record_store: "InMemoryRecordStore",
        valid_extensions: Iterable[str],
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.object_store = object_store
        self.record_store = record_store
        self.valid_extensions = {ext.lower() for ext in valid_extensions}

    async def handle(self, event: Event, context: HandlerContext) -> None:
        try:
            bucket, key = parse_payload_ref(event.payload_ref)
        except ValueError as e:
            raise ValidationError(str(e), cause=e, context={"event_id": event.id})

        extension = posixpath.splitext(key)[1].lower()
        if extension not in self.valid_extensions:
            raise InvalidImageError(key, extension)

        item = {"id": key, "status": PENDING, "bucket": bucket}
        if self.object_store.exists(key):
            email = self.object_store.get_object(key).metadata.get("email")
            if email:
                item["email"] = email

        created = self.record_store.put_item(item, if_absent=True)
        log_with_context(
            logger,
            logging.INFO,
            "Image logged" if created else "Image already logged",
            handler=self.name,
            event_id=event.id,
            key=key,
            extension=extension,
            delivery_count=context.delivery_count,
        )
