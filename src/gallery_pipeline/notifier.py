"""
Object store notifier.

Turns object creations into upload events on the topic: exactly one event
per successful create, carrying the object identity and the creation kind
as routing attributes.

Also parses bucket notification documents in the S3 event shape, so
externally produced notifications can be replayed into the router:

    {"Records": [{"eventName": "ObjectCreated:Put",
                  "s3": {"bucket": {"name": "photo-bucket"},
                         "object": {"key": "cat.png", "size": 1024}}}]}
"""

import logging
from typing import Any, List, Mapping, Optional
from urllib.parse import unquote_plus

from core.errors import ValidationError
from core.logging import LoggedClass, get_logger, log_with_context
from gallery_pipeline.routing import PublishResult, TopicRouter
from gallery_pipeline.schemas import OBJECT_CREATED_KINDS, Event, upload_event
from gallery_pipeline.storage import ObjectCreated

logger = get_logger(__name__)


def _normalize_kind(event_name: str) -> str:
    # Bucket notifications may carry an "s3:" prefix
    if event_name.startswith("s3:"):
        return event_name[3:]
    return event_name


def events_from_notification(payload: Mapping[str, Any]) -> List[Event]:
    """
    Parse a bucket notification document into upload events.

    Records that are not object creations are skipped. Object keys arrive
    URL-encoded and are decoded.

    Raises:
        ValidationError: If the document or a creation record is malformed
    """
    records = payload.get("Records")
    if not isinstance(records, list):
        raise ValidationError("Notification has no Records list")

    events: List[Event] = []
    for index, record in enumerate(records):
        kind = _normalize_kind(str(record.get("eventName", "")))
        if kind not in OBJECT_CREATED_KINDS:
            log_with_context(
                logger,
                logging.DEBUG,
                "Skipping non-creation notification record",
                event_kind=kind,
            )
            continue

        try:
            s3 = record["s3"]
            bucket = s3["bucket"]["name"]
            obj = s3["object"]
            key = unquote_plus(obj["key"])
            size = int(obj.get("size", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Malformed notification record at index {index}",
                cause=e,
                context={"index": index},
            ) from e

        event_id: Optional[str] = obj.get("sequencer") or None
        if event_id:
            event_id = f"{bucket}/{key}/{event_id}"
        events.append(upload_event(bucket, key, size, kind=kind, event_id=event_id))
    return events


class ObjectStoreNotifier(LoggedClass):
    """
    Publishes one upload event per object creation.

    Usage:
        >>> notifier = ObjectStoreNotifier(router)
        >>> object_store.add_listener(notifier.on_object_created)
    """

    log_component = "notifier"

    def __init__(self, router: TopicRouter):
        self.router = router
        self._published = 0
        super().__init__()

    @property
    def published_count(self) -> int:
        return self._published

    async def on_object_created(self, created: ObjectCreated) -> PublishResult:
        event = upload_event(created.bucket, created.key, created.size, kind=created.kind)
        return await self._publish(event)

    async def publish_notification(self, payload: Mapping[str, Any]) -> List[PublishResult]:
        """Publish every creation in a bucket notification document."""
        return [await self._publish(event) for event in events_from_notification(payload)]

    async def _publish(self, event: Event) -> PublishResult:
        result = await self.router.publish(event)
        self._published += 1
        self._log(
            logging.INFO,
            "Upload event published",
            event_id=event.id,
            event_kind=event.kind,
            bucket=event.attributes.get("bucket"),
            key=event.attributes.get("key"),
            delivered=len(result.delivered),
            failed=len(result.failed),
        )
        return result

