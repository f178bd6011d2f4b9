"""
Event schemas for the gallery pipeline.

Contains the Pydantic model for every message published to the image
topic: object-store upload events and application events (metadata and
status updates) share one shape and are told apart only by attributes.
"""

import uuid
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from core.errors import ValidationError

AttributeValue = Union[str, int, float]

# Upload event kinds emitted by the object store on creation
OBJECT_CREATED_PUT = "ObjectCreated:Put"
OBJECT_CREATED_POST = "ObjectCreated:Post"
OBJECT_CREATED_COMPLETE_MULTIPART = "ObjectCreated:CompleteMultipartUpload"
OBJECT_CREATED_COPY = "ObjectCreated:Copy"

OBJECT_CREATED_KINDS = (
    OBJECT_CREATED_PUT,
    OBJECT_CREATED_POST,
    OBJECT_CREATED_COMPLETE_MULTIPART,
    OBJECT_CREATED_COPY,
)


def _new_event_id() -> str:
    return str(uuid.uuid4())


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Plain, mutable copy of a frozen event mapping (dicts and lists)."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class Event(BaseModel):
    """Schema for a message published to the topic.

    Immutable once emitted. ``attributes`` is the only input to
    subscription filters; ``payload_ref`` and ``body`` are passed through
    untouched for handlers to resolve. ``attributes`` and ``body`` are
    stored as read-only mappings (nested lists become tuples), so the one
    instance shared by the queue and every direct handler cannot be
    changed by any of them. Use ``thaw`` for a mutable copy.

    Attributes:
        id: Unique event identifier, the idempotency key for handlers
        kind: Event classifier (e.g., "ObjectCreated:Put", "StatusUpdate")
        attributes: Routing attributes (string or number values)
        payload_ref: Opaque locator (e.g., "s3://photo-bucket/cat.png")
        body: Optional application message body
        emitted_at: When the event was emitted

    Example:
        >>> event = Event(
        ...     kind="StatusUpdate",
        ...     attributes={"message_type": "StatusUpdate"},
        ...     payload_ref="record://images/cat.png",
        ...     body={"id": "cat.png", "status": "confirmed"},
        ... )
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_event_id, min_length=1)
    kind: str = Field(..., min_length=1, description="Event classifier")
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)
    payload_ref: str = Field(default="", description="Opaque payload locator")
    body: Optional[Dict[str, Any]] = Field(default=None)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("id", "kind")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure identifier fields are not whitespace-only."""
        if not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v.strip()

    @field_validator("attributes", mode="before")
    @classmethod
    def validate_attributes(cls, v: Any) -> Any:
        """Attribute values must be strings or numbers; booleans are rejected."""
        if isinstance(v, Mapping):
            for name, value in v.items():
                if isinstance(value, bool):
                    raise ValueError(f"attribute '{name}' must be a string or number")
        return v

    @field_validator("attributes", "body")
    @classmethod
    def freeze_mappings(cls, v: Any) -> Any:
        return None if v is None else _freeze(v)

    @field_serializer("attributes", "body")
    def serialize_mappings(self, value: Any) -> Any:
        return thaw(value)

    def __deepcopy__(self, memo: Optional[dict] = None) -> "Event":
        # Nothing inside can change, so copies share the instance
        return self

    @field_serializer("emitted_at")
    def serialize_emitted_at(self, emitted_at: datetime) -> str:
        """Serialize datetime to ISO 8601 format."""
        return emitted_at.isoformat()

    @classmethod
    def from_message_attributes(
        cls,
        kind: str,
        message_attributes: Mapping[str, Mapping[str, str]],
        payload_ref: str = "",
        body: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> "Event":
        """Build an event from typed message attributes.

        Accepts the wire shape used by topic publishers::

            {"metadata_type": {"DataType": "String", "StringValue": "Caption"},
             "width": {"DataType": "Number", "StringValue": "640"}}

        Number attributes are parsed to int when integral, float otherwise.
        Attributes of other data types (e.g. Binary) are not routable and
        are dropped.
        """
        attributes: Dict[str, AttributeValue] = {}
        for name, typed in message_attributes.items():
            data_type = typed.get("DataType", "String")
            raw = typed.get("StringValue")
            if raw is None:
                continue
            if data_type.startswith("Number"):
                try:
                    number = float(raw)
                except ValueError as e:
                    raise ValidationError(
                        f"Number attribute '{name}' has non-numeric value {raw!r}",
                        cause=e,
                        context={"attribute": name},
                    ) from e
                attributes[name] = int(number) if number.is_integer() else number
            elif data_type.startswith("String"):
                attributes[name] = raw

        kwargs: Dict[str, Any] = {
            "kind": kind,
            "attributes": attributes,
            "payload_ref": payload_ref,
            "body": body,
        }
        if event_id:
            kwargs["id"] = event_id
        return cls(**kwargs)

    @property
    def is_upload(self) -> bool:
        """Whether this event came from the object store notifier."""
        return self.kind in OBJECT_CREATED_KINDS


def upload_event(
    bucket: str,
    key: str,
    size: int,
    kind: str = OBJECT_CREATED_PUT,
    event_id: Optional[str] = None,
) -> Event:
    """Build the upload event for one created object."""
    if kind not in OBJECT_CREATED_KINDS:
        raise ValueError(f"Not an object creation kind: {kind}")
    kwargs: Dict[str, Any] = {
        "kind": kind,
        "attributes": {
            "eventName": kind,
            "bucket": bucket,
            "key": key,
            "size": size,
        },
        "payload_ref": f"s3://{bucket}/{key}",
    }
    if event_id:
        kwargs["id"] = event_id
    return Event(**kwargs)


def parse_payload_ref(payload_ref: str) -> tuple:
    """Split an ``s3://bucket/key`` locator into (bucket, key)."""
    prefix = "s3://"
    if not payload_ref.startswith(prefix):
        raise ValueError(f"Unsupported payload locator: {payload_ref!r}")
    bucket, _, key = payload_ref[len(prefix):].partition("/")
    if not bucket or not key:
        raise ValueError(f"Malformed payload locator: {payload_ref!r}")
    return bucket, key
