"""
In-memory object store.

Stands in for the blob store the pipeline ingests from: create, read and
delete by key, with a creation notification fired after every successful
create. Listeners are awaited in registration order; a failing listener
is logged and does not undo the write.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from core.errors import NotFoundError
from core.logging import LoggedClass
from gallery_pipeline.schemas import OBJECT_CREATED_KINDS, OBJECT_CREATED_PUT


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    key: str
    data: bytes
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ObjectCreated:
    """Notification payload for one successful create."""

    bucket: str
    key: str
    size: int
    kind: str = OBJECT_CREATED_PUT


CreationListener = Callable[[ObjectCreated], Awaitable[None]]


class InMemoryObjectStore(LoggedClass):
    """
    Bucket-scoped key/value blob store.

    Usage:
        >>> store = InMemoryObjectStore("photo-bucket")
        >>> store.add_listener(notifier.on_object_created)
        >>> await store.put_object("cat.png", b"...", metadata={"email": "a@b.c"})
    """

    log_fields = {"bucket": "bucket"}

    def __init__(self, bucket: str):
        self.bucket = bucket
        self._objects: Dict[str, StoredObject] = {}
        self._listeners: List[CreationListener] = []
        super().__init__()

    def add_listener(self, listener: CreationListener) -> None:
        self._listeners.append(listener)

    async def put_object(
        self,
        key: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
        kind: str = OBJECT_CREATED_PUT,
    ) -> StoredObject:
        """Store an object and notify listeners of its creation."""
        if not key:
            raise ValueError("Object key cannot be empty")
        if kind not in OBJECT_CREATED_KINDS:
            raise ValueError(f"Not an object creation kind: {kind}")

        stored = StoredObject(
            bucket=self.bucket, key=key, data=data, metadata=dict(metadata or {})
        )
        self._objects[key] = stored
        self._log(logging.DEBUG, "Object stored", key=key)

        notification = ObjectCreated(
            bucket=self.bucket, key=key, size=stored.size, kind=kind
        )
        for listener in self._listeners:
            try:
                await listener(notification)
            except Exception as e:
                self._log_exception(e, "Creation listener failed", key=key)
        return stored

    def get_object(self, key: str) -> StoredObject:
        try:
            return self._objects[key]
        except KeyError:
            raise NotFoundError(
                f"Object '{key}' not found in bucket '{self.bucket}'",
                context={"bucket": self.bucket, "key": key},
            )

    def delete_object(self, key: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        removed = self._objects.pop(key, None) is not None
        self._log(logging.DEBUG, "Object delete", key=key, status="deleted" if removed else "absent")
        return removed

    def exists(self, key: str) -> bool:
        return key in self._objects

    def keys(self) -> List[str]:
        return list(self._objects)
