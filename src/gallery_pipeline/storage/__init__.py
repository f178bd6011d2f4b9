"""In-memory stand-ins for the object store and the record store."""

from gallery_pipeline.storage.object_store import (
    InMemoryObjectStore,
    ObjectCreated,
    StoredObject,
)
from gallery_pipeline.storage.record_store import InMemoryRecordStore

__all__ = [
    "InMemoryObjectStore",
    "ObjectCreated",
    "StoredObject",
    "InMemoryRecordStore",
]
