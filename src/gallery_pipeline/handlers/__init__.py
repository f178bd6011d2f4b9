"""
Gallery event handlers.

Handler Types:
    - LogImageHandler: image queue, registers uploads in the record store
    - AddMetadataHandler: topic (metadata_type), sets record metadata
    - UpdateStatusHandler: topic (message_type), sets record status
    - ConfirmationMailerHandler: change stream, emails on confirmation
    - RemoveImageHandler: dead-letter queue, deletes rejected objects

Base Classes:
    - EventHandler / ChangeStreamHandler: handler contracts
    - HandlerRegistry: binds each handler to exactly one source
"""

from gallery_pipeline.handlers.add_metadata import AddMetadataHandler
from gallery_pipeline.handlers.base import (
    ChangeStreamHandler,
    EventHandler,
    EventSource,
    HandlerContext,
    HandlerRegistry,
    SourceKind,
)
from gallery_pipeline.handlers.capabilities import (
    Capability,
    CapabilityGrants,
    EmailMessage,
    GuardedMailer,
    InMemoryMailer,
)
from gallery_pipeline.handlers.confirmation_mailer import ConfirmationMailerHandler
from gallery_pipeline.handlers.idempotency import IdempotencyStore
from gallery_pipeline.handlers.log_image import LogImageHandler
from gallery_pipeline.handlers.remove_image import RemoveImageHandler
from gallery_pipeline.handlers.update_status import UpdateStatusHandler

__all__ = [
    # Base classes
    "ChangeStreamHandler",
    "EventHandler",
    "EventSource",
    "HandlerContext",
    "HandlerRegistry",
    "SourceKind",
    "IdempotencyStore",
    # Capabilities
    "Capability",
    "CapabilityGrants",
    "EmailMessage",
    "GuardedMailer",
    "InMemoryMailer",
    # Handlers
    "AddMetadataHandler",
    "ConfirmationMailerHandler",
    "LogImageHandler",
    "RemoveImageHandler",
    "UpdateStatusHandler",
]
