"""
Handler contracts and the registry that binds handlers to event sources.

Two handler shapes:
    - EventHandler: one Event per invocation (topic subscription or queue)
    - ChangeStreamHandler: one batch of ChangeRecords per invocation

Both remember what they already processed so a redelivery produces no
second side effect. Raising from a handler means "not processed": the
queue path nacks, the stream path retries the same batch.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Union

from core.errors import ConfigurationError
from core.logging import get_logger, log_with_context
from gallery_pipeline.handlers.capabilities import Capability, CapabilityGrants
from gallery_pipeline.handlers.idempotency import IdempotencyStore
from gallery_pipeline.metrics import record_handler_invocation
from gallery_pipeline.schemas import ChangeRecord, Event

logger = get_logger(__name__)


class SourceKind(str, Enum):
    TOPIC = "topic"
    QUEUE = "queue"
    STREAM = "stream"


@dataclass(frozen=True)
class EventSource:
    """Where a handler's invocations come from."""

    kind: SourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.name}"


@dataclass(frozen=True)
class HandlerContext:
    """Per-invocation delivery information."""

    handler_name: str
    source: EventSource
    delivery_count: int = 1
    message_id: Optional[str] = None


class EventHandler(ABC):
    """
    Base class for handlers invoked with a single Event.

    Subclasses set ``name`` and implement ``handle``. Side effects must be
    safe to repeat or guarded by the idempotency store; the base class
    skips events whose id was already processed successfully.
    """

    name: str = ""
    required_capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self, idempotency: Optional[IdempotencyStore] = None):
        if not self.name:
            raise ConfigurationError(f"{self.__class__.__name__} has no handler name")
        self.idempotency = idempotency or IdempotencyStore()

    def idempotency_key(self, event: Event) -> str:
        return event.id

    async def __call__(self, event: Event, context: HandlerContext) -> bool:
        """
        Process one event.

        Returns:
            True if handled, False if skipped as a duplicate
        """
        key = self.idempotency_key(event)
        if self.idempotency.seen(key):
            log_with_context(
                logger,
                logging.DEBUG,
                "Duplicate delivery skipped",
                handler=self.name,
                event_id=event.id,
                message_id=context.message_id,
            )
            record_handler_invocation(self.name, "duplicate", 0.0)
            return False

        start = time.perf_counter()
        try:
            await self.handle(event, context)
        except Exception:
            record_handler_invocation(self.name, "error", time.perf_counter() - start)
            raise

        self.idempotency.mark(key)
        duration = time.perf_counter() - start
        record_handler_invocation(self.name, "success", duration)
        log_with_context(
            logger,
            logging.DEBUG,
            "Event handled",
            handler=self.name,
            event_id=event.id,
            duration_ms=round(duration * 1000, 2),
        )
        return True

    @abstractmethod
    async def handle(self, event: Event, context: HandlerContext) -> None:
        """Process one event. Raise to signal failure."""


class ChangeStreamHandler(ABC):
    """
    Base class for handlers invoked with a batch of change records.

    Records in a batch arrive in sequence order. A record is identified by
    ``key:sequence``; records already processed (from an earlier, partly
    failed attempt at the same batch) are skipped.
    """

    name: str = ""
    required_capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self, idempotency: Optional[IdempotencyStore] = None):
        if not self.name:
            raise ConfigurationError(f"{self.__class__.__name__} has no handler name")
        self.idempotency = idempotency or IdempotencyStore()

    @staticmethod
    def record_key(record: ChangeRecord) -> str:
        return f"{record.key}:{record.sequence}"

    async def __call__(self, records: List[ChangeRecord], context: HandlerContext) -> int:
        """
        Process a batch.

        Returns:
            Number of records processed in this call (duplicates excluded)
        """
        start = time.perf_counter()
        processed = 0
        try:
            for record in records:
                key = self.record_key(record)
                if self.idempotency.seen(key):
                    continue
                await self.handle_record(record, context)
                self.idempotency.mark(key)
                processed += 1
        except Exception:
            record_handler_invocation(self.name, "error", time.perf_counter() - start)
            raise

        record_handler_invocation(self.name, "success", time.perf_counter() - start)
        return processed

    @abstractmethod
    async def handle_record(self, record: ChangeRecord, context: HandlerContext) -> None:
        """Process one change record. Raise to fail the whole batch."""


Handler = Union[EventHandler, ChangeStreamHandler]


class HandlerRegistry:
    """
    Binds each handler to exactly one event source.

    Queue and stream sources take a single consumer. Capabilities a handler
    declares must be granted before it can be bound.

    Usage:
        registry = HandlerRegistry(grants)
        registry.bind(log_image, EventSource(SourceKind.QUEUE, "image-queue"))
        registry.validate()
    """

    def __init__(self, grants: Optional[CapabilityGrants] = None):
        self.grants = grants or CapabilityGrants()
        self._handlers: Dict[str, Handler] = {}
        self._bindings: Dict[str, EventSource] = {}

    def bind(self, handler: Handler, source: EventSource) -> None:
        """
        Raises:
            ConfigurationError: On a second binding, a source/handler shape
                mismatch, a second consumer on a queue or stream, or a
                required capability that was not granted
        """
        name = handler.name
        if name in self._bindings:
            raise ConfigurationError(
                f"Handler '{name}' is already bound to {self._bindings[name]}",
                context={"handler": name, "source": str(source)},
            )

        is_stream_handler = isinstance(handler, ChangeStreamHandler)
        if is_stream_handler != (source.kind is SourceKind.STREAM):
            raise ConfigurationError(
                f"Handler '{name}' cannot consume from {source}",
                context={"handler": name, "source": str(source)},
            )

        if source.kind is not SourceKind.TOPIC:
            for other, bound in self._bindings.items():
                if bound == source:
                    raise ConfigurationError(
                        f"{source} already has consumer '{other}'",
                        context={"handler": name, "source": str(source)},
                    )

        for capability in handler.required_capabilities:
            if not self.grants.is_granted(name, capability):
                raise ConfigurationError(
                    f"Handler '{name}' requires ungranted capability '{capability.value}'",
                    context={"handler": name, "capability": capability.value},
                )

        self._handlers[name] = handler
        self._bindings[name] = source
        log_with_context(
            logger, logging.DEBUG, "Handler bound", handler=name, stream=str(source)
        )

    def validate(self) -> None:
        """
        Check the email grant: at most one holder, and it must be stream-bound.

        Raises:
            ConfigurationError: If the grant table violates that rule
        """
        holders = self.grants.holders(Capability.SEND_EMAIL)
        if len(holders) > 1:
            raise ConfigurationError(
                f"Capability '{Capability.SEND_EMAIL.value}' granted to more than one handler: "
                f"{sorted(holders)}"
            )
        for holder in holders:
            source = self._bindings.get(holder)
            if source is None or source.kind is not SourceKind.STREAM:
                raise ConfigurationError(
                    f"Capability '{Capability.SEND_EMAIL.value}' may only be granted to a "
                    f"change-stream handler, not '{holder}'",
                    context={"handler": holder},
                )

    def get(self, name: str) -> Handler:
        try:
            return self._handlers[name]
        except KeyError:
            raise KeyError(f"No handler named '{name}'")

    def source_of(self, name: str) -> EventSource:
        return self._bindings[name]

    def handlers_for(self, source: EventSource) -> List[Handler]:
        return [self._handlers[n] for n, bound in self._bindings.items() if bound == source]

    def context_for(
        self,
        name: str,
        delivery_count: int = 1,
        message_id: Optional[str] = None,
    ) -> HandlerContext:
        return HandlerContext(
            handler_name=name,
            source=self._bindings[name],
            delivery_count=delivery_count,
            message_id=message_id,
        )

    def __iter__(self) -> Iterator[Handler]:
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers
