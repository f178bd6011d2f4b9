"""Subscription definitions for the topic router."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union

from core.errors import ConfigurationError
from core.resilience import DIRECT_INVOKE_RETRY, RetryConfig
from gallery_pipeline.routing.filters import FilterExpr, matches
from gallery_pipeline.schemas import Event

if TYPE_CHECKING:
    from gallery_pipeline.handlers import EventHandler
    from gallery_pipeline.queues import DeadLetterQueue, RetryQueue


@dataclass(frozen=True)
class HandlerTarget:
    """Deliver by invoking a handler directly."""

    handler: "EventHandler"

    @property
    def name(self) -> str:
        return self.handler.name


@dataclass(frozen=True)
class QueueTarget:
    """Deliver by enqueueing onto a durable queue."""

    queue: "RetryQueue"

    @property
    def name(self) -> str:
        return self.queue.name


SubscriptionTarget = Union[HandlerTarget, QueueTarget]


@dataclass(frozen=True)
class Subscription:
    """
    One consumer of the topic.

    Attributes:
        id: Unique subscription id
        target: Handler or queue receiving matching events
        filter: Filter over event attributes; None matches every event
        retry: Attempts for direct handler deliveries
        dead_letter: Where a direct delivery goes after its last failed attempt
    """

    id: str
    target: SubscriptionTarget
    filter: Optional[FilterExpr] = None
    retry: RetryConfig = field(default=DIRECT_INVOKE_RETRY)
    dead_letter: Optional["DeadLetterQueue"] = None

    def __post_init__(self):
        if not self.id:
            raise ConfigurationError("Subscription id cannot be empty")
        if not isinstance(self.target, (HandlerTarget, QueueTarget)):
            raise ConfigurationError(
                f"Subscription '{self.id}' target must be a handler or a queue"
            )

    @property
    def is_queue(self) -> bool:
        return isinstance(self.target, QueueTarget)

    def accepts(self, event: Event) -> bool:
        return matches(self.filter, event.attributes)
