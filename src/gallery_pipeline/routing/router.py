"""
Topic router.

Fans each published event out to every subscription whose filter
matches. Deliveries run concurrently and are isolated from one another:
one failing subscription is logged, counted and reported in the result,
and never prevents a sibling from receiving the event.

Queue subscriptions are delivered by enqueueing, which is durable once it
returns. Handler subscriptions are invoked directly with the
subscription's retry policy; a delivery that fails every attempt is
dead-lettered when the subscription has a dead-letter queue.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Tuple

from core.errors import ConfigurationError, classify_exception
from core.logging import LoggedClass
from core.resilience import retry_async
from gallery_pipeline.handlers.base import EventSource, HandlerContext, SourceKind
from gallery_pipeline.metrics import record_delivery, record_publish
from gallery_pipeline.routing.subscriptions import QueueTarget, Subscription
from gallery_pipeline.schemas import Event, QueueMessage


@dataclass
class PublishResult:
    """Outcome of one publish: which subscriptions matched, received or failed."""

    event_id: str
    matched: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class RoutingTable:
    """
    Immutable set of subscriptions, fixed for the process lifetime.

    Build with ``RoutingTable.build``; there is no API to add or remove a
    subscription afterwards.
    """

    def __init__(self, subscriptions: Tuple[Subscription, ...]):
        self._subscriptions = subscriptions
        self._by_id = {sub.id: sub for sub in subscriptions}

    @classmethod
    def build(cls, subscriptions: Iterable[Subscription]) -> "RoutingTable":
        """
        Raises:
            ConfigurationError: If two subscriptions share an id
        """
        subs = tuple(subscriptions)
        seen = set()
        for sub in subs:
            if sub.id in seen:
                raise ConfigurationError(
                    f"Duplicate subscription id '{sub.id}'",
                    context={"subscription_id": sub.id},
                )
            seen.add(sub.id)
        return cls(subs)

    def matching(self, event: Event) -> List[Subscription]:
        return [sub for sub in self._subscriptions if sub.accepts(event)]

    def get(self, subscription_id: str) -> Subscription:
        return self._by_id[subscription_id]

    def __iter__(self) -> Iterator[Subscription]:
        return iter(self._subscriptions)

    def __len__(self) -> int:
        return len(self._subscriptions)


class TopicRouter(LoggedClass):
    """
    Publish/subscribe fan-out over a fixed routing table.

    Args:
        name: Topic name
        table: Subscriptions
        sleep: Awaitable sleep used between direct delivery attempts

    Usage:
        >>> router = TopicRouter("image-topic", RoutingTable.build(subs))
        >>> result = await router.publish(event)
        >>> result.delivered
        ['image-queue']
    """

    log_fields = {"name": "topic"}

    def __init__(
        self,
        name: str,
        table: RoutingTable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.table = table
        self._sleep = sleep
        super().__init__()

    def matching_subscriptions(self, event: Event) -> List[Subscription]:
        return self.table.matching(event)

    async def publish(self, event: Event) -> PublishResult:
        """
        Deliver an event to every matching subscription.

        Returns once every delivery was attempted. Never raises for a
        delivery failure; see ``PublishResult.failed``.
        """
        record_publish(event.kind)
        matched = self.matching_subscriptions(event)
        result = PublishResult(event_id=event.id, matched=[sub.id for sub in matched])
        if not matched:
            self._log(logging.DEBUG, "No subscription matched", event_id=event.id, event_kind=event.kind)
            return result

        outcomes = await asyncio.gather(
            *(self._deliver(sub, event) for sub in matched),
            return_exceptions=True,
        )

        for sub, outcome in zip(matched, outcomes):
            if isinstance(outcome, Exception):
                result.failed[sub.id] = str(outcome)
                record_delivery(sub.id, success=False)
                self._log_exception(
                    outcome,
                    "Delivery failed",
                    level=logging.WARNING,
                    event_id=event.id,
                    subscription_id=sub.id,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.delivered.append(sub.id)
                record_delivery(sub.id, success=True)

        self._log(
            logging.DEBUG,
            "Event published",
            event_id=event.id,
            event_kind=event.kind,
            matched=len(result.matched),
            delivered=len(result.delivered),
            failed=len(result.failed),
        )
        return result

    async def _deliver(self, sub: Subscription, event: Event) -> None:
        if isinstance(sub.target, QueueTarget):
            sub.target.queue.enqueue(event)
            return

        handler = sub.target.handler
        source = EventSource(SourceKind.TOPIC, self.name)
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            context = HandlerContext(
                handler_name=handler.name,
                source=source,
                delivery_count=attempts,
                message_id=event.id,
            )
            await handler(event, context)

        try:
            await retry_async(
                attempt,
                sub.retry,
                description=f"Delivery to {sub.id}",
                sleep=self._sleep,
            )
        except Exception as e:
            if sub.dead_letter is not None:
                self._dead_letter(sub, event, attempts, e)
            raise

    def _dead_letter(self, sub: Subscription, event: Event, attempts: int, exc: Exception) -> None:
        message = QueueMessage(event=event, delivery_count=attempts)
        record = sub.dead_letter.build_record(
            message,
            source_queue=f"subscription:{sub.id}",
            reason=f"{classify_exception(exc).value}: {exc}",
        )
        sub.dead_letter.put(record)
