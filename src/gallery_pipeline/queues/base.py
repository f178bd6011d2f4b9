"""
Lease-based durable queue.

Shared receive/ack/nack/visibility-timeout machinery for the retry queue
and the dead-letter queue. Subclasses decide what happens when a lease is
released without an ack.

Per-message state machine:

    Available --receive--> Leased --ack--> (removed)
                             |
                             +--nack / lease expiry--> _release()

Single event loop only: every state change happens between awaits, so a
message is never observed half-moved.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, TypeVar

from core.errors import LeaseLostError
from core.logging import LoggedClass
from gallery_pipeline.metrics import record_queue_operation, update_queue_depth
from gallery_pipeline.schemas import Event

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    item: T
    receive_count: int = 0
    lease_token: Optional[str] = None
    lease_expires_at: Optional[float] = None
    # Waiting for the dead-letter queue to accept it; never redelivered
    parked: bool = False
    park_reason: Optional[str] = None

    @property
    def leased(self) -> bool:
        return self.lease_token is not None

    @property
    def available(self) -> bool:
        return not self.leased and not self.parked


@dataclass(frozen=True)
class Lease(Generic[T]):
    """A received message, held exclusively until ack, nack or expiry."""

    queue_name: str
    message_id: str
    token: str
    item: T
    receive_count: int
    expires_at: float

    @property
    def event(self) -> Event:
        return self.item.event


class LeaseQueue(LoggedClass, Generic[T]):
    """
    FIFO-ish durable queue with visibility-timeout leases.

    ``receive`` returns the oldest available message and hides it for
    ``visibility_timeout`` seconds. ``ack`` removes it for good. ``nack``
    or an expired lease hands it to ``_release``.

    Args:
        name: Queue name, used in logs and metrics
        visibility_timeout: Lease length in seconds
        clock: Monotonic clock, injectable for tests
    """

    log_fields = {"name": "queue"}

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be positive")
        self.name = name
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry[T]]" = OrderedDict()
        self._wakeup = asyncio.Event()
        super().__init__()

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def _message_id(self, item: T) -> str:
        raise NotImplementedError

    def _on_receive(self, entry: _Entry[T]) -> None:
        """Called when an entry is leased, after receive_count is bumped."""

    def _release(self, entry: _Entry[T], reason: Optional[str]) -> None:
        """Decide the fate of an entry whose lease ended without an ack."""
        self._make_available(entry)

    def _before_receive(self) -> None:
        """Called at the start of each receive, after lease reclaim."""

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _append(self, item: T) -> None:
        message_id = self._message_id(item)
        if message_id in self._entries:
            raise ValueError(f"Duplicate message id {message_id} on queue {self.name}")
        self._entries[message_id] = _Entry(item=item)
        self._wakeup.set()
        self._update_depth()

    def receive_nowait(self) -> Optional[Lease[T]]:
        """Lease the oldest available message, or return None if there is none."""
        self.reclaim_expired()
        self._before_receive()

        for message_id, entry in self._entries.items():
            if not entry.available:
                continue
            entry.receive_count += 1
            entry.lease_token = uuid.uuid4().hex
            entry.lease_expires_at = self._clock() + self.visibility_timeout
            self._on_receive(entry)
            record_queue_operation(self.name, "received")
            self._log(
                logging.DEBUG,
                "Message leased",
                message_id=message_id,
                attempt=entry.receive_count,
            )
            return Lease(
                queue_name=self.name,
                message_id=message_id,
                token=entry.lease_token,
                item=entry.item,
                receive_count=entry.receive_count,
                expires_at=entry.lease_expires_at,
            )
        return None

    async def receive(self, wait_seconds: Optional[float] = None) -> Optional[Lease[T]]:
        """
        Lease the oldest available message, waiting up to ``wait_seconds``.

        Returns None when the wait elapses with nothing available. Callers
        poll in a loop; an expired lease elsewhere is picked up on the next
        call.
        """
        lease = self.receive_nowait()
        if lease is not None or not wait_seconds:
            return lease

        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=wait_seconds)
        except asyncio.TimeoutError:
            pass
        return self.receive_nowait()

    def ack(self, message_id: str, lease_token: Optional[str] = None) -> bool:
        """
        Permanently remove a message after successful processing.

        Returns False if the message is already gone (duplicate ack).

        Raises:
            LeaseLostError: If ``lease_token`` no longer holds the message
        """
        entry = self._entries.get(message_id)
        if entry is None:
            self._log(logging.DEBUG, "Ack for unknown message ignored", message_id=message_id)
            return False
        self._check_token(message_id, entry, lease_token)

        del self._entries[message_id]
        record_queue_operation(self.name, "acked")
        self._update_depth()
        self._log(logging.DEBUG, "Message acked", message_id=message_id)
        return True

    def nack(
        self,
        message_id: str,
        lease_token: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Release a leased message for immediate redelivery (or dead-lettering).

        Returns False if the message is gone or not currently leased.

        Raises:
            LeaseLostError: If ``lease_token`` no longer holds the message
        """
        entry = self._entries.get(message_id)
        if entry is None:
            return False
        self._check_token(message_id, entry, lease_token)
        if not entry.leased:
            return False

        record_queue_operation(self.name, "nacked")
        self._release(entry, reason)
        self._update_depth()
        return True

    def extend_lease(self, message_id: str, lease_token: str, seconds: float) -> float:
        """
        Push a lease's expiry to ``seconds`` from now.

        Returns the new expiry time.

        Raises:
            LeaseLostError: If the lease is no longer held
        """
        entry = self._entries.get(message_id)
        if entry is None or entry.lease_token != lease_token:
            raise LeaseLostError(self.name, message_id)
        entry.lease_expires_at = self._clock() + seconds
        return entry.lease_expires_at

    def reclaim_expired(self) -> int:
        """Release every lease whose visibility timeout has passed."""
        now = self._clock()
        expired = [
            entry
            for entry in self._entries.values()
            if entry.leased and entry.lease_expires_at is not None
            and entry.lease_expires_at <= now
        ]
        for entry in expired:
            record_queue_operation(self.name, "expired")
            self._log(
                logging.WARNING,
                "Lease expired without ack",
                message_id=self._message_id(entry.item),
                attempt=entry.receive_count,
            )
            self._release_after_expiry(entry)
        if expired:
            self._update_depth()
        return len(expired)

    def _release_after_expiry(self, entry: _Entry[T]) -> None:
        self._release(entry, "visibility timeout expired")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_token(
        self, message_id: str, entry: _Entry[T], lease_token: Optional[str]
    ) -> None:
        if entry.parked:
            raise LeaseLostError(self.name, message_id)
        if lease_token is not None and entry.lease_token != lease_token:
            raise LeaseLostError(self.name, message_id)

    def _make_available(self, entry: _Entry[T]) -> None:
        entry.lease_token = None
        entry.lease_expires_at = None
        self._wakeup.set()

    def _update_depth(self) -> None:
        update_queue_depth(self.name, len(self._entries))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, message_id: str) -> Optional[T]:
        entry = self._entries.get(message_id)
        return entry.item if entry else None

    def items(self) -> List[T]:
        """All held items, oldest first, regardless of lease state."""
        return [entry.item for entry in self._entries.values()]

    @property
    def available_count(self) -> int:
        return sum(1 for entry in self._entries.values() if entry.available)

    @property
    def in_flight_count(self) -> int:
        return sum(1 for entry in self._entries.values() if entry.leased)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: Any) -> bool:
        return message_id in self._entries

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(name={self.name!r}, size={len(self)}, "
            f"in_flight={self.in_flight_count})"
        )
