"""
Processed-key memory for at-least-once delivery.

Handlers record the key of every event (or change record) whose side
effect completed. A redelivery of the same key is then a no-op.
"""

import time
from collections import OrderedDict
from typing import Callable, Optional


class IdempotencyStore:
    """
    Bounded set of processed keys, oldest evicted first.

    Args:
        max_keys: Keys remembered before eviction
        ttl_seconds: Forget keys after this long (None keeps them until evicted)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        max_keys: int = 100_000,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_keys = max_keys
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._keys: "OrderedDict[str, float]" = OrderedDict()

    def seen(self, key: str) -> bool:
        recorded_at = self._keys.get(key)
        if recorded_at is None:
            return False
        if self.ttl_seconds is not None and self._clock() - recorded_at > self.ttl_seconds:
            del self._keys[key]
            return False
        return True

    def mark(self, key: str) -> None:
        self._keys[key] = self._clock()
        self._keys.move_to_end(key)
        while len(self._keys) > self.max_keys:
            self._keys.popitem(last=False)

    def forget(self, key: str) -> None:
        self._keys.pop(key, None)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.seen(key)
