"""
Ordered change stream.

A single shard: one append-only log of ChangeRecords with a strictly
increasing sequence number. Sequence order is therefore also per-key
order. Readers address the log by "everything after sequence N".
"""

import asyncio
from typing import Any, Dict, List, Optional

from gallery_pipeline.schemas import ChangeRecord

Item = Dict[str, Any]


class ChangeStream:
    """
    Append-only change log for one record store.

    Args:
        name: Stream name, used in logs, metrics and checkpoint keys
        retention: Records kept in memory; older ones are trimmed
    """

    def __init__(self, name: str, retention: int = 100_000):
        self.name = name
        self.retention = retention
        self._records: List[ChangeRecord] = []
        self._next_sequence = 1
        self._appended = asyncio.Event()

    def append(self, key: str, before: Optional[Item], after: Optional[Item]) -> ChangeRecord:
        record = ChangeRecord(
            key=key,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
            sequence=self._next_sequence,
        )
        self._next_sequence += 1
        self._records.append(record)
        if len(self._records) > self.retention:
            del self._records[: len(self._records) - self.retention]
        self._appended.set()
        return record

    @property
    def latest_sequence(self) -> int:
        """Sequence of the newest record, 0 when nothing was ever written."""
        return self._next_sequence - 1

    @property
    def trim_horizon(self) -> int:
        """Position just before the oldest retained record."""
        if not self._records:
            return self.latest_sequence
        return self._records[0].sequence - 1

    def read(self, after_sequence: int, limit: int) -> List[ChangeRecord]:
        """Return up to ``limit`` records with sequence > ``after_sequence``."""
        if limit < 1:
            return []
        # Sequences are contiguous within the retained window
        start = 0
        if self._records:
            start = max(after_sequence - self._records[0].sequence + 1, 0)
        return self._records[start: start + limit]

    async def wait_for(self, after_sequence: int, timeout: float) -> bool:
        """Suspend until a record past ``after_sequence`` exists or timeout."""
        if self.latest_sequence > after_sequence:
            return True
        self._appended.clear()
        try:
            await asyncio.wait_for(self._appended.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.latest_sequence > after_sequence

    def __len__(self) -> int:
        return len(self._records)
