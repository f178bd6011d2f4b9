"""
In-memory record store with a change stream.

Key-indexed items. Every committed mutation appends one ChangeRecord with
the before and after images to the store's ChangeStream.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from core.errors import NotFoundError
from core.logging import LoggedClass
from gallery_pipeline.streams.stream import ChangeStream

Item = Dict[str, Any]


class InMemoryRecordStore(LoggedClass):
    """
    Table of items keyed by ``key_field``.

    Usage:
        >>> store = InMemoryRecordStore("image-table")
        >>> store.put_item({"id": "cat.png", "status": "pending"})
        >>> store.update_item("cat.png", {"status": "confirmed"})
        >>> store.stream.read(after_sequence=0, limit=10)
    """

    log_fields = {"table": "table"}

    def __init__(self, table: str, key_field: str = "id"):
        self.table = table
        self.key_field = key_field
        self._items: Dict[str, Item] = {}
        self.stream = ChangeStream(f"{table}-stream")
        super().__init__()

    def get_item(self, key: str) -> Optional[Item]:
        item = self._items.get(key)
        return copy.deepcopy(item) if item is not None else None

    def put_item(self, item: Item, if_absent: bool = False) -> bool:
        """
        Create or replace an item.

        Args:
            item: Item containing ``key_field``
            if_absent: Only write when no item with this key exists

        Returns:
            True if a write happened
        """
        key = item.get(self.key_field)
        if not key:
            raise ValueError(f"Item is missing key field '{self.key_field}'")
        before = self._items.get(key)
        if if_absent and before is not None:
            return False

        after = copy.deepcopy(item)
        self._items[key] = after
        self.stream.append(key, before, after)
        self._log(logging.DEBUG, "Item written", key=key)
        return True

    def update_item(self, key: str, changes: Item) -> Item:
        """
        Merge ``changes`` into an existing item.

        A write whose result equals the current item is not a mutation and
        emits no change record.

        Raises:
            NotFoundError: If the item does not exist
        """
        before = self._items.get(key)
        if before is None:
            raise NotFoundError(
                f"Item '{key}' not found in table '{self.table}'",
                context={"key": key},
            )
        after = copy.deepcopy(before)
        after.update(changes)
        after[self.key_field] = key
        if after == before:
            return copy.deepcopy(after)

        self._items[key] = after
        self.stream.append(key, before, after)
        self._log(logging.DEBUG, "Item updated", key=key)
        return copy.deepcopy(after)

    def delete_item(self, key: str) -> bool:
        before = self._items.pop(key, None)
        if before is None:
            return False
        self.stream.append(key, before, None)
        return True

    def keys(self) -> List[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
