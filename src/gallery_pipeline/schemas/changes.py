"""
Change-stream record schema.

Each mutation of the record store produces one ChangeRecord carrying the
item image before and after the mutation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Item = Dict[str, Any]


class ChangeType(str, Enum):
    """Kind of mutation, derived from which images are present."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


class ChangeRecord(BaseModel):
    """One record-store mutation.

    Attributes:
        key: Partition key of the mutated item
        before: Item image before the mutation (None for inserts)
        after: Item image after the mutation (None for removes)
        sequence: Position in the stream shard, strictly increasing
        created_at: When the mutation was committed
    """

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1)
    before: Optional[Item] = None
    after: Optional[Item] = None
    sequence: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_images(self) -> "ChangeRecord":
        if self.before is None and self.after is None:
            raise ValueError("change record needs a before or an after image")
        return self

    @property
    def change_type(self) -> ChangeType:
        if self.before is None:
            return ChangeType.INSERT
        if self.after is None:
            return ChangeType.REMOVE
        return ChangeType.MODIFY

    def old_value(self, field: str) -> Any:
        return (self.before or {}).get(field)

    def new_value(self, field: str) -> Any:
        return (self.after or {}).get(field)

    def transitioned(self, field: str, to: Any) -> bool:
        """Whether ``field`` moved into value ``to`` with this mutation."""
        return self.new_value(field) == to and self.old_value(field) != to
