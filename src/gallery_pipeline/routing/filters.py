"""
Subscription filters.

A filter is data: either an allow-list over one named attribute or a
match-all. ``matches`` evaluates one against an event's attributes and is
pure and total: a missing attribute is a non-match, never an error.

Value comparison follows typed message attributes: strings compare as
strings, numbers by numeric value (3 matches 3.0), and a string never
equals a number ("3" does not match 3).
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from core.errors import ConfigurationError

FilterValue = Union[str, int, float]


@dataclass(frozen=True)
class AllowListFilter:
    """Matches when ``attributes[field]`` is one of ``values``."""

    field: str
    values: Tuple[FilterValue, ...]

    kind = "allow_list"

    def __post_init__(self):
        if not self.field:
            raise ConfigurationError("Allow-list filter needs an attribute name")
        values = tuple(self.values)
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise ConfigurationError(
                    f"Allow-list value {value!r} for '{self.field}' must be a string or number"
                )
        object.__setattr__(self, "values", values)


@dataclass(frozen=True)
class MatchAllFilter:
    """Matches every event."""

    kind = "match_all"


FilterExpr = Union[AllowListFilter, MatchAllFilter]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _values_equal(actual: Any, allowed: FilterValue) -> bool:
    if _is_number(actual) != _is_number(allowed):
        return False
    return actual == allowed


def matches(filter_expr: Optional[FilterExpr], attributes: Mapping[str, Any]) -> bool:
    """
    Evaluate a filter against event attributes.

    Args:
        filter_expr: Filter, or None for an unfiltered subscription
        attributes: Event attributes

    Returns:
        True if the event should be delivered
    """
    if filter_expr is None or isinstance(filter_expr, MatchAllFilter):
        return True
    if filter_expr.field not in attributes:
        return False
    actual = attributes[filter_expr.field]
    return any(_values_equal(actual, allowed) for allowed in filter_expr.values)


def allow_list(field: str, values: Iterable[FilterValue]) -> AllowListFilter:
    return AllowListFilter(field=field, values=tuple(values))


def filter_from_policy(policy: Optional[Mapping[str, Iterable[FilterValue]]]) -> FilterExpr:
    """
    Build a filter from a policy mapping such as ``{"message_type": ["StatusUpdate"]}``.

    An empty or missing policy matches everything.

    Raises:
        ConfigurationError: If the policy names more than one attribute
    """
    if not policy:
        return MatchAllFilter()
    if len(policy) != 1:
        raise ConfigurationError(
            f"Filter policy must name exactly one attribute, got {sorted(policy)}"
        )
    (field, values), = policy.items()
    if isinstance(values, (str, int, float)):
        values = [values]
    return allow_list(field, values)
