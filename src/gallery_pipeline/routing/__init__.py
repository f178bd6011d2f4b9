"""Attribute-filtered topic routing."""

from gallery_pipeline.routing.filters import (
    AllowListFilter,
    FilterExpr,
    MatchAllFilter,
    allow_list,
    filter_from_policy,
    matches,
)
from gallery_pipeline.routing.router import PublishResult, RoutingTable, TopicRouter
from gallery_pipeline.routing.subscriptions import HandlerTarget, QueueTarget, Subscription

__all__ = [
    "AllowListFilter",
    "FilterExpr",
    "MatchAllFilter",
    "allow_list",
    "filter_from_policy",
    "matches",
    "PublishResult",
    "RoutingTable",
    "TopicRouter",
    "HandlerTarget",
    "QueueTarget",
    "Subscription",
]
