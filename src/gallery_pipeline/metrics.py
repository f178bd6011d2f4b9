"""
Prometheus metrics for gallery pipeline monitoring.

Provides instrumentation for:
- Topic publish and per-subscription delivery outcomes
- Queue receives, acks, nacks and dead-letter moves
- Change-stream batches and checkpoint position
- Handler processing time histograms
"""

from prometheus_client import Counter, Gauge, Histogram

# Topic routing metrics
events_published_total = Counter(
    "gallery_events_published_total",
    "Total number of events published to the topic",
    ["kind"],
)

deliveries_total = Counter(
    "gallery_deliveries_total",
    "Deliveries attempted per subscription",
    ["subscription", "status"],  # status: success, error
)

# Queue metrics
queue_messages_total = Counter(
    "gallery_queue_messages_total",
    "Queue operations by outcome",
    ["queue", "operation"],  # operation: enqueued, received, acked, nacked, expired
)

queue_dead_lettered_total = Counter(
    "gallery_queue_dead_lettered_total",
    "Messages moved to a dead-letter queue after exhausting retries",
    ["queue"],
)

queue_depth = Gauge(
    "gallery_queue_depth",
    "Messages currently held by a queue (available + in flight)",
    ["queue"],
)

dead_letter_full_total = Counter(
    "gallery_dead_letter_full_total",
    "Dead-letter moves refused because the dead-letter queue was full",
    ["queue"],
)

# Change-stream metrics
stream_batches_total = Counter(
    "gallery_stream_batches_total",
    "Change-stream batches delivered to the bound handler",
    ["stream", "status"],  # status: success, error
)

stream_checkpoint = Gauge(
    "gallery_stream_checkpoint_sequence",
    "Last acknowledged sequence number per change-stream subscription",
    ["stream"],
)

# Handler metrics
handler_invocations_total = Counter(
    "gallery_handler_invocations_total",
    "Handler invocations by outcome",
    ["handler", "status"],  # status: success, error, duplicate
)

handler_duration_seconds = Histogram(
    "gallery_handler_duration_seconds",
    "Time spent in a single handler invocation",
    ["handler"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def record_publish(kind: str) -> None:
    events_published_total.labels(kind=kind).inc()


def record_delivery(subscription: str, success: bool = True) -> None:
    """
    Record one delivery attempt outcome for a subscription.

    Args:
        subscription: Subscription id
        success: Whether the delivery succeeded
    """
    status = "success" if success else "error"
    deliveries_total.labels(subscription=subscription, status=status).inc()


def record_queue_operation(queue: str, operation: str) -> None:
    queue_messages_total.labels(queue=queue, operation=operation).inc()


def record_dead_lettered(queue: str) -> None:
    queue_dead_lettered_total.labels(queue=queue).inc()


def record_dead_letter_full(queue: str) -> None:
    dead_letter_full_total.labels(queue=queue).inc()


def update_queue_depth(queue: str, depth: int) -> None:
    queue_depth.labels(queue=queue).set(depth)


def record_stream_batch(stream: str, success: bool = True) -> None:
    status = "success" if success else "error"
    stream_batches_total.labels(stream=stream, status=status).inc()


def update_stream_checkpoint(stream: str, sequence: int) -> None:
    stream_checkpoint.labels(stream=stream).set(sequence)


def record_handler_invocation(handler: str, status: str, duration: float) -> None:
    """
    Record a handler invocation.

    Args:
        handler: Handler name
        status: success, error or duplicate
        duration: Wall time in seconds
    """
    handler_invocations_total.labels(handler=handler, status=status).inc()
    handler_duration_seconds.labels(handler=handler).observe(duration)


__all__ = [
    # Metrics
    "events_published_total",
    "deliveries_total",
    "queue_messages_total",
    "queue_dead_lettered_total",
    "queue_depth",
    "dead_letter_full_total",
    "stream_batches_total",
    "stream_checkpoint",
    "handler_invocations_total",
    "handler_duration_seconds",
    # Helper functions
    "record_publish",
    "record_delivery",
    "record_queue_operation",
    "record_dead_lettered",
    "record_dead_letter_full",
    "update_queue_depth",
    "record_stream_batch",
    "update_stream_checkpoint",
    "record_handler_invocation",
]
