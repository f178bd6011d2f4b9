"""Durable lease-based queues: retry queue and dead-letter queue."""

from gallery_pipeline.queues.base import Lease, LeaseQueue
from gallery_pipeline.queues.dead_letter import DeadLetterQueue
from gallery_pipeline.queues.retry_queue import RetryQueue

__all__ = [
    "Lease",
    "LeaseQueue",
    "DeadLetterQueue",
    "RetryQueue",
]
