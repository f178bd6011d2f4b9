"""Workers that pull from lease queues and invoke their bound handlers."""

from gallery_pipeline.workers.queue_worker import QueueWorker

__all__ = ["QueueWorker"]
