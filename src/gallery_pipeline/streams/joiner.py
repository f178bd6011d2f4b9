"""
Change-stream joiner.

Feeds a record store's change stream to one bound handler, a batch at a
time, in sequence order. The checkpoint advances only after the handler
returns for the whole batch. A failed batch is retried with identical
content from the same position until it succeeds; it is never skipped,
since skipping would lose a state-transition notification for good.
"""

import asyncio
import logging
from typing import List, Optional

from core.errors import StoreUnavailableError, StreamProcessingError
from core.logging import LoggedClass, set_log_context
from core.resilience import RetryConfig
from gallery_pipeline.config import StartingPosition
from gallery_pipeline.handlers.base import (
    ChangeStreamHandler,
    EventSource,
    HandlerContext,
    SourceKind,
)
from gallery_pipeline.metrics import record_stream_batch, update_stream_checkpoint
from gallery_pipeline.schemas import ChangeRecord
from gallery_pipeline.streams.checkpoint import CheckpointStore
from gallery_pipeline.streams.stream import ChangeStream


class ChangeStreamJoiner(LoggedClass):
    """
    Ordered, checkpointed delivery of change records to a handler.

    The read position is fixed when the joiner subscribes, on the first
    of subscribe(), run() or poll_once(): the stored checkpoint if there
    is one, otherwise the configured starting position (LATEST: only
    mutations from then on; TRIM_HORIZON: everything retained).

    Args:
        stream: Change stream to consume
        handler: The single handler bound to the stream
        checkpoints: Checkpoint storage
        batch_size: Maximum records per handler invocation
        starting_position: Where to begin when no checkpoint exists
        retry_delay: Delay before the first retry of a failed batch
        max_retry_delay: Upper bound for the retry delay
        poll_interval: Seconds to wait for new records before polling again
        stage: Log stage name set for the joiner task

    Usage:
        >>> joiner = ChangeStreamJoiner(store.stream, mailer_handler, CheckpointStore())
        >>> task = asyncio.create_task(joiner.run())
        >>> ...
        >>> await joiner.stop()
    """

    log_fields = {"stream_name": "stream", "handler_name": "handler"}

    def __init__(
        self,
        stream: ChangeStream,
        handler: ChangeStreamHandler,
        checkpoints: CheckpointStore,
        batch_size: int = 1,
        starting_position: StartingPosition = StartingPosition.LATEST,
        retry_delay: float = 1.0,
        max_retry_delay: float = 60.0,
        poll_interval: float = 1.0,
        stage: Optional[str] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.stream = stream
        self.handler = handler
        self.checkpoints = checkpoints
        self.batch_size = batch_size
        self.starting_position = starting_position
        self.poll_interval = poll_interval
        self.stage = stage
        self.stream_name = stream.name
        self.handler_name = handler.name
        self.checkpoint_name = f"{stream.name}.{handler.name}"
        self.source = EventSource(SourceKind.STREAM, stream.name)
        self._retry = RetryConfig(
            max_attempts=1, base_delay=retry_delay, max_delay=max_retry_delay, jitter=0.0
        )

        self._pending: Optional[List[ChangeRecord]] = None
        self._failed_attempts = 0
        self._running = False
        self._stop_requested = asyncio.Event()
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._position: Optional[int] = None
        super().__init__()

    def subscribe(self) -> int:
        """Fix the read position if not yet fixed, and return it."""
        if self._position is None:
            self._position = self._resolve_start()
        return self._position

    def _resolve_start(self) -> int:
        stored = self.checkpoints.get(self.checkpoint_name)
        if stored is not None:
            self._log(logging.INFO, "Resuming from checkpoint", checkpoint=stored)
            return stored
        if self.starting_position is StartingPosition.TRIM_HORIZON:
            position = self.stream.trim_horizon
        else:
            position = self.stream.latest_sequence
        self._log(
            logging.INFO,
            "Subscribed without checkpoint",
            checkpoint=position,
            reason=self.starting_position.value,
        )
        return position

    @property
    def position(self) -> Optional[int]:
        """Sequence of the last record acknowledged by the handler, None before subscribing."""
        return self._position

    @property
    def failed_attempts(self) -> int:
        """Consecutive failures of the current batch."""
        return self._failed_attempts

    @property
    def is_running(self) -> bool:
        return self._running

    async def poll_once(self) -> int:
        """
        Deliver the next batch, if any, and advance the checkpoint.

        Returns:
            Number of records acknowledged (0 if nothing was pending)

        Raises:
            StreamProcessingError: If the handler failed; the same batch is
                delivered again on the next call
        """
        position = self.subscribe()
        batch = self._pending
        if batch is None:
            batch = self.stream.read(position, self.batch_size)
            if not batch:
                return 0
            if batch[0].sequence > position + 1:
                self._log(
                    logging.WARNING,
                    "Records before the stream trim horizon were never delivered",
                    checkpoint=position,
                    first_sequence=batch[0].sequence,
                )

        first, last = batch[0].sequence, batch[-1].sequence
        context = HandlerContext(
            handler_name=self.handler_name,
            source=self.source,
            delivery_count=self._failed_attempts + 1,
        )
        try:
            await self.handler(batch, context)
        except Exception as e:
            self._pending = batch
            self._failed_attempts += 1
            record_stream_batch(self.stream_name, success=False)
            raise StreamProcessingError(
                f"Handler '{self.handler_name}' failed on records {first}-{last}",
                first_sequence=first,
                last_sequence=last,
                cause=e,
            ) from e

        self.checkpoints.set(self.checkpoint_name, last)
        self._position = last
        self._pending = None
        self._failed_attempts = 0
        record_stream_batch(self.stream_name, success=True)
        update_stream_checkpoint(self.stream_name, last)
        self._log(
            logging.DEBUG,
            "Batch acknowledged",
            first_sequence=first,
            last_sequence=last,
            batch_size=len(batch),
            checkpoint=last,
        )
        return len(batch)

    async def run(self) -> None:
        """Poll until stop() is called, retrying failed batches with backoff."""
        if self._running:
            self._log(logging.WARNING, "Joiner already running, ignoring duplicate start call")
            return

        self._running = True
        self._stop_requested.clear()
        self._stopped.clear()
        if self.stage:
            set_log_context(stage=self.stage)
        self._log(logging.INFO, "Starting change-stream joiner", checkpoint=self.subscribe())
        try:
            while not self._stop_requested.is_set():
                try:
                    processed = await self.poll_once()
                except StreamProcessingError as e:
                    delay = self._retry.get_delay(self._failed_attempts)
                    self._log_exception(
                        e,
                        "Batch failed, retrying same position",
                        level=logging.WARNING,
                        attempt=self._failed_attempts,
                        checkpoint=self._position,
                        first_sequence=e.first_sequence,
                        last_sequence=e.last_sequence,
                    )
                    await self._wait_or_stop(delay)
                    continue
                except StoreUnavailableError as e:
                    # Handler succeeded but the checkpoint write did not; the batch is
                    # read again and its records are skipped as already processed
                    self._log_exception(e, "Checkpoint write failed", level=logging.WARNING)
                    await self._wait_or_stop(self._retry.get_delay(1))
                    continue

                if processed == 0:
                    await self.stream.wait_for(self._position, timeout=self.poll_interval)
        finally:
            self._running = False
            self._stopped.set()
            self._log(logging.INFO, "Change-stream joiner stopped", checkpoint=self._position)

    async def stop(self) -> None:
        """
        Stop after the current batch. The checkpoint is preserved; an
        unacknowledged batch is delivered again on the next run.
        """
        self._stop_requested.set()
        await self._stopped.wait()

    async def _wait_or_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
