"""
Topology wiring.

Builds the whole pipeline once, from configuration, as an immutable
graph:

    object store --notify--> image-topic
        eventName      -> valid-image-queue -> log-image
                            (3 receives)    -> image-dead-letter-queue -> remove-image
        metadata_type  -> add-metadata  \
        message_type   -> update-status -> direct-delivery-dead-letter-queue (held for redrive)
    record store --change stream--> confirmation-mailer (email grant)

Any invalid configuration raises ConfigurationError from build_topology;
nothing is started until Topology.start().
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from core.errors import ConfigurationError
from core.logging import get_logger, log_with_context
from gallery_pipeline.config import PipelineConfig
from gallery_pipeline.handlers import (
    AddMetadataHandler,
    Capability,
    CapabilityGrants,
    ConfirmationMailerHandler,
    EventSource,
    GuardedMailer,
    HandlerRegistry,
    InMemoryMailer,
    LogImageHandler,
    RemoveImageHandler,
    SourceKind,
    UpdateStatusHandler,
)
from gallery_pipeline.notifier import ObjectStoreNotifier
from gallery_pipeline.queues import DeadLetterQueue, RetryQueue
from gallery_pipeline.routing import (
    HandlerTarget,
    PublishResult,
    QueueTarget,
    RoutingTable,
    Subscription,
    TopicRouter,
    allow_list,
)
from gallery_pipeline.schemas import (
    OBJECT_CREATED_COMPLETE_MULTIPART,
    OBJECT_CREATED_POST,
    OBJECT_CREATED_PUT,
    Event,
)
from gallery_pipeline.storage import InMemoryObjectStore, InMemoryRecordStore
from gallery_pipeline.streams import ChangeStreamJoiner, CheckpointStore, FileCheckpointStore
from gallery_pipeline.workers import QueueWorker

logger = get_logger(__name__)

TOPIC_NAME = "image-topic"
IMAGE_QUEUE_NAME = "valid-image-queue"
DEAD_LETTER_QUEUE_NAME = "image-dead-letter-queue"
DIRECT_DEAD_LETTER_QUEUE_NAME = "direct-delivery-dead-letter-queue"

UPLOAD_EVENT_NAMES = (
    OBJECT_CREATED_PUT,
    OBJECT_CREATED_POST,
    OBJECT_CREATED_COMPLETE_MULTIPART,
)
METADATA_TYPES = ("Caption", "Date", "name")
MESSAGE_TYPES = ("StatusUpdate",)

# Log stages, one per long-running task
WORKER_STAGES = ["image-queue", "dead-letter", "confirmation-stream"]

# Seconds between dead-letter retention sweeps
PURGE_INTERVAL_SECONDS = 3600.0


@dataclass
class Topology:
    """The built pipeline. Start it to run workers and the joiner."""

    config: PipelineConfig
    object_store: InMemoryObjectStore
    record_store: InMemoryRecordStore
    router: TopicRouter
    notifier: ObjectStoreNotifier
    image_queue: RetryQueue
    dead_letter: DeadLetterQueue
    direct_dead_letter: DeadLetterQueue
    registry: HandlerRegistry
    grants: CapabilityGrants
    mailer: object
    checkpoints: CheckpointStore
    joiner: ChangeStreamJoiner
    workers: List[QueueWorker]
    purge_interval: float = PURGE_INTERVAL_SECONDS
    _tasks: List[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def publish(self, event: Event) -> PublishResult:
        """Publish an application event (metadata or status update) to the topic."""
        return await self.router.publish(event)

    async def start(self) -> None:
        if self._tasks:
            log_with_context(logger, logging.WARNING, "Topology already started")
            return
        # Fix the stream position before any worker can write a record
        self.joiner.subscribe()
        self._tasks = [asyncio.create_task(worker.start()) for worker in self.workers]
        self._tasks.append(asyncio.create_task(self.joiner.run()))
        self._tasks.append(asyncio.create_task(self._purge_loop()))
        log_with_context(
            logger,
            logging.INFO,
            "Topology started",
            topic=self.router.name,
            queue=self.image_queue.name,
            stream=self.joiner.stream_name,
        )

    async def stop(self) -> None:
        """Stop workers and the joiner. Checkpoints and queued messages are kept."""
        if not self._tasks:
            return
        await asyncio.gather(
            *(worker.stop() for worker in self.workers),
            self.joiner.stop(),
        )
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log_with_context(logger, logging.INFO, "Topology stopped")

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.purge_interval)
            self.dead_letter.purge_expired()
            self.direct_dead_letter.purge_expired()

    async def __aenter__(self) -> "Topology":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def build_topology(
    config: Optional[PipelineConfig] = None,
    object_store: Optional[InMemoryObjectStore] = None,
    record_store: Optional[InMemoryRecordStore] = None,
    mailer=None,
    clock: Callable[[], float] = time.monotonic,
) -> Topology:
    """
    Build the pipeline from configuration.

    Args:
        config: Pipeline configuration (defaults if None)
        object_store: Existing object store; its bucket must match the config
        record_store: Existing record store; its table must match the config
        mailer: Email transport with ``async send(EmailMessage)``
        clock: Monotonic clock for queue leases

    Raises:
        ConfigurationError: If configuration or wiring is invalid
    """
    config = (config or PipelineConfig()).validate()

    if object_store is None:
        object_store = InMemoryObjectStore(config.object_store_location)
    elif object_store.bucket != config.object_store_location:
        raise ConfigurationError(
            f"Object store bucket '{object_store.bucket}' does not match "
            f"configured location '{config.object_store_location}'"
        )
    if record_store is None:
        record_store = InMemoryRecordStore(config.record_store_location)
    elif record_store.table != config.record_store_location:
        raise ConfigurationError(
            f"Record store table '{record_store.table}' does not match "
            f"configured location '{config.record_store_location}'"
        )

    dead_letter = DeadLetterQueue(
        DEAD_LETTER_QUEUE_NAME,
        retention=config.dead_letter.retention,
        max_records=config.dead_letter.max_records,
        visibility_timeout=config.dead_letter.visibility_timeout_seconds,
        clock=clock,
    )
    # Direct deliveries that exhaust their attempts; nothing consumes it
    direct_dead_letter = DeadLetterQueue(
        DIRECT_DEAD_LETTER_QUEUE_NAME,
        retention=config.dead_letter.retention,
        max_records=config.dead_letter.max_records,
        visibility_timeout=config.dead_letter.visibility_timeout_seconds,
        clock=clock,
    )
    image_queue = RetryQueue(
        IMAGE_QUEUE_NAME,
        dead_letter=dead_letter,
        max_receive_count=config.queue.max_receive_count,
        visibility_timeout=config.queue.visibility_timeout_seconds,
        clock=clock,
    )

    grants = CapabilityGrants()
    grants.grant(ConfirmationMailerHandler.name, Capability.SEND_EMAIL)
    transport = mailer if mailer is not None else InMemoryMailer()

    log_image = LogImageHandler(object_store, record_store, config.valid_extensions)
    remove_image = RemoveImageHandler(object_store)
    add_metadata = AddMetadataHandler(record_store)
    update_status = UpdateStatusHandler(record_store)
    confirmation = ConfirmationMailerHandler(
        GuardedMailer(transport, grants, ConfirmationMailerHandler.name),
        sender_address=config.sender_address,
    )

    registry = HandlerRegistry(grants)
    registry.bind(log_image, EventSource(SourceKind.QUEUE, image_queue.name))
    registry.bind(remove_image, EventSource(SourceKind.QUEUE, dead_letter.name))
    registry.bind(add_metadata, EventSource(SourceKind.TOPIC, TOPIC_NAME))
    registry.bind(update_status, EventSource(SourceKind.TOPIC, TOPIC_NAME))
    registry.bind(confirmation, EventSource(SourceKind.STREAM, record_store.stream.name))
    registry.validate()

    table = RoutingTable.build(
        [
            Subscription(
                id=image_queue.name,
                target=QueueTarget(image_queue),
                filter=allow_list("eventName", UPLOAD_EVENT_NAMES),
            ),
            Subscription(
                id=add_metadata.name,
                target=HandlerTarget(add_metadata),
                filter=allow_list("metadata_type", METADATA_TYPES),
                dead_letter=direct_dead_letter,
            ),
            Subscription(
                id=update_status.name,
                target=HandlerTarget(update_status),
                filter=allow_list("message_type", MESSAGE_TYPES),
                dead_letter=direct_dead_letter,
            ),
        ]
    )
    router = TopicRouter(TOPIC_NAME, table)

    notifier = ObjectStoreNotifier(router)
    object_store.add_listener(notifier.on_object_created)

    if config.stream.checkpoint_dir:
        checkpoints: CheckpointStore = FileCheckpointStore(Path(config.stream.checkpoint_dir))
    else:
        checkpoints = CheckpointStore()

    joiner = ChangeStreamJoiner(
        record_store.stream,
        confirmation,
        checkpoints,
        batch_size=config.stream.batch_size,
        starting_position=config.stream.starting_position,
        retry_delay=config.stream.retry_delay_seconds,
        max_retry_delay=config.stream.max_retry_delay_seconds,
        poll_interval=config.stream.poll_interval_seconds,
        stage="confirmation-stream",
    )

    workers = [
        QueueWorker(
            image_queue,
            log_image,
            concurrency=config.queue.worker_concurrency,
            poll_interval=config.queue.poll_interval_seconds,
            stage="image-queue",
        ),
        QueueWorker(
            dead_letter,
            remove_image,
            concurrency=config.queue.worker_concurrency,
            poll_interval=config.queue.poll_interval_seconds,
            stage="dead-letter",
        ),
    ]

    log_with_context(
        logger,
        logging.INFO,
        "Topology built",
        topic=TOPIC_NAME,
        queue=image_queue.name,
        max_receive_count=image_queue.max_receive_count,
        stream=record_store.stream.name,
        batch_size=config.stream.batch_size,
    )

    return Topology(
        config=config,
        object_store=object_store,
        record_store=record_store,
        router=router,
        notifier=notifier,
        image_queue=image_queue,
        dead_letter=dead_letter,
        direct_dead_letter=direct_dead_letter,
        registry=registry,
        grants=grants,
        mailer=transport,
        checkpoints=checkpoints,
        joiner=joiner,
        workers=workers,
    )
