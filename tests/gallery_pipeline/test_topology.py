"""
End-to-end tests over the built topology.

Drives the pipeline step by step (worker.drain, joiner.poll_once) so every
stage is deterministic, plus one run of the started topology.
"""

import asyncio

import pytest

from core.errors import ConfigurationError
from gallery_pipeline.config import PipelineConfig, QueueConfig, StreamConfig
from gallery_pipeline.handlers import Capability, InMemoryMailer, SourceKind
from gallery_pipeline.storage import InMemoryObjectStore, InMemoryRecordStore
from gallery_pipeline.topology import (
    DEAD_LETTER_QUEUE_NAME,
    DIRECT_DEAD_LETTER_QUEUE_NAME,
    IMAGE_QUEUE_NAME,
    TOPIC_NAME,
    build_topology,
)


@pytest.fixture
def mailer():
    return InMemoryMailer()


@pytest.fixture
def topology(clock, mailer):
    return build_topology(mailer=mailer, clock=clock)


def _image_worker(topology):
    return topology.workers[0]


def _compensation_worker(topology):
    return topology.workers[1]


class TestBuild:
    def test_wiring(self, topology):
        assert topology.router.name == TOPIC_NAME
        assert topology.image_queue.name == IMAGE_QUEUE_NAME
        assert topology.dead_letter.name == DEAD_LETTER_QUEUE_NAME
        assert topology.image_queue.max_receive_count == 3
        assert [s.id for s in topology.router.table] == [
            "valid-image-queue",
            "add-metadata",
            "update-status",
        ]
        direct = [s for s in topology.router.table if not s.is_queue]
        assert {s.dead_letter.name for s in direct} == {DIRECT_DEAD_LETTER_QUEUE_NAME}
        assert topology.registry.source_of("log-image").kind is SourceKind.QUEUE
        assert topology.registry.source_of("remove-image").name == DEAD_LETTER_QUEUE_NAME
        assert topology.registry.source_of("confirmation-mailer").kind is SourceKind.STREAM
        assert topology.grants.holders(Capability.SEND_EMAIL) == {"confirmation-mailer"}
        assert not topology.is_running

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            build_topology(PipelineConfig(valid_extensions=[]))

    def test_object_store_bucket_must_match(self):
        with pytest.raises(ConfigurationError, match="does not match"):
            build_topology(object_store=InMemoryObjectStore("other-bucket"))

    def test_record_store_table_must_match(self):
        with pytest.raises(ConfigurationError, match="does not match"):
            build_topology(record_store=InMemoryRecordStore("other-table"))

    def test_file_checkpoints_when_configured(self, tmp_path):
        config = PipelineConfig(stream=StreamConfig(checkpoint_dir=str(tmp_path)))
        topology = build_topology(config)
        assert topology.checkpoints.storage_dir == tmp_path


class TestImageLifecycle:
    @pytest.mark.asyncio
    async def test_upload_to_confirmation_email(self, topology, mailer, make_metadata_event, make_status_event):
        """Upload, caption and confirm an image; the uploader gets exactly one email."""
        topology.joiner.subscribe()
        await topology.object_store.put_object("cat.png", b"png", metadata={"email": "owner@example.com"})
        assert len(topology.image_queue) == 1

        assert await _image_worker(topology).drain() == 1
        assert topology.record_store.get_item("cat.png")["status"] == "pending"

        caption = await topology.publish(make_metadata_event(value="A sleepy cat"))
        assert caption.delivered == ["add-metadata"]
        confirm = await topology.publish(make_status_event(status="confirmed"))
        assert confirm.delivered == ["update-status"]

        item = topology.record_store.get_item("cat.png")
        assert item["caption"] == "A sleepy cat"
        assert item["status"] == "confirmed"

        while await topology.joiner.poll_once():
            pass

        assert topology.joiner.position == 3
        assert len(mailer.sent) == 1
        assert mailer.sent[0].recipient == "owner@example.com"

        # A later metadata change on a confirmed image sends nothing
        await topology.publish(make_metadata_event(metadata_type="Date", value="2024-06-01"))
        while await topology.joiner.poll_once():
            pass
        assert len(mailer.sent) == 1

    @pytest.mark.asyncio
    async def test_rejected_upload_removed_after_three_deliveries(self, topology):
        await topology.object_store.put_object("notes.txt", b"text")

        assert await _image_worker(topology).drain() == 3

        assert len(topology.image_queue) == 0
        assert len(topology.dead_letter) == 1
        record = topology.dead_letter.items()[0]
        assert record.delivery_count == 3
        assert record.source_queue == IMAGE_QUEUE_NAME
        assert topology.record_store.get_item("notes.txt") is None

        assert await _compensation_worker(topology).drain() == 1
        assert not topology.object_store.exists("notes.txt")
        assert len(topology.dead_letter) == 0

    @pytest.mark.asyncio
    async def test_status_for_unknown_image_is_dead_lettered(self, topology, make_status_event):
        """A permanent handler error is reported and kept, not dropped."""
        event = make_status_event(key="missing.png")
        result = await topology.publish(event)

        assert list(result.failed) == ["update-status"]
        (record,) = topology.direct_dead_letter.items()
        assert record.event.id == event.id
        assert record.source_queue == "subscription:update-status"
        assert record.delivery_count == 1
        assert record.reason.startswith("permanent")
        assert len(topology.dead_letter) == 0


class TestRunning:
    @pytest.mark.asyncio
    async def test_started_topology_processes_upload(self, mailer, make_status_event):
        config = PipelineConfig(
            queue=QueueConfig(poll_interval_seconds=0.01),
            stream=StreamConfig(poll_interval_seconds=0.01),
        )
        topology = build_topology(config, mailer=mailer)

        async with topology:
            assert topology.is_running
            await topology.object_store.put_object("cat.png", b"png", metadata={"email": "owner@example.com"})
            for _ in range(200):
                if topology.record_store.get_item("cat.png"):
                    break
                await asyncio.sleep(0.005)

            await topology.publish(make_status_event(status="confirmed"))
            for _ in range(200):
                if mailer.sent:
                    break
                await asyncio.sleep(0.005)

        assert not topology.is_running
        assert len(mailer.sent) == 1
        assert len(topology.image_queue) == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, topology):
        await topology.start()
        await topology.start()
        await topology.stop()
        await topology.stop()

        assert not topology.is_running
