"""
Tests for the gallery handlers.

Test Coverage:
    - LogImageHandler: extension allow-list and pending records
    - AddMetadataHandler / UpdateStatusHandler: record updates
    - RemoveImageHandler: compensation for rejected uploads
    - ConfirmationMailerHandler: email on the transition to confirmed only
    - Capability grants checked on every send
"""

import pytest

from core.errors import CapabilityDeniedError, InvalidImageError, NotFoundError, ValidationError
from gallery_pipeline.handlers import (
    AddMetadataHandler,
    Capability,
    CapabilityGrants,
    ConfirmationMailerHandler,
    EmailMessage,
    EventSource,
    GuardedMailer,
    HandlerContext,
    InMemoryMailer,
    LogImageHandler,
    RemoveImageHandler,
    SourceKind,
    UpdateStatusHandler,
)
from gallery_pipeline.schemas import ChangeRecord, Event, upload_event
from gallery_pipeline.storage import InMemoryObjectStore, InMemoryRecordStore


@pytest.fixture
def object_store():
    return InMemoryObjectStore("photo-bucket")


@pytest.fixture
def record_store():
    return InMemoryRecordStore("image-table")


def _context(name: str, kind: SourceKind = SourceKind.QUEUE) -> HandlerContext:
    return HandlerContext(handler_name=name, source=EventSource(kind, "source"))


class TestLogImageHandler:
    @pytest.fixture
    def handler(self, object_store, record_store):
        return LogImageHandler(object_store, record_store, [".jpeg", ".png"])

    @pytest.mark.asyncio
    async def test_valid_upload_logged_as_pending(self, handler, object_store, record_store):
        await object_store.put_object("cat.png", b"png", metadata={"email": "owner@example.com"})

        await handler(upload_event("photo-bucket", "cat.png", 3), _context(handler.name))

        assert record_store.get_item("cat.png") == {
            "id": "cat.png",
            "status": "pending",
            "bucket": "photo-bucket",
            "email": "owner@example.com",
        }

    @pytest.mark.asyncio
    async def test_extension_check_is_case_insensitive(self, handler, record_store):
        await handler(upload_event("photo-bucket", "DOG.JPEG", 3), _context(handler.name))
        assert record_store.get_item("DOG.JPEG")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_invalid_extension_raises(self, handler, record_store):
        with pytest.raises(InvalidImageError) as exc_info:
            await handler(upload_event("photo-bucket", "notes.txt", 3), _context(handler.name))

        assert exc_info.value.extension == ".txt"
        assert len(record_store) == 0

    @pytest.mark.asyncio
    async def test_key_without_extension_raises(self, handler):
        with pytest.raises(InvalidImageError):
            await handler(upload_event("photo-bucket", "README", 3), _context(handler.name))

    @pytest.mark.asyncio
    async def test_existing_record_not_reset(self, handler, record_store):
        """A second upload event for the same key keeps the record's status."""
        record_store.put_item({"id": "cat.png", "status": "confirmed"})

        await handler(upload_event("photo-bucket", "cat.png", 3), _context(handler.name))

        assert record_store.get_item("cat.png")["status"] == "confirmed"
        assert len(record_store.stream) == 1

    @pytest.mark.asyncio
    async def test_bad_payload_ref_raises_validation_error(self, handler):
        event = Event(kind="ObjectCreated:Put", payload_ref="ftp://elsewhere/cat.png")

        with pytest.raises(ValidationError):
            await handler(event, _context(handler.name))


class TestAddMetadataHandler:
    @pytest.mark.asyncio
    async def test_sets_lowercased_metadata_field(self, record_store, make_metadata_event):
        record_store.put_item({"id": "cat.png", "status": "pending"})
        handler = AddMetadataHandler(record_store)

        await handler(make_metadata_event(metadata_type="Caption", value="A cat"), _context(handler.name))

        assert record_store.get_item("cat.png")["caption"] == "A cat"

    @pytest.mark.asyncio
    async def test_missing_record_raises(self, record_store, make_metadata_event):
        handler = AddMetadataHandler(record_store)

        with pytest.raises(NotFoundError):
            await handler(make_metadata_event(key="missing.png"), _context(handler.name))

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self, record_store):
        handler = AddMetadataHandler(record_store)
        event = Event(kind="MetadataUpdate", attributes={"metadata_type": "Caption"}, body={"id": "cat.png"})

        with pytest.raises(ValidationError):
            await handler(event, _context(handler.name))


class TestUpdateStatusHandler:
    @pytest.mark.asyncio
    async def test_sets_status_and_reason(self, record_store, make_status_event):
        record_store.put_item({"id": "cat.png", "status": "pending"})
        handler = UpdateStatusHandler(record_store)

        await handler(make_status_event(status="rejected", reason="blurry"), _context(handler.name))

        item = record_store.get_item("cat.png")
        assert item["status"] == "rejected"
        assert item["reason"] == "blurry"

    @pytest.mark.asyncio
    async def test_same_status_emits_no_change(self, record_store, make_status_event):
        record_store.put_item({"id": "cat.png", "status": "confirmed"})
        handler = UpdateStatusHandler(record_store)

        await handler(make_status_event(status="confirmed"), _context(handler.name))

        assert len(record_store.stream) == 1

    @pytest.mark.asyncio
    async def test_missing_status_raises(self, record_store):
        handler = UpdateStatusHandler(record_store)
        event = Event(kind="StatusUpdate", attributes={"message_type": "StatusUpdate"}, body={"id": "cat.png"})

        with pytest.raises(ValidationError):
            await handler(event, _context(handler.name))


class TestRemoveImageHandler:
    @pytest.mark.asyncio
    async def test_removes_rejected_object(self, object_store):
        await object_store.put_object("notes.txt", b"text")
        handler = RemoveImageHandler(object_store)

        await handler(upload_event("photo-bucket", "notes.txt", 4), _context(handler.name))

        assert not object_store.exists("notes.txt")

    @pytest.mark.asyncio
    async def test_absent_object_is_noop(self, object_store):
        handler = RemoveImageHandler(object_store)
        await handler(upload_event("photo-bucket", "gone.txt", 4), _context(handler.name))

    @pytest.mark.asyncio
    async def test_other_bucket_left_alone(self, object_store):
        await object_store.put_object("notes.txt", b"text")
        handler = RemoveImageHandler(object_store)

        await handler(upload_event("other-bucket", "notes.txt", 4), _context(handler.name))

        assert object_store.exists("notes.txt")


class TestCapabilities:
    def test_nothing_granted_by_default(self):
        grants = CapabilityGrants()

        assert not grants.is_granted("confirmation-mailer", Capability.SEND_EMAIL)
        assert grants.holders(Capability.SEND_EMAIL) == set()

    def test_grant_and_revoke(self):
        grants = CapabilityGrants()
        grants.grant("confirmation-mailer", Capability.SEND_EMAIL)
        assert grants.holders(Capability.SEND_EMAIL) == {"confirmation-mailer"}

        grants.revoke("confirmation-mailer", Capability.SEND_EMAIL)
        with pytest.raises(CapabilityDeniedError):
            grants.require("confirmation-mailer", Capability.SEND_EMAIL)

    @pytest.mark.asyncio
    async def test_guarded_mailer_checks_grant_on_every_send(self):
        """Revoking the grant stops the next send, not just future bindings."""
        transport = InMemoryMailer()
        grants = CapabilityGrants()
        grants.grant("confirmation-mailer", Capability.SEND_EMAIL)
        mailer = GuardedMailer(transport, grants, "confirmation-mailer")
        message = EmailMessage("from@example.com", "to@example.com", "Hi", "Body")

        assert await mailer.send(message)
        grants.revoke("confirmation-mailer", Capability.SEND_EMAIL)
        with pytest.raises(CapabilityDeniedError):
            await mailer.send(message)

        assert transport.sent == [message]


class TestConfirmationMailerHandler:
    @pytest.fixture
    def transport(self):
        return InMemoryMailer()

    @pytest.fixture
    def grants(self):
        grants = CapabilityGrants()
        grants.grant(ConfirmationMailerHandler.name, Capability.SEND_EMAIL)
        return grants

    @pytest.fixture
    def handler(self, transport, grants):
        return ConfirmationMailerHandler(
            GuardedMailer(transport, grants, ConfirmationMailerHandler.name),
            sender_address="no-reply@gallery.local",
        )

    @staticmethod
    def _change(before_status, after_status, sequence=1, email="owner@example.com"):
        before = {"id": "cat.png", "status": before_status, "email": email} if before_status else None
        after = {"id": "cat.png", "status": after_status, "email": email} if after_status else None
        return ChangeRecord(key="cat.png", before=before, after=after, sequence=sequence)

    @pytest.mark.asyncio
    async def test_emails_on_transition_to_confirmed(self, handler, transport):
        await handler([self._change("pending", "confirmed")], _context(handler.name, SourceKind.STREAM))

        assert len(transport.sent) == 1
        sent = transport.sent[0]
        assert sent.recipient == "owner@example.com"
        assert sent.sender == "no-reply@gallery.local"
        assert "cat.png" in sent.subject

    @pytest.mark.asyncio
    async def test_no_email_for_other_changes(self, handler, transport):
        batch = [
            self._change(None, "pending", sequence=1),
            self._change("pending", "rejected", sequence=2),
            self._change("confirmed", "confirmed", sequence=3),
            self._change("confirmed", None, sequence=4),
        ]

        await handler(batch, _context(handler.name, SourceKind.STREAM))

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_no_email_without_recipient(self, handler, transport):
        await handler(
            [self._change("pending", "confirmed", email=None)],
            _context(handler.name, SourceKind.STREAM),
        )
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_redelivered_record_mails_once(self, handler, transport):
        record = self._change("pending", "confirmed", sequence=9)

        await handler([record], _context(handler.name, SourceKind.STREAM))
        await handler([record], _context(handler.name, SourceKind.STREAM))

        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_revoked_grant_fails_batch(self, handler, transport, grants):
        grants.revoke(ConfirmationMailerHandler.name, Capability.SEND_EMAIL)

        with pytest.raises(CapabilityDeniedError):
            await handler([self._change("pending", "confirmed")], _context(handler.name, SourceKind.STREAM))

        assert transport.sent == []
