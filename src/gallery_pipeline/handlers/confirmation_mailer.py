"""
Confirmation mailer.

Source: the record store change stream. Holds the only email grant.
"""

import logging

from core.logging import get_logger, log_with_context
from gallery_pipeline.handlers.base import ChangeStreamHandler, HandlerContext
from gallery_pipeline.handlers.capabilities import Capability, EmailMessage, GuardedMailer
from gallery_pipeline.schemas import ChangeRecord

logger = get_logger(__name__)

CONFIRMED = "confirmed"


class ConfirmationMailerHandler(ChangeStreamHandler):
    """
    Emails the uploader once an image record's status becomes terminal.

    Only the transition into the terminal status counts: later
    modifications that keep it, removals and records without an ``email``
    attribute send nothing. Each ``key:sequence`` is mailed at
    most once.
    """

    name = "confirmation-mailer"
    required_capabilities = frozenset({Capability.SEND_EMAIL})

    def __init__(
        self,
        mailer: GuardedMailer,
        sender_address: str,
        terminal_status: str = CONFIRMED,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.mailer = mailer
        self.sender_address = sender_address
        self.terminal_status = terminal_status

    async def handle_record(self, record: ChangeRecord, context: HandlerContext) -> None:
        if not record.transitioned("status", self.terminal_status):
            return

        recipient = record.new_value("email")
        if not recipient:
            log_with_context(
                logger,
                logging.WARNING,
                "Confirmed image has no uploader email",
                handler=self.name,
                key=record.key,
            )
            return

        message = EmailMessage(
            sender=self.sender_address,
            recipient=recipient,
            subject=f"Your photo {record.key} is confirmed",
            body=(
                f"Your photo {record.key} was reviewed and is now "
                f"{self.terminal_status} in the gallery."
            ),
        )
        message_id = await self.mailer.send(message)
        log_with_context(
            logger,
            logging.INFO,
            "Confirmation sent",
            handler=self.name,
            key=record.key,
            message_id=message_id,
            last_sequence=record.sequence,
        )
