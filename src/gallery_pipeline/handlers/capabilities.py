"""
Capability grants for handler side effects.

Outbound side effects that need authorization (sending email) go through
a guarded collaborator that checks an explicit grant table on every call.
Nothing is granted by default.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Set

from core.errors import CapabilityDeniedError
from core.logging import LoggedClass, get_logger, log_with_context

logger = get_logger(__name__)


class Capability(str, Enum):
    SEND_EMAIL = "send_email"


class CapabilityGrants:
    """
    Authorization table: handler name -> granted capabilities.

    Usage:
        grants = CapabilityGrants()
        grants.grant("confirmation-mailer", Capability.SEND_EMAIL)
        grants.require("confirmation-mailer", Capability.SEND_EMAIL)
    """

    def __init__(self):
        self._grants: Dict[str, Set[Capability]] = {}

    def grant(self, handler_name: str, capability: Capability) -> None:
        self._grants.setdefault(handler_name, set()).add(capability)

    def revoke(self, handler_name: str, capability: Capability) -> None:
        self._grants.get(handler_name, set()).discard(capability)

    def is_granted(self, handler_name: str, capability: Capability) -> bool:
        return capability in self._grants.get(handler_name, set())

    def require(self, handler_name: str, capability: Capability) -> None:
        """
        Raises:
            CapabilityDeniedError: If the handler lacks the capability
        """
        if not self.is_granted(handler_name, capability):
            log_with_context(
                logger,
                logging.WARNING,
                "Capability denied",
                handler=handler_name,
                capability=capability.value,
            )
            raise CapabilityDeniedError(handler_name, capability.value)

    def holders(self, capability: Capability) -> Set[str]:
        return {name for name, caps in self._grants.items() if capability in caps}


@dataclass(frozen=True)
class EmailMessage:
    sender: str
    recipient: str
    subject: str
    body: str


class InMemoryMailer(LoggedClass):
    """Email transport stand-in that records every message it is handed."""

    log_component = "mailer"

    def __init__(self):
        self.sent: List[EmailMessage] = []
        super().__init__()

    async def send(self, message: EmailMessage) -> str:
        self.sent.append(message)
        message_id = uuid.uuid4().hex
        self._log(logging.INFO, "Email sent", message_id=message_id, subject=message.subject)
        return message_id


class GuardedMailer:
    """
    Mailer bound to one handler, checking its SEND_EMAIL grant per send.

    Args:
        transport: Object with ``async send(EmailMessage) -> str``
        grants: Authorization table
        handler_name: Handler this mailer acts for
    """

    def __init__(self, transport, grants: CapabilityGrants, handler_name: str):
        self._transport = transport
        self._grants = grants
        self.handler_name = handler_name

    async def send(self, message: EmailMessage) -> str:
        self._grants.require(self.handler_name, Capability.SEND_EMAIL)
        return await self._transport.send(message)
