"""Out-of-band delivery of one-time codes.

Sending the email itself is the job of the surrounding application; this
module only defines what it is handed.
"""

from __future__ import annotations

import logging
from typing import Protocol

from verifyflow.models import OtpMessage

logger = logging.getLogger(__name__)


class Delivery(Protocol):
    async def send(self, message: OtpMessage) -> None: ...


class LogDelivery:
    """Development delivery: records the message instead of sending it."""

    def __init__(self) -> None:
        self.outbox: list[OtpMessage] = []

    async def send(self, message: OtpMessage) -> None:
        self.outbox.append(message)
        logger.info("Queued %s verification for %s", message.type, message.target)
