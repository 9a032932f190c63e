"""
Console channel -- alerts are written to the log.

Used for headless runs and dry runs where no chat gateway is configured.
Direct and broadcast delivery both end up in the ``AfkGuard.Channel.console``
logger; direct lines carry the recipient label.
"""

import logging
from typing import Callable, Optional

from afkguard.alerts import OperatorRef
from afkguard.channels.base import BaseChannel


class ConsoleChannel(BaseChannel):
    """Log-only notification channel."""

    name = "console"

    def __init__(self, config: dict, on_message: Optional[Callable] = None):
        super().__init__(config, on_message)
        self.level = logging.getLevelName(str(config.get("level", "WARNING")).upper())
        if not isinstance(self.level, int):
            self.level = logging.WARNING

    async def start(self):
        self.logger.info("Console channel ready")

    async def stop(self):
        pass

    async def send_direct(self, recipient: OperatorRef, text: str):
        self.logger.log(self.level, "-> %s: %s", recipient.label, text.replace("\n", " | "))

    async def broadcast(self, text: str):
        self.logger.log(self.level, "-> *: %s", text.replace("\n", " | "))
