"""User notifications.

The chat bot that talks to users lives outside this package; the sync
service only needs to tell a user how an account-link attempt went.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers a short text message to a chat address."""

    async def send(self, chat_id: str, text: str) -> None: ...


class LoggingNotifier:
    """Notifier that only logs the message."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, chat_id: str, text: str) -> None:
        self.sent.append((chat_id, text))
        logger.info("Notification to %s: %s", chat_id, text)
