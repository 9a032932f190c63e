"""
Base class for all notification channel integrations.

A channel does two jobs: it delivers alerts to the operator (the
notification sink) and it receives plain-text operator commands and forwards
them to the command router.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Union

from afkguard.alerts import AlertEvent, OperatorRef

logger = logging.getLogger("AfkGuard.Channels")

# Default rate limit: 10 commands per 60 seconds per chat_id
_DEFAULT_RATE_LIMIT = 10
_DEFAULT_RATE_WINDOW = 60.0


class BaseChannel(ABC):
    """Abstract base class for notification channel integrations."""

    name: str = "base"

    def __init__(self, config: dict, on_message: Optional[Callable] = None):
        """
        Args:
            config: Channel-specific configuration dict.
                    Accepts ``rate_limit`` (int, default 10) and
                    ``rate_window`` (float seconds, default 60) for per-chat
                    command throttling.
            on_message: Callback invoked when an operator command arrives.
                        Signature: on_message(channel_name, chat_id, text) -> str
                        Returns the reply text to send back to the operator,
                        or an awaitable resolving to it.
        """
        self.config = config
        self._on_message_callback = on_message
        self.logger = logging.getLogger(f"AfkGuard.Channel.{self.name}")

        self._rate_limit: int = config.get("rate_limit", _DEFAULT_RATE_LIMIT)
        self._rate_window: float = config.get("rate_window", _DEFAULT_RATE_WINDOW)
        self._rate_timestamps: Dict[str, Deque[float]] = defaultdict(deque)

    def set_message_handler(self, on_message: Optional[Callable]) -> None:
        self._on_message_callback = on_message

    def _check_rate_limit(self, chat_id: str) -> bool:
        """Return True if the message is within the rate limit, False if throttled."""
        now = time.monotonic()
        window_start = now - self._rate_window
        q = self._rate_timestamps[chat_id]

        # Evict timestamps outside the window
        while q and q[0] < window_start:
            q.popleft()

        if len(q) >= self._rate_limit:
            return False

        q.append(now)
        return True

    async def handle_message(self, chat_id: str, text: str) -> Optional[str]:
        """
        Process an incoming operator command and return a reply.
        Subclasses call this from their platform-specific message handler.
        """
        self.logger.info(f"[{self.name}] Command from {chat_id}: {text[:80]}")

        if not self._check_rate_limit(chat_id):
            self.logger.warning(
                f"[{self.name}] Rate limit exceeded for {chat_id} "
                f"({self._rate_limit} msg/{self._rate_window}s)"
            )
            return (
                f"Too many requests. Please wait before sending another command "
                f"(limit: {self._rate_limit} per {int(self._rate_window)}s)."
            )

        if self._on_message_callback:
            try:
                reply = self._on_message_callback(self.name, chat_id, text)
                # Commands that wait on the server hand back an awaitable
                if inspect.isawaitable(reply):
                    reply = await reply
                return reply
            except Exception as e:
                self.logger.error(f"Command handler error: {e}")
                return f"Error processing command: {e}"
        return None

    async def deliver(
        self, recipient: Optional[OperatorRef], alert: Union[AlertEvent, str]
    ) -> bool:
        """Deliver *alert* to *recipient*, falling back to the broadcast target.

        The fallback copy is tagged with the intended recipient so whoever
        reads the broadcast target can tell the direct path failed. Never
        raises; returns False only when both paths failed.
        """
        text = alert.to_text() if isinstance(alert, AlertEvent) else str(alert)

        if recipient is not None:
            try:
                await self.send_direct(recipient, text)
                self.logger.debug("Delivered to %s", recipient.label)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning(
                    "Direct delivery to %s failed: %s -- falling back to broadcast",
                    recipient.label,
                    exc,
                )
            text = f"⚠️ Failed to reach {recipient.mention} directly.\n{text}"

        try:
            await self.broadcast(text)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.error("Broadcast delivery failed: %s", exc)
            return False

    @abstractmethod
    async def start(self):
        """Connect to the messaging platform (login, start polling, etc.)."""
        pass

    @abstractmethod
    async def stop(self):
        """Disconnect gracefully."""
        pass

    @abstractmethod
    async def send_direct(self, recipient: OperatorRef, text: str):
        """Send a private message to the operator. Raise on failure."""
        pass

    @abstractmethod
    async def broadcast(self, text: str):
        """Send a message to the shared control target. Raise on failure."""
        pass
