"""
Discord channel integration via discord.py.

Alerts go to the operator as a DM; when the DM fails (closed DMs, unknown
user) they fall back to the control channel. Operator commands are read from
the control channel, from DMs, or from messages that mention the bot.

Setup:
    1. Create a Discord application at https://discord.com/developers
    2. Create a bot and copy the token
    3. Enable MESSAGE CONTENT intent in the bot settings
    4. Set DISCORD_BOT_TOKEN and DISCORD_CHANNEL_ID in .env
    5. Invite the bot to your server with the generated OAuth2 URL
"""

import asyncio
import logging
from typing import Callable, Optional

from afkguard.alerts import OperatorRef
from afkguard.channels.base import BaseChannel

logger = logging.getLogger("AfkGuard.Channel.Discord")

try:
    import discord

    HAS_DISCORD = True
except ImportError:
    HAS_DISCORD = False

# Discord message length limit
_MAX_CHUNK = 2000


def _chunks(text: str):
    for i in range(0, len(text), _MAX_CHUNK):
        yield text[i : i + _MAX_CHUNK]


class DiscordChannel(BaseChannel):
    """Discord bot integration."""

    name = "discord"

    def __init__(self, config: dict, on_message: Optional[Callable] = None):
        super().__init__(config, on_message)

        if not HAS_DISCORD:
            raise ImportError(
                "discord.py required for Discord. Install with: pip install 'afkguard[discord]'"
            )

        self.bot_token = config.get("bot_token")
        if not self.bot_token:
            raise ValueError("DISCORD_BOT_TOKEN is required. Set it in your .env file.")

        channel_id = config.get("channel_id")
        self.channel_id: Optional[int] = int(channel_id) if channel_id else None

        intents = discord.Intents.default()
        intents.message_content = True
        self.client = discord.Client(intents=intents)
        self._task: Optional[asyncio.Task] = None
        self._setup_handlers()
        self.logger.info("Discord channel initialized")

    def _setup_handlers(self):
        @self.client.event
        async def on_ready():
            self.logger.info(f"Discord bot connected as {self.client.user}")

        @self.client.event
        async def on_message(message: discord.Message):
            if message.author == self.client.user or message.author.bot:
                return

            is_dm = isinstance(message.channel, discord.DMChannel)
            is_mentioned = self.client.user in message.mentions
            is_control = self.channel_id is not None and message.channel.id == self.channel_id

            if not (is_dm or is_mentioned or is_control):
                return

            text = message.content
            if is_mentioned:
                text = text.replace(f"<@{self.client.user.id}>", "").strip()
            if not text:
                return

            # Commands are keyed by author so alerts can be DMed back to them.
            chat_id = str(message.author.id)
            try:
                reply = await self.handle_message(chat_id, text)
                if reply:
                    for chunk in _chunks(reply):
                        await message.channel.send(chunk)
            except Exception as exc:
                self.logger.error("Discord on_message handler error: %s", exc)

    async def start(self):
        """Start the Discord bot in the background."""
        self._task = asyncio.create_task(self.client.start(self.bot_token))
        self.logger.info("Discord bot starting...")

    async def stop(self):
        await self.client.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.logger.info("Discord bot stopped")

    async def send_direct(self, recipient: OperatorRef, text: str):
        user = self.client.get_user(int(recipient.id))
        if user is None:
            user = await self.client.fetch_user(int(recipient.id))
        for chunk in _chunks(text):
            await user.send(chunk)

    async def broadcast(self, text: str):
        if self.channel_id is None:
            raise RuntimeError("DISCORD_CHANNEL_ID is not configured")
        channel = self.client.get_channel(self.channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(self.channel_id)
        for chunk in _chunks(text):
            await channel.send(chunk)
