"""Tests for afkguard.channels -- BaseChannel, delivery fallback, registry, console channel.

Covers abstract interface enforcement, handle_message callback routing, rate
limiting, direct-then-broadcast delivery, channel registry
(get_available_channels, get_ready_channels, create_channel) and credential
resolution.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from helpers import RecordingChannel

from afkguard.alerts import AlertEvent, OperatorRef, Severity
from afkguard.channels.base import BaseChannel

OPERATOR = OperatorRef(id="1234", display_name="alice")


def _run(coro):
    return asyncio.new_event_loop().run_until_complete(coro)


# =====================================================================
# BaseChannel tests
# =====================================================================
class TestBaseChannel:
    def test_config_stored(self):
        ch = RecordingChannel({"key": "value"})
        assert ch.config == {"key": "value"}

    def test_callback_stored(self):
        def cb(name, chat_id, text):
            return "reply"

        ch = RecordingChannel({}, on_message=cb)
        assert ch._on_message_callback is cb

    def test_set_message_handler(self):
        ch = RecordingChannel({})
        assert ch._on_message_callback is None
        ch.set_message_handler(print)
        assert ch._on_message_callback is print

    def test_logger_name(self):
        ch = RecordingChannel({})
        assert ch.logger.name == "AfkGuard.Channel.recording"


# =====================================================================
# handle_message tests
# =====================================================================
class TestHandleMessage:
    def test_with_callback(self):
        def callback(name, chat_id, text):
            return f"Received: {text}"

        ch = RecordingChannel({}, on_message=callback)
        assert _run(ch.handle_message("user123", "status")) == "Received: status"

    def test_async_callback(self):
        async def callback(name, chat_id, text):
            return f"{name}:{chat_id}:{text}"

        ch = RecordingChannel({}, on_message=callback)
        assert _run(ch.handle_message("u1", "connect")) == "recording:u1:connect"

    def test_sync_callback_returning_awaitable(self):
        async def later(text):
            await asyncio.sleep(0)
            return f"later: {text}"

        def callback(name, chat_id, text):
            return later(text)

        ch = RecordingChannel({}, on_message=callback)
        assert _run(ch.handle_message("u1", "shards")) == "later: shards"

    def test_no_callback_returns_none(self):
        ch = RecordingChannel({})
        assert _run(ch.handle_message("user", "hello")) is None

    def test_callback_error_returns_error_message(self):
        def bad_callback(name, chat_id, text):
            raise ValueError("something broke")

        ch = RecordingChannel({}, on_message=bad_callback)
        result = _run(ch.handle_message("user", "test"))
        assert "Error" in result
        assert "something broke" in result


# =====================================================================
# Rate limiting
# =====================================================================
class TestRateLimit:
    def test_throttles_after_limit(self):
        ch = RecordingChannel({"rate_limit": 2, "rate_window": 60}, on_message=lambda *a: "ok")
        assert _run(ch.handle_message("u", "a")) == "ok"
        assert _run(ch.handle_message("u", "b")) == "ok"
        assert "Too many requests" in _run(ch.handle_message("u", "c"))

    def test_limit_is_per_chat(self):
        ch = RecordingChannel({"rate_limit": 1}, on_message=lambda *a: "ok")
        assert _run(ch.handle_message("u1", "a")) == "ok"
        assert _run(ch.handle_message("u2", "a")) == "ok"


# =====================================================================
# Delivery
# =====================================================================
class TestDeliver:
    def _alert(self):
        return AlertEvent(
            kind="threat", title="Threat", description="Steve (12m)", severity=Severity.URGENT
        )

    def test_direct_delivery(self):
        ch = RecordingChannel()
        assert _run(ch.deliver(OPERATOR, self._alert())) is True
        assert len(ch.direct) == 1
        assert ch.broadcasts == []
        assert "URGENT SAFETY ALERT" in ch.direct[0][1]

    def test_fallback_tags_intended_recipient(self):
        ch = RecordingChannel(fail_direct=True)
        assert _run(ch.deliver(OPERATOR, self._alert())) is True
        assert ch.direct == []
        assert len(ch.broadcasts) == 1
        assert ch.broadcasts[0].startswith("⚠️ Failed to reach <@1234> directly.")
        assert "Threat" in ch.broadcasts[0]

    def test_no_recipient_goes_straight_to_broadcast(self):
        ch = RecordingChannel()
        assert _run(ch.deliver(None, "plain text")) is True
        assert ch.broadcasts == ["plain text"]

    def test_both_paths_failing_returns_false(self, caplog):
        ch = RecordingChannel(fail_direct=True, fail_broadcast=True)
        with caplog.at_level(logging.ERROR):
            assert _run(ch.deliver(OPERATOR, self._alert())) is False
        assert "Broadcast delivery failed" in caplog.text


# =====================================================================
# Abstract method enforcement
# =====================================================================
class TestAbstractEnforcement:
    def test_cannot_instantiate_base_channel(self):
        with pytest.raises(TypeError):
            BaseChannel({})

    def test_missing_broadcast_method(self):
        class Incomplete(BaseChannel):
            name = "incomplete"

            async def start(self):
                pass

            async def stop(self):
                pass

            async def send_direct(self, recipient, text):
                pass

        with pytest.raises(TypeError):
            Incomplete({})

    def test_missing_send_direct_method(self):
        class Incomplete(BaseChannel):
            name = "incomplete"

            async def start(self):
                pass

            async def stop(self):
                pass

            async def broadcast(self, text):
                pass

        with pytest.raises(TypeError):
            Incomplete({})


# =====================================================================
# Channel Registry tests
# =====================================================================
class TestChannelRegistry:
    def test_console_always_available(self):
        from afkguard.channels import get_available_channels

        assert "console" in get_available_channels()

    def test_console_always_ready(self):
        from afkguard.channels import get_ready_channels

        assert "console" in get_ready_channels()

    def test_discord_not_ready_without_token(self, monkeypatch):
        from afkguard.channels import get_ready_channels

        monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
        assert "discord" not in get_ready_channels()

    def test_create_unknown_channel_raises(self):
        from afkguard.channels import create_channel

        with pytest.raises(ValueError, match="Unknown channel"):
            create_channel("carrier-pigeon")

    def test_create_console_channel(self):
        from afkguard.channels import create_channel

        ch = create_channel("console", {"level": "INFO"}, on_message=lambda *a: "ok")
        assert ch.name == "console"
        assert ch.level == logging.INFO


# =====================================================================
# Credential resolution
# =====================================================================
class TestCredentials:
    def test_env_wins_over_config(self, monkeypatch):
        from afkguard.auth import resolve_channel_credentials

        monkeypatch.setenv("DISCORD_BOT_TOKEN", "from-env")
        creds = resolve_channel_credentials("discord", {"bot_token": "from-config"})
        assert creds["bot_token"] == "from-env"

    def test_config_fallback(self, monkeypatch):
        from afkguard.auth import resolve_channel_credentials

        monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
        monkeypatch.delenv("DISCORD_CHANNEL_ID", raising=False)
        creds = resolve_channel_credentials("discord", {"bot_token": "cfg", "channel_id": 99})
        assert creds == {"bot_token": "cfg", "channel_id": "99"}

    def test_env_name_set(self, monkeypatch):
        from afkguard.auth import env_name_set

        monkeypatch.setenv("TRUSTED_PLAYERS", "Alice, Bob,,")
        assert env_name_set("TRUSTED_PLAYERS") == {"Alice", "Bob"}


# =====================================================================
# Console channel
# =====================================================================
class TestConsoleChannel:
    def test_direct_and_broadcast_are_logged(self, caplog):
        from afkguard.channels.console_channel import ConsoleChannel

        ch = ConsoleChannel({"level": "WARNING"})
        with caplog.at_level(logging.WARNING, logger="AfkGuard.Channel.console"):
            _run(ch.deliver(OPERATOR, "line one\nline two"))
            _run(ch.broadcast("to everyone"))
        assert "-> alice: line one | line two" in caplog.text
        assert "-> *: to everyone" in caplog.text

    def test_unknown_level_falls_back_to_warning(self):
        from afkguard.channels.console_channel import ConsoleChannel

        assert ConsoleChannel({"level": "LOUD"}).level == logging.WARNING


# =====================================================================
# Discord channel (client mocked)
# =====================================================================
class TestDiscordChannel:
    def _channel(self, channel_id=555):
        from afkguard.channels.discord_channel import DiscordChannel

        ch = DiscordChannel.__new__(DiscordChannel)
        BaseChannel.__init__(ch, {})
        ch.channel_id = channel_id
        ch.client = MagicMock()
        return ch

    def test_requires_discord_py(self):
        from afkguard.channels import discord_channel

        with patch.object(discord_channel, "HAS_DISCORD", False):
            with pytest.raises(ImportError, match="discord.py"):
                discord_channel.DiscordChannel({"bot_token": "t"})

    def test_send_direct_uses_cached_user(self):
        ch = self._channel()
        user = MagicMock()
        user.send = AsyncMock()
        ch.client.get_user.return_value = user
        _run(ch.send_direct(OPERATOR, "hello"))
        ch.client.get_user.assert_called_once_with(1234)
        user.send.assert_awaited_once_with("hello")

    def test_send_direct_fetches_unknown_user(self):
        ch = self._channel()
        user = MagicMock()
        user.send = AsyncMock()
        ch.client.get_user.return_value = None
        ch.client.fetch_user = AsyncMock(return_value=user)
        _run(ch.send_direct(OPERATOR, "x" * 2500))
        assert user.send.await_count == 2

    def test_closed_dm_falls_back_to_control_channel(self):
        ch = self._channel()
        user = MagicMock()
        user.send = AsyncMock(side_effect=RuntimeError("Cannot send messages to this user"))
        control = MagicMock()
        control.send = AsyncMock()
        ch.client.get_user.return_value = user
        ch.client.get_channel.return_value = control
        assert _run(ch.deliver(OPERATOR, "auth link")) is True
        sent = control.send.await_args.args[0]
        assert sent.startswith("⚠️ Failed to reach <@1234> directly.")
        ch.client.get_channel.assert_called_once_with(555)

    def test_broadcast_without_channel_id_fails_cleanly(self):
        ch = self._channel(channel_id=None)
        assert _run(ch.deliver(None, "hello")) is False
