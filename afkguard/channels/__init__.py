"""
AfkGuard Channel Registry.
Discovers and creates notification channel integrations.
"""

import logging
from typing import Callable, Dict, List, Optional

from afkguard.auth import check_channel_ready, resolve_channel_credentials

__all__ = [
    "create_channel",
    "get_available_channels",
    "get_ready_channels",
]

logger = logging.getLogger("AfkGuard.Channels")

# Registry of channel name -> class (lazy-populated)
_CHANNEL_CLASSES: Dict[str, type] = {}


def _register_builtin_channels():
    """Import and register all built-in channel implementations."""
    from afkguard.channels.console_channel import ConsoleChannel

    _CHANNEL_CLASSES["console"] = ConsoleChannel

    try:
        from afkguard.channels.discord_channel import HAS_DISCORD, DiscordChannel

        if HAS_DISCORD:
            _CHANNEL_CLASSES["discord"] = DiscordChannel
        else:
            logger.debug("Discord channel unavailable (discord.py not installed)")
    except ImportError:
        logger.debug("Discord channel unavailable (discord.py not installed)")


def get_available_channels() -> List[str]:
    """Return names of channels whose SDKs are installed."""
    if not _CHANNEL_CLASSES:
        _register_builtin_channels()
    return list(_CHANNEL_CLASSES.keys())


def get_ready_channels() -> List[str]:
    """Return names of channels that are both installed and have credentials configured."""
    return [ch for ch in get_available_channels() if check_channel_ready(ch)]


def create_channel(
    name: str,
    config: Optional[dict] = None,
    on_message: Optional[Callable] = None,
):
    """Factory: instantiate a channel by name.

    Args:
        name: Channel name (console, discord).
        config: Optional extra config dict.  Credentials are auto-resolved
                from environment variables and merged.
        on_message: Callback(channel_name, chat_id, text) -> reply_str.
    """
    if not _CHANNEL_CLASSES:
        _register_builtin_channels()

    cls = _CHANNEL_CLASSES.get(name.lower())
    if cls is None:
        raise ValueError(f"Unknown channel '{name}'. Available: {list(_CHANNEL_CLASSES.keys())}")

    merged = dict(config or {})
    merged.update(resolve_channel_credentials(name, config))
    return cls(merged, on_message=on_message)
