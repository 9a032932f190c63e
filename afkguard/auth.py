"""
AfkGuard credential and environment resolution.

Credentials for notification channels and a few list-valued overrides are
resolved in layers:

    1. Explicit environment variable
    2. .env file (loaded via python-dotenv)
    3. YAML config fallback
"""

import logging
import os
from typing import Dict, List, Optional, Set

from dotenv import load_dotenv

logger = logging.getLogger("AfkGuard.Auth")

# Map of channel name -> list of (env var, config key) tuples
CHANNEL_AUTH_MAP: Dict[str, list] = {
    "console": [],
    "discord": [
        ("DISCORD_BOT_TOKEN", "bot_token"),
        ("DISCORD_CHANNEL_ID", "channel_id"),
    ],
}

# Keys a channel cannot start without
_REQUIRED_KEYS: Dict[str, List[str]] = {
    "console": [],
    "discord": ["bot_token"],
}


def load_dotenv_if_available(path: Optional[str] = None) -> bool:
    """Load ``~/.afkguard/env`` and the local ``.env`` without overriding the shell."""
    loaded = False
    home_env = os.path.expanduser("~/.afkguard/env")
    if os.path.exists(home_env):
        loaded = load_dotenv(home_env, override=False) or loaded
        logger.debug("Loaded ~/.afkguard/env")
    loaded = load_dotenv(path, override=False) or loaded
    return loaded


def resolve_channel_credentials(channel: str, config: Optional[Dict] = None) -> Dict[str, str]:
    """
    Resolve all credentials for the given notification channel.

    Returns a dict of config_key -> value for all resolved credentials.
    Missing keys are omitted.
    """
    entries = CHANNEL_AUTH_MAP.get(channel.lower(), [])
    resolved: Dict[str, str] = {}
    for env_var, config_key in entries:
        value = os.getenv(env_var)
        if value:
            resolved[config_key] = value
        elif config and config.get(config_key):
            resolved[config_key] = str(config[config_key])
    return resolved


def check_channel_ready(channel: str, config: Optional[Dict] = None) -> bool:
    """True when every required credential for *channel* resolves."""
    creds = resolve_channel_credentials(channel, config)
    return all(creds.get(key) for key in _REQUIRED_KEYS.get(channel.lower(), []))


def env_name_set(env_var: str) -> Set[str]:
    """Parse a comma-separated player list from the environment."""
    raw = os.getenv(env_var, "")
    return {name.strip() for name in raw.split(",") if name.strip()}
