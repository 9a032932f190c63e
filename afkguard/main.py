"""
AfkGuard Runtime - The main entry point.
Ties the session driver, the connection supervisor, the safety monitor and
the operator notification channel together on one asyncio event loop.
"""

import argparse
import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Optional

import yaml

from afkguard.auth import load_dotenv_if_available
from afkguard.channels import create_channel
from afkguard.channels.base import BaseChannel
from afkguard.commands import CommandRouter
from afkguard.config_validation import log_validation_result
from afkguard.drivers import get_driver
from afkguard.errors import ConfigError
from afkguard.supervisor import ConnectionSupervisor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("AfkGuard")

DEFAULT_CONFIG_PATH = "afkguard.yaml"


def set_log_level(level: Optional[str] = None) -> None:
    """Apply ``--log-level`` or ``AFKGUARD_LOG_LEVEL`` to the root logger."""
    level = (level or os.getenv("AFKGUARD_LOG_LEVEL", "")).upper()
    if not level:
        return
    value = logging.getLevelName(level)
    if isinstance(value, int):
        logging.getLogger().setLevel(value)
    else:
        logger.warning("Unknown log level '%s'; keeping current level", level)


# ---------------------------------------------------------------------------
# Config loader
# ---------------------------------------------------------------------------
def load_config(path: str) -> dict:
    """Loads and validates the AfkGuard configuration.

    Raises:
        ConfigError: the file is missing, unparseable or invalid.
    """
    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc

    if not log_validation_result(config, label=path):
        raise ConfigError(f"Invalid config: {path}")
    session = config.get("session", {})
    logger.info(f"Loaded Configuration: {session.get('host')}:{session.get('port', 25565)}")
    return config


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------
@dataclass
class Runtime:
    supervisor: ConnectionSupervisor
    channel: BaseChannel
    router: CommandRouter


def build_runtime(config: dict) -> Runtime:
    """Create the driver, channel, supervisor and command router from *config*."""
    notifications = config.get("notifications", {}) or {}
    channel_name = notifications.get("channel", "console")
    channel_cfg = notifications.get(channel_name, {}) or {}

    channel = create_channel(channel_name, config=channel_cfg)
    driver = get_driver(config)
    supervisor = ConnectionSupervisor(driver, channel, config)
    router = CommandRouter(supervisor)
    channel.set_message_handler(router)
    logger.info(f"Runtime ready: driver={driver.name}, channel={channel.name}")
    return Runtime(supervisor=supervisor, channel=channel, router=router)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _graceful_shutdown(sig_name: str) -> None:
        if stop.is_set():
            logger.warning(f"Received {sig_name} again - forcing exit.")
            raise SystemExit(1)
        logger.info(f"Received {sig_name}. Shutting down gracefully...")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _graceful_shutdown, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(stop.set))


async def run(config: dict, connect: bool = False, stop: Optional[asyncio.Event] = None) -> None:
    """Run until *stop* is set (or SIGINT/SIGTERM)."""
    runtime = build_runtime(config)
    stop = stop or asyncio.Event()
    _install_signal_handlers(stop)

    await runtime.channel.start()
    try:
        if connect or (config.get("session", {}) or {}).get("auto_connect", False):
            result = runtime.supervisor.request_connect()
            logger.info(f"Auto-connect: {result.code}")
        await stop.wait()
    finally:
        await runtime.supervisor.shutdown()
        try:
            await runtime.channel.stop()
        except Exception as exc:
            logger.warning(f"Error stopping channel {runtime.channel.name}: {exc}")
        logger.info("AfkGuard stopped")


def main():
    parser = argparse.ArgumentParser(description="AfkGuard Runtime")
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the AfkGuard YAML config",
    )
    parser.add_argument(
        "--connect",
        action="store_true",
        help="Connect immediately instead of waiting for an operator command",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args()

    load_dotenv_if_available()
    set_log_level(args.log_level)
    config = load_config(args.config)
    asyncio.run(run(config, connect=args.connect))


if __name__ == "__main__":
    main()
