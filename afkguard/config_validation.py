"""Config validation for AfkGuard.

Validates a loaded ``afkguard.yaml`` before the supervisor or driver tries to
use it. Call :func:`validate_config` early in startup to fail fast with a
helpful message instead of a ``KeyError`` deep inside a session.
"""

from __future__ import annotations

import logging
from typing import Any, List, Tuple

logger = logging.getLogger("AfkGuard.ConfigValidation")

# Blocks that must be mappings when present
MAPPING_BLOCKS: List[str] = ["session", "reconnect", "safety", "notifications", "driver"]

KNOWN_DRIVER_TYPES = ("simulation", "mock", "subprocess")
KNOWN_CHANNELS = ("console", "discord")
KNOWN_AUTH_MODES = ("microsoft", "offline")
RECONNECT_STRATEGIES = ("linear", "exponential")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_non_negative(block: dict, prefix: str, keys: List[str], errors: List[str]) -> None:
    for key in keys:
        if key in block and block[key] is not None:
            if not _is_number(block[key]) or block[key] < 0:
                errors.append(f"'{prefix}.{key}' must be a number >= 0")


def _check_point(value: Any) -> bool:
    if isinstance(value, dict):
        return all(_is_number(value.get(axis)) for axis in ("x", "y", "z"))
    return isinstance(value, (list, tuple)) and len(value) == 3 and all(_is_number(v) for v in value)


def validate_config(config: dict) -> Tuple[bool, List[str]]:
    """Validate a loaded AfkGuard config dict.

    Returns:
        A ``(is_valid, errors)`` tuple. ``is_valid`` is ``True`` only when
        ``errors`` is empty.

    Example::

        ok, errors = validate_config(config)
        if not ok:
            for msg in errors:
                logger.error("Config error: %s", msg)
    """
    if not isinstance(config, dict):
        return False, ["Config must be a dict (check YAML syntax)"]

    errors: List[str] = []

    for key in MAPPING_BLOCKS:
        if key in config and config[key] is not None and not isinstance(config[key], dict):
            errors.append(f"'{key}' must be a mapping (dict), not a scalar")

    # ── session ───────────────────────────────────────────────────────────────
    session = config.get("session")
    if not isinstance(session, dict):
        if "session" not in config:
            errors.append("Missing required top-level key: 'session'")
    else:
        if not session.get("host"):
            errors.append("Missing or empty required key: 'session.host'")
        port = session.get("port", 25565)
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
            errors.append("'session.port' must be an integer between 1 and 65535")
        auth = session.get("auth", "microsoft")
        if auth not in KNOWN_AUTH_MODES:
            errors.append(f"'session.auth' must be one of {list(KNOWN_AUTH_MODES)}")
        _check_non_negative(session, "session", ["connect_timeout_s", "spawn_chat_delay_s"], errors)
        spawn_chat = session.get("spawn_chat")
        if spawn_chat is not None and (
            not isinstance(spawn_chat, list) or not all(isinstance(s, str) for s in spawn_chat)
        ):
            errors.append("'session.spawn_chat' must be a list of strings")

    # ── reconnect ─────────────────────────────────────────────────────────────
    reconnect = config.get("reconnect")
    if isinstance(reconnect, dict):
        max_attempts = reconnect.get("max_attempts", 1)
        if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
            errors.append("'reconnect.max_attempts' must be an integer >= 1")
        _check_non_negative(reconnect, "reconnect", ["base_delay_s", "max_delay_s"], errors)
        if reconnect.get("strategy", "linear") not in RECONNECT_STRATEGIES:
            errors.append(f"'reconnect.strategy' must be one of {list(RECONNECT_STRATEGIES)}")

    # ── safety ────────────────────────────────────────────────────────────────
    safety = config.get("safety")
    if isinstance(safety, dict):
        _check_non_negative(
            safety,
            "safety",
            [
                "proximity_radius",
                "threat_radius",
                "min_health",
                "auto_disconnect_health",
                "alert_cooldown",
                "health_grace_delay",
                "threat_grace_delay",
                "block_break_radius",
                "block_break_alert_radius",
            ],
            errors,
        )
        poll = safety.get("poll_interval", 10)
        if not _is_number(poll) or poll <= 0:
            errors.append("'safety.poll_interval' must be a number > 0")
        history = safety.get("history_size", 50)
        if not isinstance(history, int) or isinstance(history, bool) or history < 1:
            errors.append("'safety.history_size' must be an integer >= 1")
        for key in ("trusted_players", "blocked_players"):
            if safety.get(key) is not None and not isinstance(safety[key], list):
                errors.append(f"'safety.{key}' must be a list of player names")
        zone = safety.get("spawn_protection_zone")
        if zone is not None:
            if not isinstance(zone, dict):
                errors.append("'safety.spawn_protection_zone' must be a mapping")
            elif "center" in zone:
                if not _check_point(zone["center"]) or not _is_number(zone.get("radius")):
                    errors.append("'safety.spawn_protection_zone' needs center [x, y, z] and radius")
            elif not (_check_point(zone.get("min")) and _check_point(zone.get("max"))):
                errors.append("'safety.spawn_protection_zone' needs min and max corners [x, y, z]")

    # ── safety vs reconnect ───────────────────────────────────────────────────
    # Grace delays must run out before the first retry or the withdrawal is dropped
    if isinstance(safety, (dict, type(None))) and isinstance(reconnect, (dict, type(None))):
        base_delay = (reconnect or {}).get("base_delay_s", 15)
        if _is_number(base_delay) and base_delay >= 0:
            for key, default in (("health_grace_delay", 0.5), ("threat_grace_delay", 1.0)):
                grace = (safety or {}).get(key, default)
                if _is_number(grace) and grace > base_delay:
                    errors.append(
                        f"'safety.{key}' ({grace:g}s) must not exceed "
                        f"'reconnect.base_delay_s' ({base_delay:g}s)"
                    )

    # ── driver ────────────────────────────────────────────────────────────────
    driver = config.get("driver")
    if isinstance(driver, dict) and not driver.get("class"):
        driver_type = driver.get("type", "simulation")
        if driver_type not in KNOWN_DRIVER_TYPES:
            errors.append(
                f"Unknown driver type '{driver_type}' (expected one of {list(KNOWN_DRIVER_TYPES)} "
                "or a 'class' path)"
            )
        elif driver_type == "subprocess" and not driver.get("command"):
            errors.append("'driver.command' is required for the subprocess driver")

    # ── notifications ─────────────────────────────────────────────────────────
    notifications = config.get("notifications")
    if isinstance(notifications, dict):
        channel = notifications.get("channel", "console")
        if channel not in KNOWN_CHANNELS:
            errors.append(f"'notifications.channel' must be one of {list(KNOWN_CHANNELS)}")

    return len(errors) == 0, errors


def log_validation_result(config: dict, label: str = "AfkGuard config") -> bool:
    """Validate *config* and log each error. Returns True if valid."""
    ok, errors = validate_config(config)
    if ok:
        logger.debug("%s validation passed", label)
    else:
        for msg in errors:
            logger.error("%s validation error: %s", label, msg)
    return ok
