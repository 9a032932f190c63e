"""
Safety thresholds and trust lists.

YAML config format::

    safety:
      enabled: true
      proximity_radius: 50        # blocks; players inside are "nearby"
      threat_radius: null         # null = every nearby untrusted player is a threat
      min_health: 10              # low-health warning at or below (out of 20)
      auto_disconnect_health: 6   # withdraw at or below
      auto_disconnect_on_threat: true
      alert_cooldown: 30          # seconds between proximity / low-health alerts
      health_grace_delay: 0.5     # seconds between critical alert and disconnect
                                  # (grace delays must not exceed reconnect.base_delay_s)
      threat_grace_delay: 1.0
      poll_interval: 10
      trusted_players: [Alice]
      blocked_players: []
      spawn_protection_zone:
        min: [-16, 0, -16]
        max: [16, 320, 16]

``TRUSTED_PLAYERS`` and ``BLOCKED_PLAYERS`` (comma-separated) are merged into
the configured lists.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from afkguard.auth import env_name_set
from afkguard.errors import ConfigError
from afkguard.world import Position

logger = logging.getLogger("AfkGuard.Safety.Config")


# ---------------------------------------------------------------------------
# Spawn protection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SpawnZone:
    """Axis-aligned box in which proximity threats are ignored."""

    min_corner: Position
    max_corner: Position

    def contains(self, pos: Position) -> bool:
        return (
            self.min_corner.x <= pos.x <= self.max_corner.x
            and self.min_corner.y <= pos.y <= self.max_corner.y
            and self.min_corner.z <= pos.z <= self.max_corner.z
        )

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> Optional["SpawnZone"]:
        """Build from ``{min, max}`` corners or ``{center, radius}``.

        Raises:
            ConfigError: the block is present but malformed.
        """
        if not cfg:
            return None
        if "center" in cfg:
            center = Position.from_value(cfg["center"])
            try:
                radius = float(cfg.get("radius", 0))
            except (TypeError, ValueError):
                radius = -1.0
            if center is None or radius < 0:
                raise ConfigError("spawn_protection_zone needs a center [x, y, z] and radius >= 0")
            return cls(
                Position(center.x - radius, center.y - radius, center.z - radius),
                Position(center.x + radius, center.y + radius, center.z + radius),
            )
        lo = Position.from_value(cfg.get("min"))
        hi = Position.from_value(cfg.get("max"))
        if lo is None or hi is None:
            raise ConfigError("spawn_protection_zone needs min and max corners [x, y, z]")
        # Accept corners in either order
        return cls(
            Position(min(lo.x, hi.x), min(lo.y, hi.y), min(lo.z, hi.z)),
            Position(max(lo.x, hi.x), max(lo.y, hi.y), max(lo.z, hi.z)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"min": self.min_corner.to_dict(), "max": self.max_corner.to_dict()}


# ---------------------------------------------------------------------------
# Safety config
# ---------------------------------------------------------------------------


@dataclass
class SafetyConfig:
    """Process-wide safety settings. The monitor takes a snapshot per session."""

    enabled: bool = True
    proximity_radius: float = 50.0
    threat_radius: Optional[float] = None
    min_health: float = 10.0
    auto_disconnect_health: float = 6.0
    auto_disconnect_on_threat: bool = True
    alert_cooldown: float = 30.0
    health_grace_delay: float = 0.5
    threat_grace_delay: float = 1.0
    poll_interval: float = 10.0
    trusted_players: Set[str] = field(default_factory=set)
    blocked_players: Set[str] = field(default_factory=set)
    spawn_protection_zone: Optional[SpawnZone] = None
    block_break_radius: float = 10.0
    block_break_alert_radius: float = 5.0
    log_all_events: bool = True
    history_size: int = 50

    @classmethod
    def from_config(cls, config: dict, use_env: bool = True) -> "SafetyConfig":
        """Build from the ``safety`` block of a loaded config."""
        cfg = config.get("safety", {}) or {}
        threat = cfg.get("threat_radius")
        trusted = set(cfg.get("trusted_players", []) or [])
        blocked = set(cfg.get("blocked_players", []) or [])
        if use_env:
            trusted |= env_name_set("TRUSTED_PLAYERS")
            blocked |= env_name_set("BLOCKED_PLAYERS")
        try:
            return cls(
                enabled=bool(cfg.get("enabled", True)),
                proximity_radius=float(cfg.get("proximity_radius", 50.0)),
                threat_radius=float(threat) if threat is not None else None,
                min_health=float(cfg.get("min_health", 10.0)),
                auto_disconnect_health=float(cfg.get("auto_disconnect_health", 6.0)),
                auto_disconnect_on_threat=bool(cfg.get("auto_disconnect_on_threat", True)),
                alert_cooldown=float(cfg.get("alert_cooldown", 30.0)),
                health_grace_delay=float(cfg.get("health_grace_delay", 0.5)),
                threat_grace_delay=float(cfg.get("threat_grace_delay", 1.0)),
                poll_interval=float(cfg.get("poll_interval", 10.0)),
                trusted_players=trusted,
                blocked_players=blocked - trusted,
                spawn_protection_zone=SpawnZone.from_config(cfg.get("spawn_protection_zone")),
                block_break_radius=float(cfg.get("block_break_radius", 10.0)),
                block_break_alert_radius=float(cfg.get("block_break_alert_radius", 5.0)),
                log_all_events=bool(cfg.get("log_all_events", True)),
                history_size=int(cfg.get("history_size", 50)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid safety config: {exc}") from exc

    @property
    def effective_threat_radius(self) -> float:
        if self.threat_radius is None:
            return self.proximity_radius
        return min(self.threat_radius, self.proximity_radius)

    @property
    def tiered(self) -> bool:
        """True when only players inside a tighter radius count as threats."""
        return self.effective_threat_radius < self.proximity_radius

    # Trust list edits -------------------------------------------------------

    def trust(self, name: str) -> bool:
        """Add *name* to the trusted list (and drop it from blocked). False if already trusted."""
        if name in self.trusted_players:
            return False
        self.trusted_players.add(name)
        self.blocked_players.discard(name)
        logger.info("Trusted player added: %s", name)
        return True

    def untrust(self, name: str) -> bool:
        if name not in self.trusted_players:
            return False
        self.trusted_players.discard(name)
        logger.info("Trusted player removed: %s", name)
        return True

    def block(self, name: str) -> bool:
        if name in self.blocked_players:
            return False
        self.blocked_players.add(name)
        self.trusted_players.discard(name)
        logger.info("Blocked player added: %s", name)
        return True

    def unblock(self, name: str) -> bool:
        if name not in self.blocked_players:
            return False
        self.blocked_players.discard(name)
        logger.info("Blocked player removed: %s", name)
        return True

    def snapshot(self) -> "SafetyConfig":
        """Independent copy for one session."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "proximity_radius": self.proximity_radius,
            "threat_radius": self.threat_radius,
            "min_health": self.min_health,
            "auto_disconnect_health": self.auto_disconnect_health,
            "auto_disconnect_on_threat": self.auto_disconnect_on_threat,
            "alert_cooldown": self.alert_cooldown,
            "health_grace_delay": self.health_grace_delay,
            "threat_grace_delay": self.threat_grace_delay,
            "poll_interval": self.poll_interval,
            "trusted_players": sorted(self.trusted_players),
            "blocked_players": sorted(self.blocked_players),
            "spawn_protection_zone": (
                self.spawn_protection_zone.to_dict() if self.spawn_protection_zone else None
            ),
            "block_break_radius": self.block_break_radius,
            "block_break_alert_radius": self.block_break_alert_radius,
            "log_all_events": self.log_all_events,
            "history_size": self.history_size,
        }
