"""
AfkGuard world model -- what the supervisor knows about the joined world.

A :class:`WorldContext` exists only while the session is CONNECTED. It is
created on ``spawn``, refreshed by movement/entity events, and dropped on
any exit from CONNECTED so nothing from a dead session leaks into the next.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

MAX_HEALTH = 20.0


@dataclass(frozen=True)
class Position:
    """A point in world coordinates (blocks)."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def distance_to(self, other: "Position") -> float:
        return math.sqrt(
            (self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2
        )

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}

    def rounded(self) -> Dict[str, int]:
        return {"x": round(self.x), "y": round(self.y), "z": round(self.z)}

    @classmethod
    def from_value(cls, value: Any) -> Optional["Position"]:
        """Build a Position from a ``{"x", "y", "z"}`` dict or a 3-sequence.

        Returns None for anything that does not carry three numbers.
        """
        if value is None:
            return None
        if isinstance(value, Position):
            return value
        try:
            if isinstance(value, dict):
                return cls(float(value["x"]), float(value["y"]), float(value["z"]))
            x, y, z = value
            return cls(float(x), float(y), float(z))
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class EntityInfo:
    """Another player known to the session."""

    username: str
    position: Optional[Position] = None
    entity_type: str = "player"


@dataclass
class WorldContext:
    """Live state of the joined world. Owned by the supervisor."""

    username: str = ""
    dimension: str = "unknown"
    position: Position = field(default_factory=Position)
    health: float = MAX_HEALTH
    players: Dict[str, EntityInfo] = field(default_factory=dict)

    def upsert_player(self, username: str, position: Optional[Position] = None) -> EntityInfo:
        info = self.players.get(username)
        if info is None:
            info = EntityInfo(username=username, position=position)
            self.players[username] = info
        elif position is not None:
            info.position = position
        return info

    def remove_player(self, username: str) -> bool:
        return self.players.pop(username, None) is not None

    def others(self):
        """Yield every known player other than ourselves that has a position."""
        for name, info in self.players.items():
            if name == self.username or info.position is None:
                continue
            yield info

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "dimension": self.dimension,
            "position": self.position.to_dict(),
            "health": self.health,
            "players": sorted(self.players),
        }
