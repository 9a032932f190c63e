"""
Session driver contract.

A driver is the adapter between AfkGuard and the underlying game client. It
is never asked to speak the game protocol itself; it only has to:

* open one session for a :class:`SessionParams`, reporting lifecycle and
  telemetry as :class:`ClientEvent` values through ``on_event``;
* feed every unstructured diagnostic line (the client's console output,
  which is where device-login prompts appear) to ``on_diagnostic``;
* send chat, and close the session on request.

Both callbacks must be invoked on the event loop thread. After ``close()``
a driver must not invoke callbacks from the closed session; the supervisor
additionally binds every callback to a session generation and drops late
ones.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

__all__ = [
    "ClientEvent",
    "DiagnosticSink",
    "EventCallback",
    "LIFECYCLE_EVENTS",
    "SessionDriver",
    "SessionParams",
    "TELEMETRY_EVENTS",
]

LIFECYCLE_EVENTS = frozenset({"login", "spawn", "end", "error", "kicked"})
TELEMETRY_EVENTS = frozenset(
    {
        "health",
        "move",
        "respawn",
        "player_joined",
        "player_left",
        "entity_moved",
        "block_broken",
        "message",
    }
)

# Events that end a session
EXIT_EVENTS = frozenset({"end", "error", "kicked"})


@dataclass(frozen=True)
class SessionParams:
    """Where and how to open a session."""

    host: str
    port: int = 25565
    version: str = "1.21.4"
    auth: str = "microsoft"
    username: Optional[str] = None

    @classmethod
    def from_config(cls, config: dict) -> "SessionParams":
        cfg = config.get("session", {})
        return cls(
            host=cfg.get("host", "localhost"),
            port=int(cfg.get("port", 25565)),
            version=str(cfg.get("version", "1.21.4")),
            auth=cfg.get("auth", "microsoft"),
            username=cfg.get("username"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "version": self.version,
            "auth": self.auth,
            "username": self.username,
        }


@dataclass
class ClientEvent:
    """One callback from the underlying client."""

    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_exit(self) -> bool:
        return self.kind in EXIT_EVENTS

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


EventCallback = Callable[[ClientEvent], None]
DiagnosticSink = Callable[[str], None]


class SessionDriver(ABC):
    """Abstract base class for session drivers."""

    name: str = "base"

    def __init__(self, config: Optional[dict] = None):
        self.config: dict = config or {}

    @abstractmethod
    def open(
        self,
        params: SessionParams,
        on_event: EventCallback,
        on_diagnostic: DiagnosticSink,
    ) -> None:
        """Start creating a session. Must return without blocking the loop.

        Raises:
            DriverError: the session could not even be started.
        """

    @abstractmethod
    def chat(self, text: str) -> None:
        """Send a chat line into the live session."""

    @abstractmethod
    def close(self) -> None:
        """Terminate the session. Idempotent."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """True while a session is open."""

    def clear_auth_cache(self) -> bool:
        """Drop any cached login tokens. Returns True if something was removed."""
        return False

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "driver": self.name, "active": self.active, "error": None}
