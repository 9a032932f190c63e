"""Error types and the operator-facing command result envelope.

Internal failures raise subclasses of :class:`SupervisorError`. Anything that
goes back to an operator is a :class:`CommandResult`, which shares the
``{"ok", "code", "message"}`` shape used by every command surface::

    result = supervisor.send_chat("hello")
    if not result.ok:
        logger.warning("chat rejected: %s", result.code)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict


class SupervisorError(Exception):
    """Base class for AfkGuard errors."""


class SchedulerError(SupervisorError):
    """A timer slot was armed while it already had a pending timer."""


class DriverError(SupervisorError):
    """The session driver could not open, drive, or close a session."""


class ConfigError(SupervisorError):
    """The loaded configuration is unusable."""


# Result codes
OK = "OK"
CONNECTING = "CONNECTING"
IN_PROGRESS = "IN_PROGRESS"
ALREADY_CONNECTED = "ALREADY_CONNECTED"
NOT_CONNECTED = "NOT_CONNECTED"
DISCONNECTED = "DISCONNECTED"
INVALID_MESSAGE = "INVALID_MESSAGE"
SEND_FAILED = "SEND_FAILED"
AUTH_CLEARED = "AUTH_CLEARED"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an operator command."""

    ok: bool
    code: str = OK
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def accepted(cls, code: str = OK, message: str = "") -> "CommandResult":
        return cls(True, code, message)

    @classmethod
    def rejected(cls, code: str, message: str = "") -> "CommandResult":
        return cls(False, code, message)
