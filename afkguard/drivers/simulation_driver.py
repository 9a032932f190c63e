"""Simulation driver for AfkGuard.

Runs a session entirely in memory, with no game client and no network. Used
by the test-suite and for dry runs of a configuration (``afkguard run`` with
``driver.type: simulation``).

Events are injected either by calling :meth:`SimulationDriver.emit` directly
or by a ``script`` played back after ``open()``::

    driver:
      type: simulation
      script:
        - {after_s: 0.5, diagnostic: "To sign in, enter code ABCD-1234 at https://microsoft.com/link"}
        - {after_s: 2.0, event: login}
        - {after_s: 2.5, event: spawn, data: {health: 20, position: [0, 64, 0]}}
        - {after_s: 30, event: player_joined, data: {username: Steve, position: [10, 64, 0]}}
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from afkguard.drivers.base import (
    ClientEvent,
    DiagnosticSink,
    EventCallback,
    SessionDriver,
    SessionParams,
)
from afkguard.errors import DriverError

logger = logging.getLogger("AfkGuard.SimulationDriver")


class SimulationDriver(SessionDriver):
    """In-memory session driver.

    Records everything the supervisor asks of it (``opened``, ``chats``,
    ``close_count``) so tests can assert on driver I/O.
    """

    name = "simulation"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.fail_on_open: bool = bool(self.config.get("fail_on_open", False))
        self.script: List[Dict[str, Any]] = list(self.config.get("script", []))
        self.has_auth_cache: bool = bool(self.config.get("auth_cache", False))

        self.opened: List[SessionParams] = []
        self.chats: List[str] = []
        self.close_count = 0
        self.auth_cache_clears = 0

        self._on_event: Optional[EventCallback] = None
        self._on_diagnostic: Optional[DiagnosticSink] = None
        self._script_handles: List[asyncio.TimerHandle] = []

    @property
    def active(self) -> bool:
        return self._on_event is not None

    @property
    def open_count(self) -> int:
        return len(self.opened)

    def open(
        self,
        params: SessionParams,
        on_event: EventCallback,
        on_diagnostic: DiagnosticSink,
    ) -> None:
        if self.fail_on_open:
            raise DriverError("simulated open failure")
        if self.active:
            raise DriverError("A simulated session is already open")
        self.opened.append(params)
        self._on_event = on_event
        self._on_diagnostic = on_diagnostic
        logger.info("Simulated session opened for %s:%s", params.host, params.port)
        if self.script:
            self._play_script()

    def _play_script(self) -> None:
        loop = asyncio.get_running_loop()
        for step in self.script:
            delay = float(step.get("after_s", 0.0))
            if "diagnostic" in step:
                handle = loop.call_later(delay, self.emit_diagnostic, str(step["diagnostic"]))
            else:
                handle = loop.call_later(
                    delay, lambda s=step: self.emit(s["event"], **dict(s.get("data", {})))
                )
            self._script_handles.append(handle)

    def emit(self, kind: str, **data: Any) -> bool:
        """Deliver a client event into the open session. Returns False when closed."""
        if self._on_event is None:
            return False
        self._on_event(ClientEvent(kind=kind, data=data))
        return True

    def emit_diagnostic(self, line: str) -> bool:
        if self._on_diagnostic is None:
            return False
        self._on_diagnostic(line)
        return True

    def chat(self, text: str) -> None:
        if not self.active:
            raise DriverError("No simulated session is open")
        self.chats.append(text)
        logger.debug("Simulated chat: %s", text)

    def close(self) -> None:
        if not self.active:
            return
        for handle in self._script_handles:
            handle.cancel()
        self._script_handles.clear()
        self._on_event = None
        self._on_diagnostic = None
        self.close_count += 1
        logger.info("Simulated session closed")

    def clear_auth_cache(self) -> bool:
        self.auth_cache_clears += 1
        removed = self.has_auth_cache
        self.has_auth_cache = False
        return removed
