"""
AfkGuard connection supervisor -- owns the session lifecycle.

State machine::

    IDLE --connect--> CONNECTING --login--> AUTHENTICATING --spawn--> CONNECTED
      ^                   |                       |                      |
      |                   +------ end / error / kicked / timeout --------+
      |                                           v
      +------------- intent false ------------ ENDING --retry timer--> CONNECTING

Everything here runs on the asyncio loop thread: driver callbacks, timers and
operator commands are non-overlapping reactions, so no state is locked. Alert
delivery runs as detached tasks and never blocks event handling.

Every driver callback is bound to the session generation it was registered
for. Tearing a session down bumps the generation, so anything a dead session
still emits is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from afkguard.alerts import AlertDispatcher, AlertEvent, AlertLog, OperatorRef, Severity
from afkguard.auth_bridge import AuthBridge, AuthChallenge
from afkguard.drivers.base import ClientEvent, SessionDriver, SessionParams, TELEMETRY_EVENTS
from afkguard.errors import (
    ALREADY_CONNECTED,
    AUTH_CLEARED,
    CONNECTING,
    DISCONNECTED,
    IN_PROGRESS,
    INVALID_MESSAGE,
    NOT_CONNECTED,
    SEND_FAILED,
    CommandResult,
    ConfigError,
    DriverError,
)
from afkguard.safety import SafetyConfig, SafetyMonitor
from afkguard.scheduler import TaskScheduler
from afkguard.world import MAX_HEALTH, Position, WorldContext

logger = logging.getLogger("AfkGuard.Supervisor")

RECONNECT_SLOT = "session.reconnect"
CONNECT_TIMEOUT_SLOT = "session.connect_timeout"
SPAWN_CHAT_SLOT = "session.spawn_chat"
CHAT_WAIT_SLOT = "session.chat_wait"

_DEFAULT_CONNECT_TIMEOUT = 90.0
_DEFAULT_SPAWN_CHAT_DELAY = 5.0


@dataclass(eq=False)
class _ChatWaiter:
    predicate: Callable[[str], bool]
    future: "asyncio.Future[Optional[str]]"
    slot: str


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    ENDING = "ending"


# ---------------------------------------------------------------------------
# Reconnect policy
# ---------------------------------------------------------------------------


@dataclass
class ReconnectPolicy:
    """Backoff between reconnect attempts.

    ``linear``: ``min(base_delay * attempt, max_delay)``
    ``exponential``: ``min(base_delay * 2 ** (attempt - 1), max_delay)``
    """

    max_attempts: int = 10000
    base_delay: float = 15.0
    max_delay: float = 60.0
    strategy: str = "linear"
    attempt_count: int = 0

    STRATEGIES = ("linear", "exponential")

    def __post_init__(self):
        if self.strategy not in self.STRATEGIES:
            raise ConfigError(
                f"Unknown reconnect strategy '{self.strategy}'. Use one of {self.STRATEGIES}"
            )
        if self.max_attempts < 1:
            raise ConfigError("reconnect.max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("reconnect delays must be >= 0")

    @classmethod
    def from_config(cls, config: dict) -> "ReconnectPolicy":
        cfg = config.get("reconnect", {}) or {}
        try:
            return cls(
                max_attempts=int(cfg.get("max_attempts", 10000)),
                base_delay=float(cfg.get("base_delay_s", 15.0)),
                max_delay=float(cfg.get("max_delay_s", 60.0)),
                strategy=str(cfg.get("strategy", "linear")).lower(),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid reconnect config: {exc}") from exc

    def delay_for(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        if self.strategy == "exponential":
            # Cap the exponent; the result is clamped to max_delay anyway
            raw = self.base_delay * (2 ** min(attempt - 1, 62))
        else:
            raw = self.base_delay * attempt
        return min(raw, self.max_delay)

    def next_delay(self) -> float:
        """Count one more attempt and return its delay."""
        self.attempt_count += 1
        return self.delay_for(self.attempt_count)

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def reset(self) -> None:
        self.attempt_count = 0


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class ConnectionSupervisor:
    """Keeps one game session alive for an operator and withdraws it when unsafe.

    Args:
        driver: Adapter to the underlying game client.
        channel: Notification sink for alerts. ``None`` keeps alerts in the log.
        config: Full loaded config dict (``session``, ``reconnect``, ``safety``).
        safety_config: Overrides the ``safety`` block.
        policy: Overrides the ``reconnect`` block.
        scheduler: Timer/task owner; a new one is created when omitted.
        alert_log: Shared alert history.
        clock: Monotonic time source for safety cooldowns.
    """

    def __init__(
        self,
        driver: SessionDriver,
        channel=None,
        config: Optional[dict] = None,
        *,
        safety_config: Optional[SafetyConfig] = None,
        policy: Optional[ReconnectPolicy] = None,
        scheduler: Optional[TaskScheduler] = None,
        alert_log: Optional[AlertLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or {}
        session_cfg = self.config.get("session", {}) or {}

        self.driver = driver
        self.params = SessionParams.from_config(self.config)
        self.policy = policy or ReconnectPolicy.from_config(self.config)
        self.safety_config = safety_config or SafetyConfig.from_config(self.config)
        self.scheduler = scheduler or TaskScheduler()
        self.alerts = AlertDispatcher(channel, self.scheduler, log=alert_log)

        self.connect_timeout = float(session_cfg.get("connect_timeout_s", _DEFAULT_CONNECT_TIMEOUT))
        self.spawn_chat: List[str] = list(session_cfg.get("spawn_chat", []) or [])
        teleport_user = os.getenv("AUTO_TELEPORT_USER", "").strip()
        if teleport_user:
            self.spawn_chat.append(f"/tpa {teleport_user}")
        self.spawn_chat_delay = float(session_cfg.get("spawn_chat_delay_s", _DEFAULT_SPAWN_CHAT_DELAY))

        self.monitor = SafetyMonitor(
            self.safety_config,
            self.scheduler,
            emit=self.alerts.emit,
            request_disconnect=self._on_safety_withdraw,
            clock=clock,
        )
        self.auth_bridge = AuthBridge(
            self._on_auth_challenge, fallback_url=session_cfg.get("auth_fallback_url")
        )

        self.state = SessionState.IDLE
        self.intent = False
        self.world: Optional[WorldContext] = None
        self.recipient: Optional[OperatorRef] = None
        self.last_exit_reason: Optional[str] = None
        self._connecting = False
        self._generation = 0
        self._chat_waiters: List[_ChatWaiter] = []
        self._chat_wait_seq = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connecting(self) -> bool:
        """True from connect start until the session spawns or ends."""
        return self._connecting

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def generation(self) -> int:
        return self._generation

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.info("Session state: %s -> %s", self.state.value, state.value)
            self.state = state

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def request_connect(self, requested_by: Optional[OperatorRef] = None) -> CommandResult:
        """Ask for the session to be up and kept up."""
        if self.state == SessionState.CONNECTED:
            return CommandResult.rejected(ALREADY_CONNECTED, "Already connected")
        if self._connecting or self.state in (SessionState.CONNECTING, SessionState.AUTHENTICATING):
            logger.info("Connection already in progress, skipping")
            return CommandResult.accepted(IN_PROGRESS, "Connection already in progress")

        # Only an accepted connect takes over alert routing
        if requested_by is not None:
            self.recipient = requested_by
            self.alerts.recipient = requested_by

        self.intent = True
        self.policy.reset()
        self.monitor.cancel_withdraw()
        if self.state == SessionState.ENDING:
            self.scheduler.cancel(RECONNECT_SLOT)
        self._begin_connect()
        return CommandResult.accepted(
            CONNECTING, f"Connecting to {self.params.host}:{self.params.port}"
        )

    def request_disconnect(self, reason: str = "operator") -> CommandResult:
        """Tear the session down and stop reconnecting. Safe to call when idle."""
        was = self.state
        self.intent = False
        self.policy.reset()
        self.scheduler.cancel(RECONNECT_SLOT)
        self._teardown()
        self._set_state(SessionState.IDLE)

        if was == SessionState.IDLE:
            return CommandResult.accepted(DISCONNECTED, "Already disconnected")
        logger.info("Disconnected (%s)", reason)
        self.last_exit_reason = reason
        self.alerts.emit(
            AlertEvent(
                kind="disconnected",
                title="🔌 Disconnected",
                description=f"Session closed: {reason}",
                severity=Severity.INFO,
            ),
            deliver=False,
        )
        return CommandResult.accepted(DISCONNECTED, f"Disconnected ({reason})")

    def send_chat(self, text: str) -> CommandResult:
        if self.state != SessionState.CONNECTED:
            return CommandResult.rejected(NOT_CONNECTED, "Bot is not connected")
        text = (text or "").strip()
        if not text:
            return CommandResult.rejected(INVALID_MESSAGE, "Message is empty")
        try:
            self.driver.chat(text)
        except (DriverError, OSError) as exc:
            logger.error("Failed to send chat: %s", exc)
            return CommandResult.rejected(SEND_FAILED, "Failed to send message")
        logger.info("Chat sent: %s", text)
        return CommandResult.accepted(message=f"Sent: {text}")

    def expect_chat(
        self, predicate: Callable[[str], bool], timeout: float
    ) -> "asyncio.Future[Optional[str]]":
        """Future for the next in-game chat line that satisfies *predicate*.

        Resolves to ``None`` when *timeout* seconds pass first or the session
        ends. Cancelling the future stops the wait. Register before sending
        the chat that provokes the reply so a fast answer is not missed.
        """
        future = asyncio.get_running_loop().create_future()
        self._chat_wait_seq += 1
        waiter = _ChatWaiter(predicate, future, f"{CHAT_WAIT_SLOT}.{self._chat_wait_seq}")
        self._chat_waiters.append(waiter)
        self.scheduler.call_later(waiter.slot, timeout, self._resolve_chat_waiter, waiter, None)
        future.add_done_callback(lambda _f: self._drop_chat_waiter(waiter))
        return future

    @staticmethod
    def _resolve_chat_waiter(waiter: _ChatWaiter, text: Optional[str]) -> None:
        if not waiter.future.done():
            waiter.future.set_result(text)

    def _drop_chat_waiter(self, waiter: _ChatWaiter) -> None:
        if waiter in self._chat_waiters:
            self._chat_waiters.remove(waiter)
        self.scheduler.cancel(waiter.slot)

    def _on_chat(self, text: str) -> None:
        logger.info("[chat] %s", text)
        for waiter in list(self._chat_waiters):
            if not waiter.future.done() and waiter.predicate(text):
                waiter.future.set_result(text)

    def clear_auth(self) -> CommandResult:
        """Drop the live session, any pending challenge and the cached login."""
        if self.state != SessionState.IDLE:
            self.request_disconnect(reason="auth cleared")
        self.auth_bridge.disarm()
        self.recipient = None
        self.alerts.recipient = None
        try:
            removed = self.driver.clear_auth_cache()
        except (DriverError, OSError) as exc:
            logger.error("Failed to clear auth cache: %s", exc)
            removed = False
        if removed:
            return CommandResult.accepted(AUTH_CLEARED, "Authentication cache cleared")
        return CommandResult.accepted(AUTH_CLEARED, "No cached authentication to clear")

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot for operators and the rendering layer."""
        world = self.world
        challenge = self.auth_bridge.challenge
        return {
            "session_state": self.state.value,
            "connection_intent": self.intent,
            "is_connecting": self._connecting,
            "attempt_count": self.policy.attempt_count,
            "max_attempts": self.policy.max_attempts,
            "current_health": world.health if world else None,
            "position": world.position.rounded() if world else None,
            "world_id": world.dimension if world else None,
            "username": world.username if world else None,
            "server": f"{self.params.host}:{self.params.port}",
            "pending_auth_challenge": challenge.to_dict() if challenge else None,
            "safety_enabled": self.safety_config.enabled,
            "reconnect_pending": self.scheduler.pending(RECONNECT_SLOT),
            "last_exit_reason": self.last_exit_reason,
        }

    async def shutdown(self) -> None:
        self.request_disconnect(reason="shutdown")
        await self.scheduler.shutdown()

    # ------------------------------------------------------------------
    # Session creation and teardown
    # ------------------------------------------------------------------

    def _begin_connect(self) -> None:
        self._generation += 1
        gen = self._generation
        self._connecting = True
        self._set_state(SessionState.CONNECTING)
        self.auth_bridge.arm(self.recipient)
        self.scheduler.call_later(
            CONNECT_TIMEOUT_SLOT, self.connect_timeout, self._on_connect_timeout, gen, replace=True
        )
        logger.info(
            "Connecting to %s:%s (version %s, auth %s)",
            self.params.host,
            self.params.port,
            self.params.version,
            self.params.auth,
        )
        try:
            self.driver.open(self.params, self._bind_event(gen), self._bind_diagnostic(gen))
        except (DriverError, OSError) as exc:
            logger.error("Failed to open session: %s", exc)
            self.on_client_event(ClientEvent("error", {"message": str(exc)}))

    def _bind_event(self, gen: int) -> Callable[[ClientEvent], None]:
        def _on_event(event: ClientEvent) -> None:
            if gen != self._generation:
                logger.debug("Dropped '%s' from stale session %d", event.kind, gen)
                return
            self.on_client_event(event)

        return _on_event

    def _bind_diagnostic(self, gen: int) -> Callable[[str], None]:
        def _on_line(line: str) -> None:
            if gen != self._generation:
                return
            logger.debug("[client] %s", line)
            self.auth_bridge.feed(line)

        return _on_line

    def _teardown(self) -> None:
        """Drop everything session-scoped and close the driver session."""
        self._generation += 1
        self._connecting = False
        self.scheduler.cancel(CONNECT_TIMEOUT_SLOT)
        self.scheduler.cancel(SPAWN_CHAT_SLOT)
        self.auth_bridge.disarm()
        self.monitor.stop()
        self.world = None
        for waiter in list(self._chat_waiters):
            self._resolve_chat_waiter(waiter, None)
        try:
            self.driver.close()
        except (DriverError, OSError) as exc:
            logger.error("Error closing session: %s", exc)

    # ------------------------------------------------------------------
    # Client events
    # ------------------------------------------------------------------

    def on_client_event(self, event: ClientEvent) -> None:
        """Single entry point for lifecycle and telemetry from the driver."""
        kind = event.kind
        if kind == "login":
            self._on_login()
        elif kind == "spawn":
            self._on_spawn(event)
        elif event.is_exit:
            self._on_exit(event)
        elif kind in TELEMETRY_EVENTS:
            self._on_telemetry(event)
        else:
            logger.debug("Ignoring unknown client event '%s'", kind)

    def _on_login(self) -> None:
        if self.state != SessionState.CONNECTING:
            logger.debug("Ignoring login in state %s", self.state.value)
            return
        logger.info("Logged in, waiting for spawn")
        self.auth_bridge.disarm()
        self._set_state(SessionState.AUTHENTICATING)

    def _on_spawn(self, event: ClientEvent) -> None:
        if self.state == SessionState.CONNECTED:
            # Respawn after death: refresh what we know, keep monitoring.
            self._refresh_world(event)
            return
        if self.state not in (SessionState.CONNECTING, SessionState.AUTHENTICATING):
            logger.debug("Ignoring spawn in state %s", self.state.value)
            return

        self.auth_bridge.disarm()
        self.scheduler.cancel(CONNECT_TIMEOUT_SLOT)
        self._connecting = False
        self.policy.reset()

        health = _as_float(event.get("health"), MAX_HEALTH)
        self.world = WorldContext(
            username=event.get("username") or self.params.username or "",
            dimension=event.get("dimension") or "unknown",
            position=Position.from_value(event.get("position")) or Position(),
            health=health,
        )
        for name in event.get("players", []) or []:
            self.world.upsert_player(name)
        self._set_state(SessionState.CONNECTED)
        self.monitor.start(self.world, initial_health=health)

        logger.info("Fully connected to %s:%s", self.params.host, self.params.port)
        self.alerts.emit(
            AlertEvent(
                kind="connected",
                title="🌍 Connected",
                description=f"Spawned on {self.params.host} in {self.world.dimension}",
                severity=Severity.INFO,
            ),
            deliver=False,
        )
        if self.spawn_chat:
            self.scheduler.call_later(
                SPAWN_CHAT_SLOT,
                self.spawn_chat_delay,
                self._send_spawn_chat,
                self._generation,
                replace=True,
            )

    def _on_exit(self, event: ClientEvent) -> None:
        if self.state in (SessionState.IDLE, SessionState.ENDING):
            logger.debug("Ignoring '%s' in state %s", event.kind, self.state.value)
            return

        reason = str(event.get("reason") or event.get("message") or event.kind)
        previous = self.state
        self.last_exit_reason = f"{event.kind}: {reason}"
        if event.kind == "end":
            logger.info("Connection ended: %s", reason)
        else:
            logger.warning("Session %s: %s", event.kind, reason)

        self._set_state(SessionState.ENDING)
        self._teardown()

        if previous == SessionState.CONNECTED:
            self.alerts.emit(
                AlertEvent(
                    kind="session_lost",
                    title="🔌 Connection lost",
                    description=f"Session {event.kind}: {reason}",
                    severity=Severity.INFO,
                ),
                deliver=False,
            )

        if self.intent:
            self._schedule_reconnect(reason)
        else:
            self._set_state(SessionState.IDLE)

    def _on_telemetry(self, event: ClientEvent) -> None:
        world = self.world
        if self.state != SessionState.CONNECTED or world is None:
            return
        kind = event.kind

        if kind == "health":
            value = event.get("health")
            if value is not None:
                self.monitor.on_health(_as_float(value, world.health))
        elif kind == "move":
            pos = Position.from_value(event.get("position"))
            if pos is not None:
                world.position = pos
            self.monitor.check_proximity()
        elif kind == "respawn":
            self._refresh_world(event)
            logger.info("Respawned / changed dimension to: %s", world.dimension)
        elif kind == "player_joined":
            name = event.get("username")
            if name:
                world.upsert_player(name, Position.from_value(event.get("position")))
                logger.info("Player %s joined", name)
                self.monitor.on_player_joined()
        elif kind == "player_left":
            name = event.get("username")
            if name and world.remove_player(name):
                logger.info("Player %s left", name)
        elif kind == "entity_moved":
            name = event.get("username")
            if event.get("entity_type", "player") != "player" or not name or name == world.username:
                return
            pos = Position.from_value(event.get("position"))
            world.upsert_player(name, pos)
            self.monitor.check_proximity()
        elif kind == "block_broken":
            self.monitor.on_block_broken(
                str(event.get("block", "unknown")), Position.from_value(event.get("position"))
            )
        elif kind == "message":
            text = str(event.get("text") or "").strip()
            if text:
                self._on_chat(text)

    def _refresh_world(self, event: ClientEvent) -> None:
        if self.world is None:
            return
        if event.get("dimension"):
            self.world.dimension = event.get("dimension")
        pos = Position.from_value(event.get("position"))
        if pos is not None:
            self.world.position = pos
        if event.get("health") is not None:
            self.monitor.on_health(_as_float(event.get("health"), self.world.health))

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, reason: str) -> None:
        if self.policy.exhausted:
            self._give_up(reason)
            return
        delay = self.policy.next_delay()
        logger.warning(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self.policy.attempt_count,
            self.policy.max_attempts,
        )
        self.scheduler.call_later(RECONNECT_SLOT, delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        if not self.intent or self.state != SessionState.ENDING:
            logger.debug("Reconnect timer no longer applies (state %s)", self.state.value)
            return
        self._begin_connect()

    def _give_up(self, reason: str) -> None:
        attempts = self.policy.attempt_count
        logger.error("Max reconnection attempts reached (%d); giving up", attempts)
        self.intent = False
        self._set_state(SessionState.IDLE)
        self.alerts.emit(
            AlertEvent(
                kind="reconnect_exhausted",
                title="❌ Reconnect attempts exhausted",
                description=(
                    f"Gave up after {attempts} attempt(s). Last reason: {reason}\n"
                    "Send `connect` to try again."
                ),
                severity=Severity.URGENT,
                fields={"attempts": attempts},
            )
        )

    def _on_connect_timeout(self, gen: int) -> None:
        if gen != self._generation or self.state not in (
            SessionState.CONNECTING,
            SessionState.AUTHENTICATING,
        ):
            return
        logger.warning("Connection timed out after %.0f seconds", self.connect_timeout)
        self.on_client_event(
            ClientEvent("error", {"message": f"connect timed out after {self.connect_timeout:g}s"})
        )

    def _send_spawn_chat(self, gen: int) -> None:
        if gen != self._generation or self.state != SessionState.CONNECTED:
            return
        for line in self.spawn_chat:
            result = self.send_chat(line)
            if not result.ok:
                logger.warning("Spawn chat '%s' not sent: %s", line, result.code)

    # ------------------------------------------------------------------
    # Collaborator callbacks
    # ------------------------------------------------------------------

    def _on_safety_withdraw(self, reason: str) -> None:
        self.request_disconnect(reason=reason)

    def _on_auth_challenge(self, challenge: AuthChallenge) -> None:
        who = challenge.recipient.mention if challenge.recipient else "Operator"
        self.alerts.emit(
            AlertEvent(
                kind="auth_challenge",
                title="🔐 Microsoft Authentication Required",
                description=(
                    f"{who}, please authenticate to connect the bot.\n"
                    f"🔗 {challenge.verification_url}\n"
                    f"🔑 Code: **{challenge.code}** (pre-filled in link)"
                ),
                severity=Severity.INFO,
                recipient=challenge.recipient,
                fields={"code": challenge.code},
            )
        )


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
