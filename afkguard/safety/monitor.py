"""
Session safety monitor: health and proximity checks with auto-withdraw.

Checks run on every relevant client event and again from a periodic poll
(``safety.poll_interval``) as a safety net. Both are gated on the monitor
running (the session is CONNECTED) and on ``safety.enabled``.

A critical health reading or a threat near the player emits an urgent alert
and, after a short grace delay so the alert can go out first, asks the
supervisor to disconnect. That request is made at most once per session.

Thresholds are snapshotted when a session starts. ``enabled`` and the
trusted/blocked lists are read from the shared config on every check so
operator edits apply immediately.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from afkguard.alerts import AlertEvent, Severity
from afkguard.safety.config import SafetyConfig
from afkguard.scheduler import TaskScheduler
from afkguard.world import MAX_HEALTH, Position, WorldContext

logger = logging.getLogger("AfkGuard.Safety.Monitor")

POLL_SLOT = "safety.poll"
RECHECK_SLOT = "safety.recheck"
WITHDRAW_SLOT = "safety.withdraw"

# Delay before re-checking proximity after a player joins (position arrives later)
_JOIN_RECHECK_DELAY = 1.0

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class HealthSample:
    """Current and previous health reading."""

    current: float = MAX_HEALTH
    previous: float = MAX_HEALTH

    def update(self, value: float) -> float:
        """Record a new reading and return the damage taken (0 if none)."""
        self.previous, self.current = self.current, value
        return max(0.0, self.previous - self.current)


@dataclass
class ActivityRecord:
    """A nearby player sighting."""

    player: str
    distance: int
    action: str = "proximity"
    timestamp: float = field(default_factory=time.time)


@dataclass
class BlockBreakRecord:
    block: str
    position: Dict[str, float]
    distance: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class NearbyPlayer:
    username: str
    distance: float
    trusted: bool = False
    blocked: bool = False

    def label(self) -> str:
        marks = ("✅" if self.trusted else "⚠️") + ("🚫" if self.blocked else "")
        return f"{marks} **{self.username}** ({round(self.distance)}m)"


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class SafetyMonitor:
    """Watches one session's telemetry and requests withdrawal on danger.

    Args:
        config: Shared process-wide safety config.
        scheduler: Timer owner for the poll, recheck and withdraw timers.
        emit: Alert sink (``AlertDispatcher.emit``).
        request_disconnect: Called with a reason string to withdraw.
        clock: Monotonic time source for cooldowns.
    """

    def __init__(
        self,
        config: SafetyConfig,
        scheduler: TaskScheduler,
        emit: Callable[[AlertEvent], Any],
        request_disconnect: Callable[[str], Any],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.shared = config
        self.config = config.snapshot()
        self._scheduler = scheduler
        self._emit = emit
        self._request_disconnect = request_disconnect
        self._clock = clock

        self._world: Optional[WorldContext] = None
        self._running = False
        self._session_id = 0
        self._withdrawing = False
        self.health = HealthSample()
        self.last_health_alert: Optional[float] = None
        self.last_proximity_alert: Optional[float] = None
        self.activity_log: Deque[ActivityRecord] = deque(maxlen=config.history_size)
        self.block_break_log: Deque[BlockBreakRecord] = deque(maxlen=config.history_size)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, world: WorldContext, initial_health: float = MAX_HEALTH) -> None:
        """Begin monitoring a freshly spawned session."""
        self.config = self.shared.snapshot()
        self._world = world
        self._session_id += 1
        self._running = True
        self._withdrawing = False
        self.health = HealthSample(current=initial_health, previous=initial_health)
        self.last_health_alert = None
        self.last_proximity_alert = None
        if self.activity_log.maxlen != self.config.history_size:
            self.activity_log = deque(self.activity_log, maxlen=self.config.history_size)
            self.block_break_log = deque(self.block_break_log, maxlen=self.config.history_size)
        self._scheduler.every(POLL_SLOT, self.config.poll_interval, self.poll)
        logger.info(
            "Safety monitor started (enabled=%s, radius=%s, threat_radius=%s)",
            self.shared.enabled,
            self.config.proximity_radius,
            self.config.effective_threat_radius,
        )

    def stop(self) -> None:
        """Stop checks. A withdraw already scheduled still fires."""
        if not self._running:
            return
        self._running = False
        self._world = None
        self._scheduler.cancel(POLL_SLOT)
        self._scheduler.cancel(RECHECK_SLOT)
        logger.info("Safety monitor stopped")

    def cancel_withdraw(self) -> bool:
        """Drop a pending withdraw (used when the operator reconnects)."""
        self._withdrawing = False
        return self._scheduler.cancel(WITHDRAW_SLOT)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active(self) -> bool:
        return self._running and self.shared.enabled and self._world is not None

    @property
    def withdrawing(self) -> bool:
        return self._withdrawing

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------

    def on_health(self, value: float) -> None:
        damage = self.health.update(float(value))
        if self._world is not None:
            self._world.health = self.health.current
        self._evaluate_health(damage)

    def on_player_joined(self) -> None:
        if self.active:
            self._scheduler.call_later(
                RECHECK_SLOT, _JOIN_RECHECK_DELAY, self.check_proximity, replace=True
            )

    def on_block_broken(self, block: str, position: Optional[Position]) -> None:
        if not self.active or position is None:
            return
        distance = self._world.position.distance_to(position)
        if distance > self.config.block_break_radius:
            return
        record = BlockBreakRecord(block=block, position=position.to_dict(), distance=round(distance))
        self.block_break_log.append(record)
        if distance <= self.config.block_break_alert_radius:
            coords = position.rounded()
            self._emit(
                AlertEvent(
                    kind="block_break",
                    title="🔨 Block Break Alert",
                    description=(
                        "**A block was broken very close to you!**\n"
                        f"Block: `{block}`\nDistance: {round(distance)} blocks\n"
                        f"Position: `{coords['x']}, {coords['y']}, {coords['z']}`"
                    ),
                    severity=Severity.WARNING,
                )
            )

    def poll(self) -> None:
        """Periodic redundant check. No-op when not connected."""
        if not self.active:
            return
        self._evaluate_health(0.0)
        self.check_proximity()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> None:
        """Re-evaluate thresholds against the current reading."""
        self._evaluate_health(0.0)

    def _evaluate_health(self, damage: float) -> None:
        if not self.active or self._withdrawing:
            return
        current = self.health.current

        if current <= self.config.auto_disconnect_health:
            logger.critical("Health %s at or below %s -- withdrawing", current, self.config.auto_disconnect_health)
            lead = f"**You took {damage:g} damage! " if damage > 0 else "**"
            self._emit(
                AlertEvent(
                    kind="health_critical",
                    title="🚨 CRITICAL HEALTH - AUTO DISCONNECT",
                    description=(
                        f"{lead}Health: {current:g}/{MAX_HEALTH:g}**\n\n"
                        "**Action:** Bot automatically disconnected for safety!"
                    ),
                    severity=Severity.URGENT,
                    fields={"health": current, "damage": damage},
                )
            )
            self._schedule_withdraw(self.config.health_grace_delay, "safety: critical health")
            return

        if damage > 0:
            self._emit(
                AlertEvent(
                    kind="damage",
                    title="🩸 Damage Taken",
                    description=(
                        f"**You took {damage:g} damage!**\n"
                        f"Health decreased from {self.health.previous:g} to {current:g}"
                    ),
                    severity=Severity.WARNING,
                    fields={"health": current, "damage": damage},
                )
            )

        now = self._clock()
        if current <= self.config.min_health and (
            self.last_health_alert is None
            or now - self.last_health_alert > self.config.alert_cooldown
        ):
            self.last_health_alert = now
            self._emit(
                AlertEvent(
                    kind="low_health",
                    title="💀 Critical Health Alert",
                    description=(
                        f"**DANGER: Health is critically low at {current:g}/{MAX_HEALTH:g}!**\n"
                        "Consider disconnecting immediately!"
                    ),
                    severity=Severity.URGENT,
                    fields={"health": current},
                )
            )

    # ------------------------------------------------------------------
    # Proximity
    # ------------------------------------------------------------------

    def nearby_players(self) -> List[NearbyPlayer]:
        """Every other player within ``proximity_radius``, closest first."""
        if self._world is None:
            return []
        me = self._world.position
        found = []
        for info in self._world.others():
            distance = me.distance_to(info.position)
            if distance <= self.config.proximity_radius:
                found.append(
                    NearbyPlayer(
                        username=info.username,
                        distance=distance,
                        trusted=info.username in self.shared.trusted_players,
                        blocked=info.username in self.shared.blocked_players,
                    )
                )
        found.sort(key=lambda p: p.distance)
        return found

    def check_proximity(self) -> List[NearbyPlayer]:
        """Evaluate nearby players. Returns the current threats."""
        if not self.active or self._withdrawing:
            return []

        nearby = self.nearby_players()
        candidates = [p for p in nearby if not p.trusted]
        threat_radius = self.config.effective_threat_radius
        threats = [p for p in candidates if p.distance <= threat_radius]
        watched = [p for p in candidates if p.distance > threat_radius]
        if not candidates:
            return threats

        now = self._clock()
        if (
            self.last_proximity_alert is not None
            and now - self.last_proximity_alert < self.config.alert_cooldown
        ):
            return threats

        zone = self.config.spawn_protection_zone
        if zone is not None and zone.contains(self._world.position):
            logger.debug("Inside spawn protection zone; ignoring %d player(s)", len(candidates))
            return threats

        if self.config.log_all_events:
            for p in nearby:
                self.activity_log.append(ActivityRecord(player=p.username, distance=round(p.distance)))

        self.last_proximity_alert = now
        if threats:
            self._alert_threats(threats, threat_radius)
        elif watched:
            listing = ", ".join(p.label() for p in nearby)
            self._emit(
                AlertEvent(
                    kind="proximity",
                    title="⚠️ Player Proximity Alert",
                    description=(
                        f"**{len(nearby)} player(s) detected within "
                        f"{self.config.proximity_radius:g} blocks:**\n{listing}"
                    ),
                    severity=Severity.WARNING,
                    fields={"players": [p.username for p in nearby]},
                )
            )
        return threats

    def _alert_threats(self, threats: List[NearbyPlayer], radius: float) -> None:
        listing = ", ".join(
            f"{'🚫 ' if p.blocked else ''}{p.username} ({round(p.distance)}m)" for p in threats
        )
        withdraw = self.config.auto_disconnect_on_threat
        if withdraw:
            title = "🚨 THREAT DETECTED - AUTO DISCONNECT"
            action = "\n\n**Action:** Bot automatically disconnected for safety!"
        else:
            title = "🚨 THREAT DETECTED"
            action = ""
        logger.critical("Untrusted player(s) within %s blocks: %s", radius, listing)
        self._emit(
            AlertEvent(
                kind="threat",
                title=title,
                description=f"**Untrusted player(s) detected within {radius:g} blocks:**\n{listing}{action}",
                severity=Severity.URGENT,
                fields={"players": [p.username for p in threats]},
            )
        )
        if withdraw:
            self._schedule_withdraw(self.config.threat_grace_delay, "safety: threat detected")

    # ------------------------------------------------------------------
    # Withdraw
    # ------------------------------------------------------------------

    def _schedule_withdraw(self, delay: float, reason: str) -> None:
        self._withdrawing = True
        self._scheduler.call_later(
            WITHDRAW_SLOT, delay, self._withdraw, self._session_id, reason, replace=True
        )

    def _withdraw(self, session_id: int, reason: str) -> None:
        if session_id != self._session_id:
            logger.info("Skipping withdraw for an earlier session (%s)", reason)
            return
        logger.warning("Requesting disconnect: %s", reason)
        self._request_disconnect(reason)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "enabled": self.shared.enabled,
            "withdrawing": self._withdrawing,
            "health": asdict(self.health),
            "last_health_alert": self.last_health_alert,
            "last_proximity_alert": self.last_proximity_alert,
            "nearby": [p.username for p in self.nearby_players()],
            "activity_events": len(self.activity_log),
            "block_breaks": [asdict(r) for r in list(self.block_break_log)[-5:]],
        }
