"""
Structured alert stream for AfkGuard.

Every safety, auth and lifecycle notice is an :class:`AlertEvent`. The
:class:`AlertDispatcher` records it in a bounded in-memory :class:`AlertLog`
(what ``status``/``logs`` commands and the rendering layer read) and hands
deliverable alerts to the notification channel as detached tasks, so a
slow or failing delivery never holds up session event handling.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional

if TYPE_CHECKING:
    from afkguard.channels.base import BaseChannel
    from afkguard.scheduler import TaskScheduler

logger = logging.getLogger("AfkGuard.Alerts")

_DEFAULT_HISTORY = 100


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"


@dataclass(frozen=True)
class OperatorRef:
    """Identity of the human operator an alert is meant for."""

    id: str
    display_name: str = ""
    channel: str = "discord"

    @property
    def label(self) -> str:
        return self.display_name or self.id

    @property
    def mention(self) -> str:
        if self.channel == "discord" and self.id.isdigit():
            return f"<@{self.id}>"
        return self.label


@dataclass
class AlertEvent:
    """A single alert."""

    kind: str
    title: str
    description: str
    severity: Severity = Severity.WARNING
    timestamp: float = field(default_factory=time.time)
    recipient: Optional[OperatorRef] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def urgent(self) -> bool:
        return self.severity == Severity.URGENT

    def to_text(self) -> str:
        """Plain-text form used by channels that do not render rich messages."""
        if self.severity == Severity.URGENT:
            header = "🚨 **URGENT SAFETY ALERT** 🚨"
        elif self.severity == Severity.WARNING:
            header = "⚠️ **Safety Alert**"
        else:
            header = "ℹ️"
        lines = [header, f"**{self.title}**", self.description]
        for key, value in self.fields.items():
            lines.append(f"{key}: {value}")
        return "\n".join(line for line in lines if line)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "recipient": self.recipient.id if self.recipient else None,
            "fields": dict(self.fields),
        }


class AlertLog:
    """Bounded history of alerts with fan-out to subscribers."""

    def __init__(self, max_events: int = _DEFAULT_HISTORY):
        self._events: Deque[AlertEvent] = deque(maxlen=max_events)
        self._subscribers: List[Callable[[AlertEvent], None]] = []

    def subscribe(self, callback: Callable[[AlertEvent], None]) -> Callable[[], None]:
        """Register *callback* for every new alert. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, alert: AlertEvent) -> None:
        self._events.append(alert)
        for cb in list(self._subscribers):
            try:
                cb(alert)
            except Exception:
                logger.exception("Alert subscriber error")

    def recent(self, limit: int = 10, kind: Optional[str] = None) -> List[AlertEvent]:
        events = [e for e in self._events if kind is None or e.kind == kind]
        return events[-limit:]

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class AlertDispatcher:
    """Records alerts and fires deliveries without blocking the caller.

    Args:
        channel: Notification sink. ``None`` keeps alerts in the log only.
        scheduler: Used to run deliveries as detached tasks.
        log: Alert history; a fresh one is created when omitted.
    """

    def __init__(
        self,
        channel: Optional["BaseChannel"],
        scheduler: "TaskScheduler",
        log: Optional[AlertLog] = None,
    ):
        self.channel = channel
        self.log = log if log is not None else AlertLog()
        self.recipient: Optional[OperatorRef] = None
        self._scheduler = scheduler

    def emit(self, alert: AlertEvent, deliver: bool = True) -> AlertEvent:
        if alert.recipient is None:
            alert.recipient = self.recipient

        level = logging.WARNING if alert.severity != Severity.INFO else logging.INFO
        logger.log(level, "[%s] %s: %s", alert.kind, alert.title, alert.description)
        self.log.publish(alert)

        if deliver and self.channel is not None:
            self._scheduler.spawn(
                self.channel.deliver(alert.recipient, alert), name=f"deliver:{alert.kind}"
            )
        return alert
