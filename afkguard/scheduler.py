"""
Cancellable, generation-guarded timers on the asyncio event loop.

Every timer lives in a named *slot* (``"reconnect"``, ``"safety.poll"``...).
A slot holds at most one pending timer; arming an occupied slot raises
:class:`~afkguard.errors.SchedulerError` unless ``replace=True`` is passed.
Cancelling a slot bumps its generation, so a callback that was already
queued by the loop when the cancel happened sees a stale generation and is
dropped instead of firing into a state it no longer applies to.

All callbacks run on the loop thread. Nothing here takes a lock: the
supervisor, monitor and bridge are only ever touched from that one thread.

Usage::

    scheduler = TaskScheduler()
    scheduler.call_later("reconnect", 15.0, supervisor._on_reconnect_timer)
    scheduler.every("safety.poll", 10.0, monitor.poll)
    scheduler.spawn(channel.deliver(recipient, alert))
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, Optional, Set, Tuple

from afkguard.errors import SchedulerError

logger = logging.getLogger("AfkGuard.Scheduler")


@dataclass
class ScheduledTimer:
    """Handle for a pending timer."""

    slot: str
    generation: int
    due_at: float
    interval: Optional[float] = None
    handle: Optional[asyncio.TimerHandle] = None

    @property
    def remaining(self) -> float:
        return max(0.0, self.due_at - time.monotonic())


class TaskScheduler:
    """Slot-keyed timers plus tracking for detached coroutines."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._timers: Dict[str, ScheduledTimer] = {}
        self._generations: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def call_later(
        self,
        slot: str,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
        replace: bool = False,
    ) -> ScheduledTimer:
        """Arm a one-shot timer in *slot*.

        Raises:
            SchedulerError: the slot already has a pending timer and
                ``replace`` is False.
        """
        return self._arm(slot, delay, callback, args, interval=None, replace=replace)

    def every(
        self,
        slot: str,
        interval: float,
        callback: Callable[..., Any],
        *args: Any,
        replace: bool = True,
    ) -> ScheduledTimer:
        """Arm a repeating timer that first fires after *interval* seconds."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._arm(slot, interval, callback, args, interval=interval, replace=replace)

    def _arm(
        self,
        slot: str,
        delay: float,
        callback: Callable[..., Any],
        args: Tuple[Any, ...],
        interval: Optional[float],
        replace: bool,
    ) -> ScheduledTimer:
        if slot in self._timers:
            if not replace:
                raise SchedulerError(f"Timer slot '{slot}' already has a pending timer")
            self.cancel(slot)

        generation = self._generations.get(slot, 0) + 1
        self._generations[slot] = generation
        delay = max(0.0, float(delay))
        timer = ScheduledTimer(
            slot=slot,
            generation=generation,
            due_at=time.monotonic() + delay,
            interval=interval,
        )
        timer.handle = self._get_loop().call_later(
            delay, self._fire, slot, generation, callback, args
        )
        self._timers[slot] = timer
        logger.debug("Armed '%s' gen=%d in %.2fs", slot, generation, delay)
        return timer

    def _fire(
        self,
        slot: str,
        generation: int,
        callback: Callable[..., Any],
        args: Tuple[Any, ...],
    ) -> None:
        timer = self._timers.get(slot)
        if timer is None or timer.generation != generation:
            logger.debug("Dropped stale timer '%s' gen=%d", slot, generation)
            return

        del self._timers[slot]
        if timer.interval is not None:
            # Re-arm before running so the callback may cancel its own slot.
            self._arm(slot, timer.interval, callback, args, interval=timer.interval, replace=False)

        try:
            callback(*args)
        except Exception:
            logger.exception("Timer callback error in slot '%s'", slot)

    def cancel(self, slot: str) -> bool:
        """Cancel the pending timer in *slot*. Returns True if one was pending."""
        timer = self._timers.pop(slot, None)
        self._generations[slot] = self._generations.get(slot, 0) + 1
        if timer is None:
            return False
        if timer.handle is not None:
            timer.handle.cancel()
        logger.debug("Cancelled '%s' gen=%d", slot, timer.generation)
        return True

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every slot whose name starts with *prefix*."""
        slots = [s for s in self._timers if s.startswith(prefix)]
        for slot in slots:
            self.cancel(slot)
        return len(slots)

    def pending(self, slot: str) -> bool:
        return slot in self._timers

    def get(self, slot: str) -> Optional[ScheduledTimer]:
        return self._timers.get(slot)

    def generation(self, slot: str) -> int:
        return self._generations.get(slot, 0)

    # ------------------------------------------------------------------
    # Detached work
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Run *coro* as a detached task; failures are logged, never raised."""
        task = self._get_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Detached task %s failed: %s", task.get_name(), exc)

    @property
    def task_count(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every detached task spawned so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all timers and detached tasks."""
        for slot in list(self._timers):
            self.cancel(slot)
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        logger.debug("Scheduler shut down")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "timers": {
                slot: {"generation": t.generation, "remaining_s": round(t.remaining, 2)}
                for slot, t in self._timers.items()
            },
            "tasks": len(self._tasks),
        }
