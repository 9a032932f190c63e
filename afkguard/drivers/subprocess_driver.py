"""
Subprocess bridge driver.

Runs an external client process (typically a small Node script wrapping the
real game client library) and talks to it over stdio:

* stdout lines that parse as a JSON object with an ``"event"`` key are
  :class:`ClientEvent` values, e.g. ``{"event": "health", "health": 14}``;
* every other stdout/stderr line is diagnostic text and goes to the
  diagnostic sink, which is where device-login prompts get scraped;
* commands are written to stdin as JSON lines:
  ``{"cmd": "chat", "text": "..."}`` and ``{"cmd": "quit"}``.

In-game chat the client receives is reported as
``{"event": "message", "text": "..."}``. Lines longer than ``line_limit``
bytes are dropped. A bridge that is still running ``kill_timeout_s`` seconds
after ``close()`` is killed.

Config::

    driver:
      type: subprocess
      command: ["node", "bridge.js"]
      auth_cache_dir: ~/.minecraft/nmp-cache
      line_limit: 1048576
      kill_timeout_s: 5

Session parameters are passed to the process as ``AFKGUARD_HOST``,
``AFKGUARD_PORT``, ``AFKGUARD_VERSION``, ``AFKGUARD_AUTH`` and
``AFKGUARD_USERNAME``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from typing import List, Optional

from afkguard.drivers.base import (
    ClientEvent,
    DiagnosticSink,
    EventCallback,
    SessionDriver,
    SessionParams,
)
from afkguard.errors import DriverError

logger = logging.getLogger("AfkGuard.SubprocessDriver")

# Chatty client output that is dropped before reaching the diagnostic sink
_NOISE_MARKERS = ("Chunk size", "partial packet")

_DEFAULT_AUTH_CACHE = "~/.minecraft/nmp-cache"
_DEFAULT_LINE_LIMIT = 1024 * 1024
_DEFAULT_KILL_TIMEOUT = 5.0


def parse_bridge_line(line: str) -> Optional[ClientEvent]:
    """Return a ClientEvent for a JSON event line, or None for diagnostic text."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except ValueError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        return None
    kind = payload.pop("event")
    return ClientEvent(kind=kind, data=payload)


class _BridgeRun:
    """One child process and the task pumping its output."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.task: Optional[asyncio.Task] = None
        self.closing = False
        self.kill_handle: Optional[asyncio.TimerHandle] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class SubprocessDriver(SessionDriver):
    """Drives a session through a child process speaking JSON lines.

    A closed session may still be winding down when the next ``open()``
    arrives; the new child starts alongside it and the old one is never
    heard from again.
    """

    name = "subprocess"

    def __init__(self, config: Optional[dict] = None):
        super().__init__(config)
        command = self.config.get("command")
        if isinstance(command, str):
            command = command.split()
        if not command:
            raise DriverError("driver.command is required for the subprocess driver")
        self.command: List[str] = list(command)
        self.auth_cache_dir = os.path.expanduser(
            self.config.get("auth_cache_dir", _DEFAULT_AUTH_CACHE)
        )
        self.line_limit = int(self.config.get("line_limit", _DEFAULT_LINE_LIMIT))
        self.kill_timeout = float(self.config.get("kill_timeout_s", _DEFAULT_KILL_TIMEOUT))
        self._current: Optional[_BridgeRun] = None

    @property
    def active(self) -> bool:
        run = self._current
        return run is not None and run.running and not run.closing

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        """Child process of the latest session, once it has started."""
        return self._current.proc if self._current is not None else None

    def open(
        self,
        params: SessionParams,
        on_event: EventCallback,
        on_diagnostic: DiagnosticSink,
    ) -> None:
        previous = self._current
        if previous is not None and previous.running:
            if not previous.closing:
                raise DriverError("A bridge session is already running")
            logger.info("Previous bridge is still shutting down; starting a new one")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise DriverError("SubprocessDriver.open() needs a running event loop") from exc
        run = _BridgeRun(loop)
        run.task = loop.create_task(
            self._run(run, params, on_event, on_diagnostic), name="subprocess-driver"
        )
        self._current = run
        logger.info("Starting bridge: %s -> %s:%s", " ".join(self.command), params.host, params.port)

    def _build_env(self, params: SessionParams) -> dict:
        env = dict(os.environ)
        env.update(
            {
                "AFKGUARD_HOST": params.host,
                "AFKGUARD_PORT": str(params.port),
                "AFKGUARD_VERSION": params.version,
                "AFKGUARD_AUTH": params.auth,
            }
        )
        if params.username:
            env["AFKGUARD_USERNAME"] = params.username
        return env

    async def _run(
        self,
        run: _BridgeRun,
        params: SessionParams,
        on_event: EventCallback,
        on_diagnostic: DiagnosticSink,
    ) -> None:
        try:
            run.proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(params),
                limit=self.line_limit,
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to start bridge process: %s", exc)
            if not run.closing:
                on_event(ClientEvent("error", {"message": f"bridge failed to start: {exc}"}))
            return
        if run.closing:
            # close() arrived while the process was starting
            self._stop(run)

        kind, info = "end", {"reason": "bridge stopped"}
        try:
            await asyncio.gather(
                self._pump(run, run.proc.stdout, on_event, on_diagnostic, parse_events=True),
                self._pump(run, run.proc.stderr, on_event, on_diagnostic, parse_events=False),
            )
            rc = await run.proc.wait()
            logger.info("Bridge process exited (code %s)", rc)
            info = {"reason": f"bridge exited with code {rc}"}
        except Exception as exc:
            logger.exception("Bridge I/O failed")
            kind, info = "error", {"message": f"bridge I/O failed: {exc}"}
            self._kill(run.proc)
        finally:
            if run.kill_handle is not None:
                run.kill_handle.cancel()
            if not run.closing:
                on_event(ClientEvent(kind, info))

    async def _read_line(self, stream: asyncio.StreamReader) -> Optional[bytes]:
        """Next line from *stream*, or None at EOF. Lines over the limit are skipped."""
        oversized = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # EOF; an unterminated last line still counts
                return exc.partial if exc.partial and not oversized else None
            except asyncio.LimitOverrunError as exc:
                if not oversized:
                    logger.warning("Dropping bridge output line longer than %d bytes", self.line_limit)
                    oversized = True
                await stream.readexactly(exc.consumed)
                continue
            if not oversized:
                return raw
            oversized = False

    async def _pump(
        self,
        run: _BridgeRun,
        stream: Optional[asyncio.StreamReader],
        on_event: EventCallback,
        on_diagnostic: DiagnosticSink,
        parse_events: bool,
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await self._read_line(stream)
            if raw is None:
                return
            if run.closing:
                continue
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            event = parse_bridge_line(line) if parse_events else None
            try:
                if event is not None:
                    on_event(event)
                elif not any(marker in line for marker in _NOISE_MARKERS):
                    on_diagnostic(line)
            except Exception:
                logger.exception("Bridge callback error")

    @staticmethod
    def _send(run: _BridgeRun, payload: dict) -> None:
        proc = run.proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise DriverError("Bridge process is not running")
        proc.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))

    def chat(self, text: str) -> None:
        run = self._current
        if run is None or run.closing:
            raise DriverError("Bridge process is not running")
        self._send(run, {"cmd": "chat", "text": text})

    def close(self) -> None:
        run = self._current
        if run is None or run.closing:
            return
        run.closing = True
        if run.proc is not None:
            self._stop(run)
        logger.info("Bridge session closed")

    def _stop(self, run: _BridgeRun) -> None:
        """Ask the bridge to quit and SIGTERM it. SIGKILL follows after ``kill_timeout``."""
        proc = run.proc
        if proc is None or proc.returncode is not None:
            return
        try:
            self._send(run, {"cmd": "quit"})
        except (DriverError, OSError) as exc:
            logger.debug("Quit not sent: %s", exc)
        try:
            proc.terminate()
        except ProcessLookupError:
            logger.debug("Bridge process already gone")
            return
        run.kill_handle = run.loop.call_later(self.kill_timeout, self._kill, proc)

    @staticmethod
    def _kill(proc: Optional[asyncio.subprocess.Process]) -> None:
        if proc is None or proc.returncode is not None:
            return
        logger.warning("Bridge process %s did not exit; killing it", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            logger.debug("Bridge process already gone")

    def clear_auth_cache(self) -> bool:
        if not os.path.exists(self.auth_cache_dir):
            return False
        shutil.rmtree(self.auth_cache_dir, ignore_errors=True)
        logger.info("Cleared authentication cache at %s", self.auth_cache_dir)
        return True
