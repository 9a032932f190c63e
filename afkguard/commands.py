"""
Plain-text operator commands.

Channels hand every inbound operator message to :class:`CommandRouter`
(``on_message(channel_name, chat_id, text) -> reply``). A leading ``/`` or
``!`` is optional::

    connect                 join the server and keep the session up
    disconnect              leave and stop reconnecting
    status                  session state, health, position
    say <text>              send a chat line (alias: message)
    trust <player>          add to the trusted list
    untrust <player>
    block <player>          flag a player in alerts
    unblock <player>
    security                current safety settings
    logs [n]                recent alerts and nearby-player activity
    shards                  ask the server for the shard balance
    clearauth               drop the session and the cached login
    safety on|off           toggle safety monitoring
    help
"""

import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Pattern, Union

from afkguard.alerts import OperatorRef
from afkguard.errors import CommandResult

logger = logging.getLogger("AfkGuard.Commands")

_PREFIXES = ("/", "!")

# Most commands answer at once; the ones that wait on the server return an awaitable
Reply = Union[str, Awaitable[str]]

SHARDS_TIMEOUT = 10.0

# Balance phrasings in server replies, tried in order
SHARD_PATTERNS: List[Pattern] = [
    re.compile(r"shards?[:\s]+([0-9,]+)", re.I),
    re.compile(r"([0-9,]+)\s+shards?", re.I),
    re.compile(r"balance[:\s]+([0-9,]+)", re.I),
    re.compile(r"you\s+have[:\s]+([0-9,]+)", re.I),
]


def parse_shard_balance(text: str) -> Optional[str]:
    """Return the balance figure in a server reply, e.g. ``"1,250"``."""
    for pattern in SHARD_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _format_result(result: CommandResult) -> str:
    icon = "✅" if result.ok else "❌"
    return f"{icon} {result.message or result.code}"


class CommandRouter:
    """Parses operator text and calls the matching supervisor operation."""

    def __init__(self, supervisor):
        self.supervisor = supervisor
        self._handlers: Dict[str, Callable[[OperatorRef, List[str]], Reply]] = {
            "connect": self._connect,
            "join": self._connect,
            "disconnect": self._disconnect,
            "leave": self._disconnect,
            "status": self._status,
            "say": self._say,
            "message": self._say,
            "trust": self._trust,
            "untrust": self._untrust,
            "block": self._block,
            "unblock": self._unblock,
            "security": self._security,
            "logs": self._logs,
            "clearauth": self._clear_auth,
            "shards": self._shards,
            "safety": self._safety,
            "help": self._help,
        }

    def __call__(self, channel_name: str, chat_id: str, text: str) -> Optional[Reply]:
        return self.handle(channel_name, chat_id, text)

    def handle(self, channel_name: str, chat_id: str, text: str) -> Optional[Reply]:
        text = (text or "").strip()
        if text[:1] in _PREFIXES:
            text = text[1:]
        if not text:
            return None
        parts = text.split()
        name = parts[0].lower()
        handler = self._handlers.get(name)
        if handler is None:
            return f"Unknown command '{name}'. Send `help` for the list."
        operator = OperatorRef(id=str(chat_id), channel=channel_name)
        logger.info("%s:%s -> %s", channel_name, chat_id, name)
        return handler(operator, parts[1:])

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _connect(self, operator: OperatorRef, args: List[str]) -> str:
        return _format_result(self.supervisor.request_connect(requested_by=operator))

    def _disconnect(self, operator: OperatorRef, args: List[str]) -> str:
        return _format_result(self.supervisor.request_disconnect(reason=f"requested by {operator.label}"))

    def _say(self, operator: OperatorRef, args: List[str]) -> str:
        return _format_result(self.supervisor.send_chat(" ".join(args)))

    def _clear_auth(self, operator: OperatorRef, args: List[str]) -> str:
        return _format_result(self.supervisor.clear_auth())

    def _shards(self, operator: OperatorRef, args: List[str]) -> Reply:
        if not self.supervisor.connected:
            return "❌ Bot is not connected to the server!"
        return self._request_shards()

    async def _request_shards(self) -> str:
        reply = self.supervisor.expect_chat(lambda line: "shard" in line.lower(), SHARDS_TIMEOUT)
        result = self.supervisor.send_chat("/shards")
        if not result.ok:
            reply.cancel()
            return _format_result(result)
        logger.info("Requested shard balance from server")
        text = await reply
        if text is None:
            return (
                "⏰ No response from server. The /shards command may not be available "
                "or took too long to respond."
            )
        balance = parse_shard_balance(text)
        if balance is None:
            return f"💎 Shard balance: could not read a figure from the reply\n> {text}"
        return f"💎 Shard balance: {balance}"

    def _status(self, operator: OperatorRef, args: List[str]) -> str:
        s = self.supervisor.status()
        lines = [
            f"🎮 Server: {s['server']}",
            f"📶 State: {s['session_state']} (intent: {'on' if s['connection_intent'] else 'off'})",
            f"🔁 Attempts: {s['attempt_count']}/{s['max_attempts']}",
        ]
        if s["current_health"] is not None:
            lines.append(f"❤️ Health: {s['current_health']:g}/20")
        if s["position"]:
            pos = s["position"]
            lines.append(f"📍 Position: {pos['x']}, {pos['y']}, {pos['z']} ({s['world_id']})")
        if s["pending_auth_challenge"]:
            lines.append(f"🔐 Auth pending: {s['pending_auth_challenge']['verification_url']}")
        lines.append(f"🛡️ Safety: {'enabled' if s['safety_enabled'] else 'disabled'}")
        if s["last_exit_reason"]:
            lines.append(f"🔌 Last exit: {s['last_exit_reason']}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def _player_arg(self, args: List[str]) -> Optional[str]:
        return args[0] if args else None

    def _trust(self, operator: OperatorRef, args: List[str]) -> str:
        player = self._player_arg(args)
        if not player:
            return "Usage: trust <player>"
        if self.supervisor.safety_config.trust(player):
            return f"✅ Added **{player}** to trusted players list!"
        return f"✅ **{player}** is already in the trusted list!"

    def _untrust(self, operator: OperatorRef, args: List[str]) -> str:
        player = self._player_arg(args)
        if not player:
            return "Usage: untrust <player>"
        if self.supervisor.safety_config.untrust(player):
            return f"❌ Removed **{player}** from trusted players list!"
        return f"⚠️ **{player}** is not in the trusted list!"

    def _block(self, operator: OperatorRef, args: List[str]) -> str:
        player = self._player_arg(args)
        if not player:
            return "Usage: block <player>"
        if self.supervisor.safety_config.block(player):
            return f"🚫 Added **{player}** to blocked players list!"
        return f"🚫 **{player}** is already blocked!"

    def _unblock(self, operator: OperatorRef, args: List[str]) -> str:
        player = self._player_arg(args)
        if not player:
            return "Usage: unblock <player>"
        if self.supervisor.safety_config.unblock(player):
            return f"✅ Removed **{player}** from blocked players list!"
        return f"⚠️ **{player}** is not blocked!"

    def _safety(self, operator: OperatorRef, args: List[str]) -> str:
        cfg = self.supervisor.safety_config
        if not args:
            return f"🛡️ Safety monitoring is {'enabled' if cfg.enabled else 'disabled'}"
        value = args[0].lower()
        if value in ("on", "enable", "true"):
            cfg.enabled = True
        elif value in ("off", "disable", "false"):
            cfg.enabled = False
        else:
            return "Usage: safety on|off"
        logger.warning("Safety monitoring %s by %s", "enabled" if cfg.enabled else "disabled", operator.label)
        return f"🛡️ Safety monitoring {'enabled' if cfg.enabled else 'disabled'}"

    def _security(self, operator: OperatorRef, args: List[str]) -> str:
        cfg = self.supervisor.safety_config
        threat = cfg.effective_threat_radius
        zone = cfg.spawn_protection_zone
        return "\n".join(
            [
                f"🔒 Security: {'✅ Enabled' if cfg.enabled else '❌ Disabled'}",
                f"🚨 Auto-Disconnect: {'✅ Enabled' if cfg.auto_disconnect_on_threat else '❌ Disabled'}",
                f"❤️ Health Threshold: {cfg.auto_disconnect_health:g}/20 (warn at {cfg.min_health:g})",
                f"📏 Proximity Radius: {cfg.proximity_radius:g} blocks (threats within {threat:g})",
                f"🔨 Block Monitor Radius: {cfg.block_break_radius:g} blocks",
                f"🏠 Spawn Protection: {'on' if zone else 'off'}",
                f"✅ Trusted Players: {', '.join(sorted(cfg.trusted_players)) or 'None'}",
                f"🚫 Blocked Players: {', '.join(sorted(cfg.blocked_players)) or 'None'}",
            ]
        )

    def _logs(self, operator: OperatorRef, args: List[str]) -> str:
        try:
            limit = max(1, min(int(args[0]), 50)) if args else 10
        except ValueError:
            return "Usage: logs [n]"
        alerts = self.supervisor.alerts.log.recent(limit)
        activity = list(self.supervisor.monitor.activity_log)[-limit:]
        lines = ["📋 Recent alerts:"]
        lines.extend(f"- [{a.severity.value}] {a.title}" for a in alerts)
        if not alerts:
            lines.append("- none")
        lines.append("👥 Recent player activity:")
        lines.extend(f"- {r.player} ({r.distance}m)" for r in activity)
        if not activity:
            lines.append("- none")
        return "\n".join(lines)

    def _help(self, operator: OperatorRef, args: List[str]) -> str:
        return (
            "Commands: connect, disconnect, status, say <text>, trust <player>, "
            "untrust <player>, block <player>, unblock <player>, security, logs [n], "
            "clearauth, shards, safety on|off"
        )
