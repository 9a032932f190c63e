"""Tests for afkguard.safety.monitor -- health, proximity and withdraw behaviour."""

import asyncio

import pytest

from afkguard.safety import SafetyMonitor, SpawnZone
from afkguard.safety.monitor import RECHECK_SLOT, WITHDRAW_SLOT, HealthSample
from afkguard.scheduler import TaskScheduler
from afkguard.world import Position, WorldContext


class Harness:
    """A started monitor plus everything it emitted or requested."""

    def __init__(self, config, clock):
        self.alerts = []
        self.withdrawals = []
        self.scheduler = TaskScheduler()
        self.world = WorldContext(username="Bot", position=Position(0, 64, 0))
        self.monitor = SafetyMonitor(
            config, self.scheduler, self.alerts.append, self.withdrawals.append, clock=clock
        )

    def start(self, health=20.0):
        self.monitor.start(self.world, initial_health=health)
        return self.monitor

    def add_player(self, name, x, y=64, z=0):
        self.world.upsert_player(name, Position(x, y, z))

    @property
    def kinds(self):
        return [a.kind for a in self.alerts]


@pytest.fixture
def harness(safety_config, clock):
    h = Harness(safety_config, clock)
    yield h
    h.monitor.stop()
    h.scheduler.cancel(WITHDRAW_SLOT)


async def _settle():
    await asyncio.sleep(0.05)


# =====================================================================
# HealthSample
# =====================================================================
class TestHealthSample:
    def test_damage_reported(self):
        sample = HealthSample()
        assert sample.update(14) == 6
        assert sample.previous == 20
        assert sample.current == 14

    def test_healing_is_zero_damage(self):
        sample = HealthSample(current=10, previous=10)
        assert sample.update(15) == 0


# =====================================================================
# Health checks
# =====================================================================
class TestHealth:
    @pytest.mark.asyncio
    async def test_critical_health_withdraws_once(self, harness):
        harness.start()
        harness.monitor.on_health(6)
        assert harness.kinds == ["health_critical"]
        assert harness.alerts[0].urgent
        assert "CRITICAL HEALTH" in harness.alerts[0].title
        assert harness.withdrawals == []

        await _settle()
        assert harness.withdrawals == ["safety: critical health"]

        harness.monitor.on_health(4)
        harness.monitor.poll()
        await _settle()
        assert harness.kinds == ["health_critical"]
        assert len(harness.withdrawals) == 1

    @pytest.mark.asyncio
    async def test_low_health_alert_respects_cooldown(self, harness, clock):
        harness.start()
        harness.monitor.on_health(10)
        assert harness.kinds == ["damage", "low_health"]

        harness.monitor.on_health(9)
        assert harness.kinds == ["damage", "low_health", "damage"]

        clock.advance(31)
        harness.monitor.on_health(8.5)
        assert harness.kinds.count("low_health") == 2
        await _settle()
        assert harness.withdrawals == []

    @pytest.mark.asyncio
    async def test_damage_above_threshold_only_warns(self, harness):
        harness.start()
        harness.monitor.on_health(15)
        assert harness.kinds == ["damage"]
        assert "5 damage" in harness.alerts[0].description
        assert harness.world.health == 15

    @pytest.mark.asyncio
    async def test_healing_is_silent(self, harness):
        harness.start(health=12)
        harness.monitor.on_health(18)
        assert harness.alerts == []

    @pytest.mark.asyncio
    async def test_withdraw_survives_stop(self, harness):
        harness.start()
        harness.monitor.on_health(3)
        harness.monitor.stop()
        await _settle()
        assert harness.withdrawals == ["safety: critical health"]

    @pytest.mark.asyncio
    async def test_cancel_withdraw(self, harness):
        harness.start()
        harness.monitor.on_health(3)
        assert harness.monitor.withdrawing
        assert harness.monitor.cancel_withdraw() is True
        await _settle()
        assert harness.withdrawals == []
        assert not harness.monitor.withdrawing

    @pytest.mark.asyncio
    async def test_withdraw_for_earlier_session_is_skipped(self, harness):
        harness.start()
        harness.monitor.on_health(3)
        harness.monitor.stop()
        harness.start()
        await _settle()
        assert harness.withdrawals == []

    @pytest.mark.asyncio
    async def test_disabled_monitor_is_silent(self, harness, safety_config):
        harness.start()
        safety_config.enabled = False
        harness.monitor.on_health(2)
        await _settle()
        assert harness.alerts == []
        assert harness.withdrawals == []


# =====================================================================
# Proximity checks
# =====================================================================
class TestProximity:
    @pytest.mark.asyncio
    async def test_trusted_player_never_counts(self, harness, safety_config):
        safety_config.trusted_players.add("Alice")
        harness.start()
        harness.add_player("Alice", 5)
        assert harness.monitor.check_proximity() == []
        await _settle()
        assert harness.alerts == []
        assert harness.withdrawals == []

    @pytest.mark.asyncio
    async def test_untrusted_player_alerts_and_withdraws_once(self, harness):
        harness.start()
        harness.add_player("Steve", 30)
        threats = harness.monitor.check_proximity()
        assert [t.username for t in threats] == ["Steve"]
        harness.monitor.check_proximity()
        harness.monitor.check_proximity()
        await _settle()
        assert harness.kinds == ["threat"]
        assert "AUTO DISCONNECT" in harness.alerts[0].title
        assert "Steve (30m)" in harness.alerts[0].description
        assert harness.withdrawals == ["safety: threat detected"]

    @pytest.mark.asyncio
    async def test_player_outside_radius_ignored(self, harness):
        harness.start()
        harness.add_player("Steve", 80)
        assert harness.monitor.check_proximity() == []
        assert harness.alerts == []

    @pytest.mark.asyncio
    async def test_own_entity_ignored(self, harness):
        harness.start()
        harness.add_player("Bot", 0)
        assert harness.monitor.nearby_players() == []

    @pytest.mark.asyncio
    async def test_alert_only_mode_uses_cooldown(self, harness, safety_config, clock):
        safety_config.auto_disconnect_on_threat = False
        harness.start()
        harness.add_player("Steve", 10)
        harness.monitor.check_proximity()
        harness.monitor.check_proximity()
        assert harness.kinds == ["threat"]
        assert harness.alerts[0].title == "🚨 THREAT DETECTED"

        clock.advance(31)
        harness.monitor.check_proximity()
        await _settle()
        assert harness.kinds == ["threat", "threat"]
        assert harness.withdrawals == []

    @pytest.mark.asyncio
    async def test_tiered_policy_warns_outside_threat_radius(self, harness, safety_config):
        safety_config.threat_radius = 10
        harness.start()
        harness.add_player("Steve", 30)
        assert harness.monitor.check_proximity() == []
        assert harness.kinds == ["proximity"]
        assert harness.alerts[0].severity.value == "warning"
        await _settle()
        assert harness.withdrawals == []

    @pytest.mark.asyncio
    async def test_tiered_policy_threat_inside_radius(self, harness, safety_config):
        safety_config.threat_radius = 10
        harness.start()
        harness.add_player("Steve", 30)
        harness.add_player("Eve", 4)
        threats = harness.monitor.check_proximity()
        assert [t.username for t in threats] == ["Eve"]
        assert harness.kinds == ["threat"]

    @pytest.mark.asyncio
    async def test_spawn_zone_suppresses_alerts(self, harness, safety_config):
        safety_config.spawn_protection_zone = SpawnZone(Position(-16, 0, -16), Position(16, 320, 16))
        harness.start()
        harness.add_player("Steve", 10)
        harness.monitor.check_proximity()
        await _settle()
        assert harness.alerts == []
        assert harness.withdrawals == []
        assert harness.monitor.last_proximity_alert is None

    @pytest.mark.asyncio
    async def test_trust_edit_applies_mid_session(self, harness, safety_config):
        harness.start()
        safety_config.trust("Steve")
        harness.add_player("Steve", 10)
        assert harness.monitor.check_proximity() == []

    @pytest.mark.asyncio
    async def test_thresholds_snapshotted_at_start(self, harness, safety_config):
        harness.start()
        safety_config.proximity_radius = 5
        harness.add_player("Steve", 30)
        assert len(harness.monitor.check_proximity()) == 1

    @pytest.mark.asyncio
    async def test_activity_logged(self, harness):
        harness.start()
        harness.add_player("Steve", 12)
        harness.monitor.check_proximity()
        assert harness.monitor.activity_log[-1].player == "Steve"
        assert harness.monitor.activity_log[-1].distance == 12

    @pytest.mark.asyncio
    async def test_join_arms_recheck(self, harness):
        harness.start()
        harness.monitor.on_player_joined()
        harness.monitor.on_player_joined()
        assert harness.scheduler.pending(RECHECK_SLOT)
        harness.monitor.stop()
        assert not harness.scheduler.pending(RECHECK_SLOT)


# =====================================================================
# Block breaks
# =====================================================================
class TestBlockBreaks:
    @pytest.mark.asyncio
    async def test_close_break_alerts(self, harness):
        harness.start()
        harness.monitor.on_block_broken("stone", Position(3, 64, 0))
        assert harness.kinds == ["block_break"]
        assert "`stone`" in harness.alerts[0].description

    @pytest.mark.asyncio
    async def test_nearby_break_logged_only(self, harness):
        harness.start()
        harness.monitor.on_block_broken("dirt", Position(8, 64, 0))
        harness.monitor.on_block_broken("dirt", Position(40, 64, 0))
        assert harness.alerts == []
        assert len(harness.monitor.block_break_log) == 1
        assert harness.monitor.block_break_log[0].distance == 8


# =====================================================================
# Poll and lifecycle
# =====================================================================
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_poll_is_noop_when_not_started(self, harness):
        harness.add_player("Steve", 5)
        harness.monitor.poll()
        harness.monitor.on_health(1)
        await _settle()
        assert harness.alerts == []
        assert harness.withdrawals == []
        assert not harness.monitor.active

    @pytest.mark.asyncio
    async def test_poll_timer_runs_checks(self, harness, safety_config):
        safety_config.poll_interval = 0.01
        harness.start()
        harness.add_player("Steve", 5)
        await _settle()
        assert "threat" in harness.kinds
        assert harness.withdrawals == ["safety: threat detected"]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, harness):
        harness.start()
        harness.monitor.stop()
        harness.monitor.stop()
        assert not harness.monitor.running

    @pytest.mark.asyncio
    async def test_snapshot(self, harness):
        harness.start()
        harness.add_player("Steve", 60)
        snap = harness.monitor.snapshot()
        assert snap["running"] is True
        assert snap["enabled"] is True
        assert snap["nearby"] == []
        assert snap["health"] == {"current": 20.0, "previous": 20.0}
