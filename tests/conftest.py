"""Shared fixtures for the AfkGuard test-suite."""

import pytest
from helpers import FakeClock, RecordingChannel

from afkguard.drivers.simulation_driver import SimulationDriver
from afkguard.safety import SafetyConfig
from afkguard.supervisor import ConnectionSupervisor, ReconnectPolicy


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for var in ("TRUSTED_PLAYERS", "BLOCKED_PLAYERS", "AUTO_TELEPORT_USER", "AFKGUARD_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def driver():
    return SimulationDriver()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_policy():
    return ReconnectPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05)


@pytest.fixture
def safety_config():
    return SafetyConfig(
        health_grace_delay=0.01,
        threat_grace_delay=0.01,
        poll_interval=60.0,
    )


@pytest.fixture
def supervisor(driver, channel, fast_policy, safety_config, clock):
    return ConnectionSupervisor(
        driver,
        channel,
        {"session": {"host": "test.local", "port": 25565, "connect_timeout_s": 5}},
        safety_config=safety_config,
        policy=fast_policy,
        clock=clock,
    )
