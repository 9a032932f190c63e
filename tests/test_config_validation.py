"""Tests for afkguard.config_validation -- validate_config()."""

import pytest

from afkguard.config_validation import log_validation_result, validate_config


def _config(**blocks):
    cfg = {"session": {"host": "play.example.net", "port": 25565}}
    cfg.update(blocks)
    return cfg


# =====================================================================
# Valid configs
# =====================================================================
class TestValidConfig:
    def test_minimal(self):
        ok, errors = validate_config(_config())
        assert ok is True
        assert errors == []

    def test_full(self):
        ok, errors = validate_config(
            _config(
                reconnect={"max_attempts": 5, "base_delay_s": 15, "max_delay_s": 60, "strategy": "exponential"},
                safety={
                    "proximity_radius": 50,
                    "threat_radius": None,
                    "trusted_players": ["Alice"],
                    "spawn_protection_zone": {"center": [0, 64, 0], "radius": 16},
                },
                notifications={"channel": "discord"},
                driver={"type": "subprocess", "command": ["node", "bridge.js"]},
            )
        )
        assert ok, errors

    def test_external_driver_class_skips_type_check(self):
        ok, _ = validate_config(_config(driver={"type": "custom", "class": "my_pkg.MyDriver"}))
        assert ok


# =====================================================================
# Session block
# =====================================================================
class TestSessionBlock:
    def test_missing_session(self):
        ok, errors = validate_config({})
        assert not ok
        assert any("'session'" in e for e in errors)

    def test_missing_host(self):
        ok, errors = validate_config({"session": {"port": 25565}})
        assert not ok
        assert any("session.host" in e for e in errors)

    @pytest.mark.parametrize("port", [0, 70000, "25565", True])
    def test_bad_port(self, port):
        ok, errors = validate_config({"session": {"host": "h", "port": port}})
        assert not ok
        assert any("session.port" in e for e in errors)

    def test_bad_auth_mode(self):
        ok, errors = validate_config({"session": {"host": "h", "auth": "mojang"}})
        assert any("session.auth" in e for e in errors)

    def test_spawn_chat_must_be_strings(self):
        ok, errors = validate_config({"session": {"host": "h", "spawn_chat": "/login x"}})
        assert any("spawn_chat" in e for e in errors)

    def test_scalar_block(self):
        ok, errors = validate_config({"session": "play.example.net"})
        assert not ok
        assert any("must be a mapping" in e for e in errors)

    def test_not_a_dict(self):
        ok, errors = validate_config(["session"])
        assert not ok
        assert "YAML" in errors[0]


# =====================================================================
# Reconnect, safety, driver and notifications blocks
# =====================================================================
class TestOtherBlocks:
    def test_reconnect_errors(self):
        ok, errors = validate_config(
            _config(reconnect={"max_attempts": 0, "base_delay_s": -5, "strategy": "fibonacci"})
        )
        assert not ok
        assert len(errors) == 3

    def test_negative_radius(self):
        ok, errors = validate_config(_config(safety={"proximity_radius": -1}))
        assert errors == ["'safety.proximity_radius' must be a number >= 0"]

    def test_poll_interval_positive(self):
        ok, errors = validate_config(_config(safety={"poll_interval": 0}))
        assert any("poll_interval" in e for e in errors)

    def test_player_lists_must_be_lists(self):
        ok, errors = validate_config(_config(safety={"trusted_players": "Alice,Bob"}))
        assert any("trusted_players" in e for e in errors)

    @pytest.mark.parametrize(
        "zone",
        [
            "spawn",
            {"center": [0, 0], "radius": 4},
            {"center": [0, 0, 0]},
            {"min": [0, 0, 0]},
            {"min": {"x": 0, "y": 0}, "max": [1, 1, 1]},
        ],
    )
    def test_bad_spawn_zone(self, zone):
        ok, errors = validate_config(_config(safety={"spawn_protection_zone": zone}))
        assert not ok
        assert any("spawn_protection_zone" in e for e in errors)

    def test_unknown_driver(self):
        ok, errors = validate_config(_config(driver={"type": "telepathy"}))
        assert any("Unknown driver type 'telepathy'" in e for e in errors)

    def test_subprocess_needs_command(self):
        ok, errors = validate_config(_config(driver={"type": "subprocess"}))
        assert any("driver.command" in e for e in errors)

    def test_unknown_channel(self):
        ok, errors = validate_config(_config(notifications={"channel": "fax"}))
        assert any("notifications.channel" in e for e in errors)


# =====================================================================
# log_validation_result
# =====================================================================
class TestLogValidationResult:
    def test_logs_each_error(self, caplog):
        assert log_validation_result({"session": {}}, label="test.yaml") is False
        assert "test.yaml validation error" in caplog.text

    def test_valid_returns_true(self):
        assert log_validation_result(_config()) is True


class TestGraceDelayVsReconnect:
    def test_defaults_fit(self):
        ok, errors = validate_config(_config(reconnect={"base_delay_s": 1}))
        assert ok, errors

    def test_grace_longer_than_first_retry(self):
        ok, errors = validate_config(
            _config(reconnect={"base_delay_s": 5}, safety={"threat_grace_delay": 8})
        )
        assert not ok
        assert errors == [
            "'safety.threat_grace_delay' (8s) must not exceed 'reconnect.base_delay_s' (5s)"
        ]

    def test_default_grace_against_zero_delay(self):
        ok, errors = validate_config(_config(reconnect={"base_delay_s": 0}))
        assert len(errors) == 2
        assert all("reconnect.base_delay_s' (0s)" in e for e in errors)

    def test_zero_grace_with_zero_delay(self):
        ok, errors = validate_config(
            _config(
                reconnect={"base_delay_s": 0},
                safety={"health_grace_delay": 0, "threat_grace_delay": 0},
            )
        )
        assert ok, errors

    def test_invalid_delay_reported_once(self):
        ok, errors = validate_config(_config(reconnect={"base_delay_s": -1}))
        assert errors == ["'reconnect.base_delay_s' must be a number >= 0"]
