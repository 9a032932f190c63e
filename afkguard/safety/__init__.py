"""AfkGuard safety layer: thresholds, trust lists and the session monitor."""

from afkguard.safety.config import SafetyConfig, SpawnZone
from afkguard.safety.monitor import HealthSample, SafetyMonitor

__all__ = ["HealthSample", "SafetyConfig", "SafetyMonitor", "SpawnZone"]
