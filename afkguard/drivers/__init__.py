import logging

from afkguard.errors import DriverError

from .base import SessionDriver as SessionDriver

logger = logging.getLogger("AfkGuard.Drivers")


def get_driver(config: dict) -> SessionDriver:
    """Initialize the session driver named by ``config["driver"]``.

    Supports type-based lookup for built-in drivers and fully-qualified
    class paths (``class`` key) for external drivers.

    Raises:
        DriverError: the driver type is unknown or the external class
            could not be loaded.
    """
    driver_config = config.get("driver") or {"type": "simulation"}
    driver_type = str(driver_config.get("type", "simulation")).lower()

    fq_class = driver_config.get("class", "")
    if fq_class:
        try:
            module_path, class_name = fq_class.rsplit(".", 1)
            import importlib

            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
        except (ImportError, AttributeError, ValueError) as exc:
            raise DriverError(f"Failed to load external driver class '{fq_class}': {exc}") from exc
        return cls(driver_config)

    if driver_type == "subprocess":
        from afkguard.drivers.subprocess_driver import SubprocessDriver

        return SubprocessDriver(driver_config)
    elif driver_type in ("simulation", "mock"):
        from afkguard.drivers.simulation_driver import SimulationDriver

        return SimulationDriver(driver_config)
    raise DriverError(f"Unknown driver type: {driver_type}")
