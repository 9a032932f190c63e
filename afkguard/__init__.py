"""AfkGuard: session supervision and safety withdrawal for long-lived game clients."""

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

try:
    __version__ = _pkg_version("afkguard")
except PackageNotFoundError:
    __version__ = "2026.10.1"  # running from a source checkout

__all__ = ["__version__"]
