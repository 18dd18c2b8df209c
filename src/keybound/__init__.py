"""keybound – passwordless device-key authentication for FastAPI apps."""

from keybound.app import create_app
from keybound.config import Settings
from keybound.version import __version__

__all__ = ["Settings", "__version__", "create_app"]
