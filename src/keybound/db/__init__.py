"""Database helpers."""

from keybound.db.base import Base
from keybound.db.engine import create_async_engine_from_settings
from keybound.db.session import get_db

__all__ = [
    "Base",
    "create_async_engine_from_settings",
    "get_db",
]
