"""Async engine for the request path.

Sync engines for tooling live in :mod:`keybound.db.migrations.runtime`.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from keybound.config import Settings

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}


def sync_to_async_url(url: str) -> str:
    """Swap a bare ``sqlite:``/``postgresql:`` scheme for its async driver."""
    scheme, sep, rest = url.partition(":")
    if sep and scheme in _ASYNC_DRIVERS:
        return f"{_ASYNC_DRIVERS[scheme]}:{rest}"
    return url


def create_async_engine_from_settings(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or Settings()
    url = sync_to_async_url(settings.database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url, connect_args={"check_same_thread": False})
    # Postgres: a pool sized for a single app worker.
    return create_async_engine(url, pool_size=10, max_overflow=20, pool_pre_ping=True)
