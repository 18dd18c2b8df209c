"""Common test fixtures and helpers."""

from __future__ import annotations

import os
import subprocess
import sys

import pytest

from keybound.auth.primitives import generate_key_pair, sign_message
from keybound.config import Settings
from keybound.db.base import Base
from keybound.db.engine import create_async_engine_from_settings

TEST_SECRET = "test-session-secret-0123456789abcdef"


def run_cli(*args: str, env_override: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    """Run the CLI via ``python -m keybound``."""
    env = os.environ.copy()
    if env_override:
        env.update(env_override)
    return subprocess.run(
        [sys.executable, "-m", "keybound", *args],
        capture_output=True,
        text=True,
        env=env,
    )


class DeviceKey:
    """A browser-side device key pair."""

    def __init__(self) -> None:
        self.private_key, self.jwk = generate_key_pair()

    def sign(self, message: str) -> str:
        return sign_message(self.private_key, message)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'keybound_test.db'}",
        env="development",
        session_secret=TEST_SECRET,
        rate_limit_max_requests=1000,
    )


@pytest.fixture()
async def db(settings):
    """An ``AsyncSession`` over a fresh SQLite file, for ledger-level tests."""
    import keybound.auth.models  # noqa: F401
    from sqlalchemy.ext.asyncio import async_sessionmaker

    engine = create_async_engine_from_settings(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture()
def device_key():
    return DeviceKey()
