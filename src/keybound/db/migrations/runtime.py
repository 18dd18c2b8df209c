"""Runtime helpers for the packaged Alembic migrations.

Used by the app lifespan (``auto_upgrade``) and by ``keybound db migrate``.
Alembic's ``env.py`` is sync-only, so every URL is normalized to a sync
driver first.
"""

from __future__ import annotations

import asyncio
import importlib.resources
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from alembic import command as alembic_command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import inspect
from sqlalchemy.engine import Engine, create_engine, make_url

logger = logging.getLogger(__name__)

STATE_AT_HEAD = "at_head"
STATE_FRESH = "fresh"
STATE_BEHIND = "behind"
STATE_STAMP_REQUIRED = "stamp_required"


class PackagedMigrationsError(RuntimeError):
    """Raised when the packaged migrations directory is missing or incomplete."""


@dataclass(frozen=True)
class SchemaStatus:
    state: str
    current_revisions: tuple[str, ...]
    head_revisions: tuple[str, ...]
    warning: str | None = None


_ASYNCPG_ONLY_QUERY_KEYS = frozenset({"prepared_statement_cache_size", "prepared_statement_name_func"})


def normalize_db_url_for_sync(url: str) -> str:
    """Map async driver URLs (aiosqlite, asyncpg) onto their sync counterparts."""
    parsed = make_url(url)
    driver = parsed.drivername
    if driver == "sqlite+aiosqlite":
        driver = "sqlite"
    elif driver in {"postgresql+asyncpg", "postgresql", "postgres"}:
        driver = "postgresql+psycopg"

    query = {k: v for k, v in parsed.query.items() if k not in _ASYNCPG_ONLY_QUERY_KEYS}
    # Alembic needs the real password when no env var supplies it.
    return parsed.set(drivername=driver, query=query).render_as_string(hide_password=False)


def create_sync_engine(url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


@contextmanager
def packaged_migrations_dir() -> Iterator[Path]:
    resources = importlib.resources.files("keybound.db.migrations")
    with importlib.resources.as_file(resources) as root:
        if not (root / "env.py").is_file() or not (root / "versions").is_dir():
            raise PackagedMigrationsError("packaged migrations not found; installation may be broken")
        yield root


def alembic_config(db_url: str, migrations_dir: Path) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(migrations_dir))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _head_revisions(sync_url: str) -> tuple[str, ...]:
    with packaged_migrations_dir() as migrations_dir:
        script = ScriptDirectory.from_config(alembic_config(sync_url, migrations_dir))
        return tuple(sorted(script.get_heads()))


def _inspect_database(sync_url: str) -> tuple[tuple[str, ...], bool]:
    """Return ``(current_revisions, has_keybound_tables)``."""
    import keybound.auth.models  # noqa: F401
    from keybound.db.base import Base

    engine = create_sync_engine(sync_url)
    try:
        with engine.connect() as conn:
            tables = set(inspect(conn).get_table_names())
            current: tuple[str, ...] = ()
            if "alembic_version" in tables:
                current = tuple(sorted(MigrationContext.configure(conn).get_current_heads()))
    finally:
        engine.dispose()
    return current, bool(set(Base.metadata.tables) & tables)


def get_schema_status(db_url: str) -> SchemaStatus:
    sync_url = normalize_db_url_for_sync(db_url)
    heads = _head_revisions(sync_url)
    current, has_tables = _inspect_database(sync_url)

    if current and set(current) == set(heads):
        return SchemaStatus(STATE_AT_HEAD, current, heads)
    if not current and not has_tables:
        return SchemaStatus(STATE_FRESH, current, heads)
    if not current:
        return SchemaStatus(
            STATE_STAMP_REQUIRED,
            current,
            heads,
            warning=(
                "database has keybound tables but no alembic version; "
                "run: keybound db migrate stamp --to head --yes"
            ),
        )
    return SchemaStatus(
        STATE_BEHIND,
        current,
        heads,
        warning=(
            "database schema revision is behind code migrations; "
            f"current={list(current)} head={list(heads)}. "
            "run: keybound db migrate upgrade --to head --yes"
        ),
    )


def run_upgrade_to_head(db_url: str) -> SchemaStatus:
    """Bring the schema to head.

    A fresh database is created with ``create_all`` and stamped at head; an
    unversioned database with existing tables is left alone.
    """
    sync_url = normalize_db_url_for_sync(db_url)
    status = get_schema_status(sync_url)
    if status.state in (STATE_STAMP_REQUIRED, STATE_AT_HEAD):
        return status

    with packaged_migrations_dir() as migrations_dir:
        cfg = alembic_config(sync_url, migrations_dir)
        if status.state == STATE_FRESH:
            import keybound.auth.models  # noqa: F401
            from keybound.db.base import Base

            engine = create_sync_engine(sync_url)
            try:
                Base.metadata.create_all(engine)
            finally:
                engine.dispose()
            alembic_command.stamp(cfg, "head")
        else:
            alembic_command.upgrade(cfg, "head")

    logger.info("database schema upgraded to head")
    return get_schema_status(sync_url)


async def run_upgrade_to_head_async(db_url: str) -> SchemaStatus:
    """Run the sync upgrade in a worker thread."""
    return await asyncio.to_thread(run_upgrade_to_head, db_url)
