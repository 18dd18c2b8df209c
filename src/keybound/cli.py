"""keybound operator CLI.

Provides the ``keybound`` console script and the ``python -m keybound`` entry point.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from alembic import command as alembic_command
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from keybound.db.engine import sync_to_async_url
from keybound.db.migrations.runtime import (
    PackagedMigrationsError,
    alembic_config,
    create_sync_engine,
    get_schema_status,
    normalize_db_url_for_sync,
    packaged_migrations_dir,
    run_upgrade_to_head,
)
from keybound.errors import DeviceNotFound

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------
EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_BAD_ARGS = 2
EXIT_MIGRATIONS_MISSING = 4

DEFAULT_DATABASE_URL = "sqlite:///./keybound.db"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _output(data: Any, *, fmt: str = "json", pretty: bool = False) -> None:
    if fmt == "jsonl":
        if isinstance(data, list):
            for item in data:
                print(json.dumps(item, default=str))
        else:
            print(json.dumps(data, default=str))
    else:
        indent = 2 if pretty else None
        print(json.dumps(data, default=str, indent=indent))


def _err(msg: str) -> None:
    print(msg, file=sys.stderr)


def _require_yes(args: argparse.Namespace) -> bool:
    if not getattr(args, "yes", False):
        _err("--yes is required for mutating commands")
        return False
    return True


def _device_dict(device: Any) -> dict:
    """Serialize a Device without its public key."""
    return {
        "id": device.id,
        "thumbprint": device.thumbprint,
        "status": device.status,
        "failed_attempts": device.failed_attempts,
        "created_at": _iso(device.created_at),
        "last_seen_at": _iso(device.last_seen_at),
        "last_ip": device.last_ip,
    }


def _session_dict(session: Any) -> dict:
    return {
        "id": session.id,
        "device_id": session.device_id,
        "created_at": _iso(session.created_at),
        "expires_at": _iso(session.expires_at),
        "revoked_at": _iso(session.revoked_at),
        "ip": session.ip,
    }


def _get_db_url(args: argparse.Namespace) -> str:
    """Resolve the database URL from --db flag or environment."""
    if getattr(args, "db", None):
        return str(args.db)
    return os.environ.get("KEYBOUND_DATABASE_URL", DEFAULT_DATABASE_URL)


def _run_with_db(args: argparse.Namespace, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run an async ledger operation against the CLI's database."""
    url = sync_to_async_url(normalize_db_url_for_sync(_get_db_url(args)))

    async def _runner() -> T:
        engine = create_async_engine(url)
        try:
            factory = async_sessionmaker(engine, expire_on_commit=False)
            async with factory() as db:
                return await fn(db)
        finally:
            await engine.dispose()

    return asyncio.run(_runner())


# ---------------------------------------------------------------------------
# DB commands
# ---------------------------------------------------------------------------


def _cmd_db_ping(args: argparse.Namespace) -> int:
    url = normalize_db_url_for_sync(_get_db_url(args))
    engine = create_sync_engine(url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    finally:
        engine.dispose()
    try:
        status = get_schema_status(url)
    except PackagedMigrationsError:
        _err("packaged migrations not found; installation may be broken")
        return EXIT_MIGRATIONS_MISSING
    _output(
        {
            "ok": True,
            "schema_state": status.state,
            "current_revisions": list(status.current_revisions),
            "head_revisions": list(status.head_revisions),
            "warning": status.warning,
        },
        fmt=args.format,
        pretty=args.pretty,
    )
    return EXIT_OK


def _alembic(args: argparse.Namespace, action: Callable[..., Any], *extra: str) -> int:
    url = normalize_db_url_for_sync(_get_db_url(args))
    try:
        with packaged_migrations_dir() as migrations_path:
            action(alembic_config(url, migrations_path), *extra)
    except PackagedMigrationsError:
        _err("packaged migrations not found; installation may be broken")
        return EXIT_MIGRATIONS_MISSING
    return EXIT_OK


def _cmd_db_migrate_upgrade(args: argparse.Namespace) -> int:
    if not _require_yes(args):
        return EXIT_BAD_ARGS
    revision = getattr(args, "to", "head")
    if revision == "head":
        try:
            status = run_upgrade_to_head(_get_db_url(args))
        except PackagedMigrationsError:
            _err("packaged migrations not found; installation may be broken")
            return EXIT_MIGRATIONS_MISSING
        if status.warning:
            _err(status.warning)
        _output(
            {"ok": True, "revision": revision, "schema_state": status.state},
            fmt=args.format,
            pretty=args.pretty,
        )
        return EXIT_OK
    code = _alembic(args, alembic_command.upgrade, revision)
    if code == EXIT_OK:
        _output({"ok": True, "revision": revision}, fmt=args.format, pretty=args.pretty)
    return code


def _cmd_db_migrate_downgrade(args: argparse.Namespace) -> int:
    if not _require_yes(args):
        return EXIT_BAD_ARGS
    revision = getattr(args, "to", None)
    if not revision:
        _err("--to is required for downgrade")
        return EXIT_BAD_ARGS
    code = _alembic(args, alembic_command.downgrade, revision)
    if code == EXIT_OK:
        _output({"ok": True, "revision": revision}, fmt=args.format, pretty=args.pretty)
    return code


def _cmd_db_migrate_stamp(args: argparse.Namespace) -> int:
    if not _require_yes(args):
        return EXIT_BAD_ARGS
    code = _alembic(args, alembic_command.stamp, args.to)
    if code == EXIT_OK:
        _output({"ok": True, "revision": args.to}, fmt=args.format, pretty=args.pretty)
    return code


def _cmd_db_migrate_current(args: argparse.Namespace) -> int:
    return _alembic(args, alembic_command.current)


def _cmd_db_migrate_heads(args: argparse.Namespace) -> int:
    return _alembic(args, alembic_command.heads)


def _cmd_db_purge_expired(args: argparse.Namespace) -> int:
    if not _require_yes(args):
        return EXIT_BAD_ARGS
    from keybound.auth.sessions import purge_expired

    challenges, sessions = _run_with_db(args, purge_expired)
    _output(
        {"ok": True, "challenges_deleted": challenges, "sessions_deleted": sessions},
        fmt=args.format,
        pretty=args.pretty,
    )
    return EXIT_OK


# ---------------------------------------------------------------------------
# Devices commands
# ---------------------------------------------------------------------------


def _cmd_devices_list(args: argparse.Namespace) -> int:
    from keybound.auth.devices import list_devices

    devices = _run_with_db(
        args,
        lambda db: list_devices(db, status=args.status, limit=args.limit, offset=args.offset),
    )
    _output([_device_dict(d) for d in devices], fmt=args.format, pretty=args.pretty)
    return EXIT_OK


def _cmd_devices_show(args: argparse.Namespace) -> int:
    from keybound.auth.devices import get_device
    from keybound.auth.profiles import get_profile
    from keybound.auth.sessions import list_sessions

    async def _show(db: AsyncSession) -> dict:
        device = await get_device(db, args.device_id)
        data = _device_dict(device)
        user = await get_profile(db, device.id)
        data["user"] = (
            {"public_id": user.public_id, "display_name": user.display_name} if user else None
        )
        data["active_sessions"] = len(await list_sessions(db, device.id))
        return data

    try:
        data = _run_with_db(args, _show)
    except DeviceNotFound:
        _err("device not found")
        return EXIT_NOT_FOUND
    _output(data, fmt=args.format, pretty=args.pretty)
    return EXIT_OK


def _cmd_devices_revoke(args: argparse.Namespace) -> int:
    if not _require_yes(args):
        return EXIT_BAD_ARGS
    from keybound.auth.devices import revoke_device

    try:
        device = _run_with_db(args, lambda db: revoke_device(db, args.device_id))
    except DeviceNotFound:
        _err("device not found")
        return EXIT_NOT_FOUND
    _output(_device_dict(device), fmt=args.format, pretty=args.pretty)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Sessions commands
# ---------------------------------------------------------------------------


def _cmd_sessions_list(args: argparse.Namespace) -> int:
    from keybound.auth.sessions import list_sessions

    sessions = _run_with_db(
        args,
        lambda db: list_sessions(db, args.device_id, include_inactive=args.include_inactive),
    )
    _output([_session_dict(s) for s in sessions], fmt=args.format, pretty=args.pretty)
    return EXIT_OK


def _cmd_sessions_revoke(args: argparse.Namespace) -> int:
    if not _require_yes(args):
        return EXIT_BAD_ARGS
    from keybound.auth.models import AuthSession
    from keybound.auth.sessions import revoke_session

    async def _revoke(db: AsyncSession) -> AuthSession | None:
        result = await db.execute(select(AuthSession).filter(AuthSession.id == args.session_id))
        if (session := result.scalars().first()) is None:
            return None
        await revoke_session(db, session.id)
        await db.refresh(session)
        return session

    session = _run_with_db(args, _revoke)
    if session is None:
        _err("session not found")
        return EXIT_NOT_FOUND
    _output(_session_dict(session), fmt=args.format, pretty=args.pretty)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Argument parser construction
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    # Common flags shared by all leaf subcommands
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", default=None, help="Database URL override")
    common.add_argument(
        "--format", choices=["json", "jsonl"], default="json", help="Output format"
    )
    common.add_argument("--pretty", action="store_true", default=False, help="Pretty-print output")

    parser = argparse.ArgumentParser(prog="keybound", description="keybound operator CLI")
    subparsers = parser.add_subparsers(dest="command")

    # ---- db ----
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command")

    db_sub.add_parser("ping", parents=[common], help="Check database connectivity")

    purge = db_sub.add_parser(
        "purge-expired", parents=[common], help="Delete expired challenges and sessions"
    )
    purge.add_argument("--yes", action="store_true", help="Confirm mutation")

    db_migrate = db_sub.add_parser("migrate", help="Run Alembic migrations")
    migrate_sub = db_migrate.add_subparsers(dest="migrate_command")

    mig_upgrade = migrate_sub.add_parser("upgrade", parents=[common], help="Upgrade database")
    mig_upgrade.add_argument("--to", default="head", help="Target revision (default: head)")
    mig_upgrade.add_argument("--yes", action="store_true", help="Confirm mutation")

    mig_downgrade = migrate_sub.add_parser(
        "downgrade", parents=[common], help="Downgrade database"
    )
    mig_downgrade.add_argument("--to", required=True, help="Target revision")
    mig_downgrade.add_argument("--yes", action="store_true", help="Confirm mutation")

    mig_stamp = migrate_sub.add_parser(
        "stamp", parents=[common], help="Record a revision without running migrations"
    )
    mig_stamp.add_argument("--to", required=True, help="Revision to stamp")
    mig_stamp.add_argument("--yes", action="store_true", help="Confirm mutation")

    migrate_sub.add_parser("current", parents=[common], help="Show current revision")
    migrate_sub.add_parser("heads", parents=[common], help="Show head revisions")

    # ---- devices ----
    devices_parser = subparsers.add_parser("devices", help="Device management")
    devices_sub = devices_parser.add_subparsers(dest="devices_command")

    devices_list = devices_sub.add_parser("list", parents=[common], help="List devices")
    devices_list.add_argument(
        "--status", choices=["active", "locked", "revoked"], default=None, help="Filter by status"
    )
    devices_list.add_argument("--limit", type=int, default=50, help="Limit results")
    devices_list.add_argument("--offset", type=int, default=0, help="Offset results")

    devices_show = devices_sub.add_parser("show", parents=[common], help="Show device details")
    devices_show.add_argument("--device-id", required=True, help="Device ID (d...)")

    devices_revoke = devices_sub.add_parser("revoke", parents=[common], help="Revoke a device")
    devices_revoke.add_argument("--device-id", required=True, help="Device ID (d...)")
    devices_revoke.add_argument("--yes", action="store_true", help="Confirm mutation")

    # ---- sessions ----
    sessions_parser = subparsers.add_parser("sessions", help="Session management")
    sessions_sub = sessions_parser.add_subparsers(dest="sessions_command")

    sessions_list = sessions_sub.add_parser(
        "list", parents=[common], help="List sessions for a device"
    )
    sessions_list.add_argument("--device-id", required=True, help="Device ID (d...)")
    sessions_list.add_argument(
        "--include-inactive", action="store_true", help="Include revoked and expired sessions"
    )

    sessions_revoke = sessions_sub.add_parser("revoke", parents=[common], help="Revoke a session")
    sessions_revoke.add_argument("--session-id", required=True, help="Session ID (s...)")
    sessions_revoke.add_argument("--yes", action="store_true", help="Confirm mutation")

    return parser


# ---------------------------------------------------------------------------
# Command dispatch
# ---------------------------------------------------------------------------

_COMMANDS: dict[tuple[str, ...], Callable[[argparse.Namespace], int]] = {
    ("db", "ping"): _cmd_db_ping,
    ("db", "purge-expired"): _cmd_db_purge_expired,
    ("db", "migrate", "upgrade"): _cmd_db_migrate_upgrade,
    ("db", "migrate", "downgrade"): _cmd_db_migrate_downgrade,
    ("db", "migrate", "stamp"): _cmd_db_migrate_stamp,
    ("db", "migrate", "current"): _cmd_db_migrate_current,
    ("db", "migrate", "heads"): _cmd_db_migrate_heads,
    ("devices", "list"): _cmd_devices_list,
    ("devices", "show"): _cmd_devices_show,
    ("devices", "revoke"): _cmd_devices_revoke,
    ("sessions", "list"): _cmd_sessions_list,
    ("sessions", "revoke"): _cmd_sessions_revoke,
}


def _command_path(args: argparse.Namespace) -> tuple[str, ...]:
    path: list[str] = [args.command]
    for attr in ("db_command", "migrate_command", "devices_command", "sessions_command"):
        if (value := getattr(args, attr, None)) is not None:
            path.append(value)
    return tuple(path)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns an integer exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_BAD_ARGS

    path = _command_path(args)
    if (handler := _COMMANDS.get(path)) is None:
        parser.parse_args([*path, "--help"])
        return EXIT_BAD_ARGS
    return handler(args)
