"""Tests for the operator CLI and packaged Alembic migrations."""

from __future__ import annotations

import argparse
import importlib.resources
import json
from datetime import UTC, datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

import keybound.cli as cli_module
from keybound.auth import models
from keybound.auth.primitives import generate_key_pair, thumbprint
from keybound.cli import EXIT_BAD_ARGS, EXIT_NOT_FOUND
from keybound.db.base import Base
from keybound.db.engine import sync_to_async_url
from keybound.db.migrations.runtime import normalize_db_url_for_sync

from conftest import run_cli

# ---------------------------------------------------------------------------
# Packaged migrations tests
# ---------------------------------------------------------------------------


class TestPackagedMigrations:
    def test_env_py_exists(self):
        migrations = importlib.resources.files("keybound.db.migrations")
        assert (migrations / "env.py").is_file()

    def test_versions_contain_initial_revision(self):
        versions = importlib.resources.files("keybound.db.migrations") / "versions"
        migration_files = [
            f.name for f in versions.iterdir() if f.name.endswith(".py") and f.name != "__init__.py"
        ]
        assert any("0001" in f for f in migration_files)

    def test_script_template_exists(self):
        migrations = importlib.resources.files("keybound.db.migrations")
        assert (migrations / "script.py.mako").is_file()


# ---------------------------------------------------------------------------
# URL normalization
# ---------------------------------------------------------------------------


class TestNormalizeDbUrl:
    def test_async_url_for_bare_schemes(self):
        assert sync_to_async_url("sqlite:///test.db") == "sqlite+aiosqlite:///test.db"
        assert sync_to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert sync_to_async_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    def test_sqlite_aiosqlite(self):
        assert make_url(normalize_db_url_for_sync("sqlite+aiosqlite:///test.db")).drivername == "sqlite"

    def test_postgresql_asyncpg(self):
        normalized = make_url(normalize_db_url_for_sync("postgresql+asyncpg://u:p@host/db"))
        assert normalized.drivername == "postgresql+psycopg"
        assert normalized.username == "u"
        assert normalized.host == "host"
        assert normalized.database == "db"

    def test_postgres_shorthand(self):
        normalized = make_url(normalize_db_url_for_sync("postgres://u:p@host/db"))
        assert normalized.drivername == "postgresql+psycopg"

    def test_sqlite_unchanged(self):
        assert make_url(normalize_db_url_for_sync("sqlite:///test.db")).drivername == "sqlite"


class TestAlembicUrlNormalization:
    def test_db_migrate_current_passes_sync_url_into_alembic_config(self, monkeypatch):
        captured: dict[str, str] = {}

        def _fake_current(cfg):  # type: ignore[no-untyped-def]
            captured["sqlalchemy.url"] = cfg.get_main_option("sqlalchemy.url")

        monkeypatch.setattr(cli_module.alembic_command, "current", _fake_current)

        args = argparse.Namespace(db="sqlite+aiosqlite:///./test.db", format="json", pretty=False)
        assert cli_module._cmd_db_migrate_current(args) == 0
        assert make_url(captured["sqlalchemy.url"]) == make_url("sqlite:///./test.db")


# ---------------------------------------------------------------------------
# CLI integration (using subprocess to avoid sys.exit leaking)
# ---------------------------------------------------------------------------


class TestCLIHelp:
    def test_help_returns_zero(self):
        result = run_cli("--help")
        assert result.returncode == 0
        assert "keybound" in result.stdout

    def test_db_help(self):
        assert run_cli("db", "--help").returncode == 0

    def test_no_command(self):
        assert run_cli().returncode == EXIT_BAD_ARGS


class TestCLIDbPing:
    def test_ping_sqlite(self, tmp_path):
        result = run_cli("db", "ping", "--db", f"sqlite:///{tmp_path}/ping_test.db")
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["ok"] is True
        assert data["schema_state"] == "fresh"

    def test_ping_uses_env_database_url(self, tmp_path):
        result = run_cli(
            "db",
            "ping",
            env_override={"KEYBOUND_DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path}/env.db"},
        )
        assert result.returncode == 0
        assert json.loads(result.stdout)["ok"] is True


class TestCLIDbMigrate:
    def test_upgrade_requires_yes(self, tmp_path):
        result = run_cli("db", "migrate", "upgrade", "--db", f"sqlite:///{tmp_path}/m.db")
        assert result.returncode == EXIT_BAD_ARGS
        assert "--yes" in result.stderr

    def test_upgrade_on_fresh_db(self, tmp_path):
        db_url = f"sqlite:///{tmp_path}/m.db"
        result = run_cli("db", "migrate", "upgrade", "--db", db_url, "--yes")
        assert result.returncode == 0
        assert json.loads(result.stdout)["schema_state"] == "at_head"

        ping = json.loads(run_cli("db", "ping", "--db", db_url).stdout)
        assert ping["current_revisions"] == ["0001"]

    def test_stamp_requires_yes(self, tmp_path):
        result = run_cli("db", "migrate", "stamp", "--to", "head", "--db", f"sqlite:///{tmp_path}/m.db")
        assert result.returncode == EXIT_BAD_ARGS

    def test_current(self, tmp_path):
        result = run_cli("db", "migrate", "current", "--db", f"sqlite:///{tmp_path}/m.db")
        assert result.returncode == 0

    def test_heads(self, tmp_path):
        result = run_cli("db", "migrate", "heads", "--db", f"sqlite:///{tmp_path}/m.db")
        assert result.returncode == 0
        assert "0001" in result.stdout


# ---------------------------------------------------------------------------
# Devices and sessions
# ---------------------------------------------------------------------------


class _SeededDb:
    def _init_db(self, tmp_path) -> str:
        db_url = f"sqlite:///{tmp_path}/ops_test.db"
        engine = create_engine(db_url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(engine)
        engine.dispose()
        return db_url

    def _create_device(self, db_url: str) -> str:
        _, jwk = generate_key_pair()
        engine = create_engine(db_url, connect_args={"check_same_thread": False})
        with Session(engine) as session:
            device = models.Device(public_key_jwk=json.dumps(jwk), thumbprint=thumbprint(jwk))
            session.add(device)
            session.commit()
            device_id = device.id
        engine.dispose()
        return device_id

    def _create_session(self, db_url: str, device_id: str, *, ttl: timedelta) -> str:
        engine = create_engine(db_url, connect_args={"check_same_thread": False})
        with Session(engine) as session:
            auth_session = models.AuthSession(
                device_id=device_id, expires_at=datetime.now(UTC) + ttl
            )
            session.add(auth_session)
            session.commit()
            session_id = auth_session.id
        engine.dispose()
        return session_id


class TestCLIDevices(_SeededDb):
    def test_devices_list(self, tmp_path):
        db_url = self._init_db(tmp_path)
        device_id = self._create_device(db_url)
        result = run_cli("devices", "list", "--db", db_url)
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert [d["id"] for d in data] == [device_id]
        assert "public_key_jwk" not in data[0]

    def test_devices_list_status_filter(self, tmp_path):
        db_url = self._init_db(tmp_path)
        self._create_device(db_url)
        result = run_cli("devices", "list", "--status", "revoked", "--db", db_url)
        assert json.loads(result.stdout) == []

    def test_devices_show(self, tmp_path):
        db_url = self._init_db(tmp_path)
        device_id = self._create_device(db_url)
        self._create_session(db_url, device_id, ttl=timedelta(minutes=15))
        result = run_cli("devices", "show", "--device-id", device_id, "--db", db_url)
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["status"] == "active"
        assert data["user"] is None
        assert data["active_sessions"] == 1

    def test_devices_show_not_found(self, tmp_path):
        db_url = self._init_db(tmp_path)
        result = run_cli("devices", "show", "--device-id", "d" + "a" * 31, "--db", db_url)
        assert result.returncode == EXIT_NOT_FOUND

    def test_devices_revoke(self, tmp_path):
        db_url = self._init_db(tmp_path)
        device_id = self._create_device(db_url)
        assert run_cli("devices", "revoke", "--device-id", device_id, "--db", db_url).returncode == (
            EXIT_BAD_ARGS
        )
        result = run_cli("devices", "revoke", "--device-id", device_id, "--db", db_url, "--yes")
        assert result.returncode == 0
        assert json.loads(result.stdout)["status"] == "revoked"


class TestCLISessions(_SeededDb):
    def test_sessions_list_and_revoke(self, tmp_path):
        db_url = self._init_db(tmp_path)
        device_id = self._create_device(db_url)
        session_id = self._create_session(db_url, device_id, ttl=timedelta(minutes=15))

        listed = json.loads(run_cli("sessions", "list", "--device-id", device_id, "--db", db_url).stdout)
        assert [s["id"] for s in listed] == [session_id]

        result = run_cli("sessions", "revoke", "--session-id", session_id, "--db", db_url, "--yes")
        assert result.returncode == 0
        assert json.loads(result.stdout)["revoked_at"] is not None

        listed = json.loads(run_cli("sessions", "list", "--device-id", device_id, "--db", db_url).stdout)
        assert listed == []
        listed = json.loads(
            run_cli(
                "sessions", "list", "--device-id", device_id, "--include-inactive", "--db", db_url
            ).stdout
        )
        assert len(listed) == 1

    def test_sessions_revoke_not_found(self, tmp_path):
        db_url = self._init_db(tmp_path)
        result = run_cli("sessions", "revoke", "--session-id", "s" + "a" * 31, "--db", db_url, "--yes")
        assert result.returncode == EXIT_NOT_FOUND

    def test_purge_expired(self, tmp_path):
        db_url = self._init_db(tmp_path)
        device_id = self._create_device(db_url)
        self._create_session(db_url, device_id, ttl=timedelta(minutes=-1))
        self._create_session(db_url, device_id, ttl=timedelta(minutes=15))

        assert run_cli("db", "purge-expired", "--db", db_url).returncode == EXIT_BAD_ARGS
        result = run_cli("db", "purge-expired", "--db", db_url, "--yes")
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["sessions_deleted"] == 1
        assert data["challenges_deleted"] == 0
