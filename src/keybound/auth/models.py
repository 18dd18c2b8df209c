"""Auth SQLAlchemy models.

``Device`` is the root entity.  ``Challenge`` and ``AuthSession`` each belong
to exactly one device; ``User`` is an optional 1:1 profile for a device.
Challenge and session rows are purged once past ``expires_at``.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from keybound.auth.ids import new_challenge_id, new_device_id, new_session_id, new_user_id
from keybound.db.base import Base

DEVICE_ACTIVE = "active"
DEVICE_LOCKED = "locked"
DEVICE_REVOKED = "revoked"
DEVICE_STATUSES = (DEVICE_ACTIVE, DEVICE_LOCKED, DEVICE_REVOKED)


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Device
# ---------------------------------------------------------------------------


class Device(Base):
    __tablename__ = "keybound_devices"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_device_id)
    public_key_jwk: Mapped[str] = mapped_column(Text, nullable=False)  # JSON-serialized JWK
    thumbprint: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DEVICE_ACTIVE, index=True
    )
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def jwk(self) -> dict[str, Any]:
        return json.loads(self.public_key_jwk)


# ---------------------------------------------------------------------------
# Challenge
# ---------------------------------------------------------------------------


class Challenge(Base):
    __tablename__ = "keybound_challenges"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_challenge_id)
    device_id: Mapped[str] = mapped_column(String(32), nullable=False)
    nonce: Mapped[str] = mapped_column(String(64), nullable=False)  # base64url-encoded
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_keybound_challenges_expires_at", "expires_at"),
        Index("ix_keybound_challenges_device_id_expires_at", "device_id", "expires_at"),
    )


# ---------------------------------------------------------------------------
# AuthSession
# ---------------------------------------------------------------------------


class AuthSession(Base):
    __tablename__ = "keybound_sessions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_session_id)
    device_id: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_keybound_sessions_expires_at", "expires_at"),
        Index("ix_keybound_sessions_device_id_expires_at", "device_id", "expires_at"),
    )


# ---------------------------------------------------------------------------
# User  (optional profile, 1:1 with Device)
# ---------------------------------------------------------------------------


class User(Base):
    __tablename__ = "keybound_users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_user_id)
    device_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    public_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
