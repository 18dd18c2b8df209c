"""Session ledger - issue, refresh, revoke and purge device sessions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keybound.auth.models import AuthSession, Challenge, as_utc, utcnow
from keybound.errors import SessionExpired, SessionNotFound, SessionRevoked

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 900


def _check_usable(session: AuthSession, now: datetime) -> None:
    if session.revoked_at is not None:
        raise SessionRevoked()
    if now >= as_utc(session.expires_at):
        raise SessionExpired()


async def create_session(
    db: AsyncSession,
    device_id: str,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
) -> AuthSession:
    now = utcnow()
    session = AuthSession(
        device_id=device_id,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
        ip=ip,
        user_agent=user_agent,
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)
    logger.info("session issued for device %s", device_id)
    return session


async def get_session(db: AsyncSession, session_id: str) -> AuthSession:
    """Return a usable session or raise a :class:`~keybound.errors.SessionInvalid` subtype."""
    result = await db.execute(
        select(AuthSession)
        .filter(AuthSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    if (session := result.scalars().first()) is None:
        raise SessionNotFound()
    _check_usable(session, utcnow())
    return session


async def touch_session(
    db: AsyncSession,
    session_id: str,
    *,
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
) -> datetime:
    """Reset a live session's expiry to now + TTL and return the new expiry."""
    session = await get_session(db, session_id)
    now = utcnow()
    new_expiry = now + timedelta(seconds=ttl_seconds)
    result = await db.execute(
        update(AuthSession)
        .where(
            AuthSession.id == session_id,
            AuthSession.revoked_at.is_(None),
            AuthSession.expires_at > now,
        )
        .values(expires_at=new_expiry)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(session)
    if result.rowcount != 1:  # type: ignore[attr-defined]
        _check_usable(session, now)
        raise SessionExpired()
    return new_expiry


async def revoke_session(db: AsyncSession, session_id: str) -> None:
    """Mark a session revoked. Unknown or already-revoked sessions are a no-op."""
    result = await db.execute(
        update(AuthSession)
        .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
        .values(revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:  # type: ignore[attr-defined]
        logger.info("session revoked: %s", session_id)


async def list_sessions(
    db: AsyncSession,
    device_id: str,
    *,
    include_inactive: bool = False,
) -> list[AuthSession]:
    stmt = (
        select(AuthSession)
        .filter(AuthSession.device_id == device_id)
        .order_by(AuthSession.created_at)
    )
    if not include_inactive:
        stmt = stmt.filter(AuthSession.revoked_at.is_(None), AuthSession.expires_at > utcnow())
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


async def purge_expired(db: AsyncSession) -> tuple[int, int]:
    """Delete challenges and sessions past ``expires_at``.

    Returns ``(challenges_deleted, sessions_deleted)``.
    """
    now = utcnow()
    challenges = await db.execute(
        delete(Challenge)
        .filter(Challenge.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    sessions = await db.execute(
        delete(AuthSession)
        .filter(AuthSession.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    counts = (
        int(challenges.rowcount),  # type: ignore[attr-defined]
        int(sessions.rowcount),  # type: ignore[attr-defined]
    )
    if any(counts):
        logger.info("purged %d expired challenges and %d expired sessions", *counts)
    return counts
