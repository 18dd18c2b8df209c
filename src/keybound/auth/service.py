"""Auth orchestration - the device challenge/response protocol.

Per device the flow is ``Unregistered -> Registered -> ChallengeIssued ->
{Verified | Rejected}``.  Every rejected verification that reaches the
challenge or signature step is charged against the device *before* the
error propagates; status rejections (locked/revoked) are not charged.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from keybound.auth.challenges import consume_challenge, get_challenge, issue_challenge
from keybound.auth.codec import sign_session_token, verify_session_token
from keybound.auth.devices import (
    ensure_active,
    get_device,
    record_failure,
    record_success,
    register_or_touch,
)
from keybound.auth.models import AuthSession, Challenge, Device, User, as_utc
from keybound.auth.primitives import P256PublicJwk, verify_signature
from keybound.auth.profiles import get_profile, upsert_profile
from keybound.auth.sessions import create_session, get_session, revoke_session, touch_session
from keybound.config import Settings
from keybound.errors import (
    ChallengeInvalid,
    Forbidden,
    SessionInvalid,
    SignatureInvalid,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IssuedSession:
    """A session token ready to be set as the ``sid`` cookie."""

    token: str
    session_id: str
    device_id: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class Identity:
    """Result of the "who am I" check. Never an error."""

    authenticated: bool
    device_id: str | None = None
    user: User | None = None
    session: AuthSession | None = None


# ---------------------------------------------------------------------------
# Registration & challenge
# ---------------------------------------------------------------------------


async def register(
    db: AsyncSession,
    public_key_jwk: P256PublicJwk | Mapping[str, Any],
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> Device:
    return await register_or_touch(db, public_key_jwk, ip=ip, user_agent=user_agent)


async def start_challenge(db: AsyncSession, settings: Settings, device_id: str) -> Challenge:
    """Issue a challenge for an existing, active device."""
    device = await get_device(db, device_id)
    ensure_active(device)
    return await issue_challenge(db, device, ttl_seconds=settings.challenge_ttl_seconds)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


async def verify(
    db: AsyncSession,
    settings: Settings,
    *,
    device_id: str,
    challenge_id: str,
    signature: str,
    ip: str | None = None,
    user_agent: str | None = None,
) -> IssuedSession:
    """Check a signed challenge and mint a session.

    Order matters: the challenge is consumed before the signature is trusted,
    so a replay loses even while a slow verification is still running.
    """
    secret = settings.require_session_secret()

    device = await get_device(db, device_id)
    await get_challenge(db, challenge_id)
    ensure_active(device)

    try:
        nonce = await consume_challenge(db, challenge_id, device.id)
    except ChallengeInvalid as exc:
        count = await record_failure(db, device, threshold=settings.lockout_threshold)
        logger.info("verification rejected for %s: %s (failures=%d)", device.id, exc.code, count)
        raise

    if not verify_signature(device.jwk, nonce, signature):
        count = await record_failure(db, device, threshold=settings.lockout_threshold)
        logger.info(
            "verification rejected for %s: %s (failures=%d)",
            device.id,
            SignatureInvalid.code,
            count,
        )
        raise SignatureInvalid()

    await record_success(db, device, ip=ip, user_agent=user_agent)
    session = await create_session(
        db,
        device.id,
        ip=ip,
        user_agent=user_agent,
        ttl_seconds=settings.session_ttl_seconds,
    )
    return IssuedSession(
        token=sign_session_token(session.id, secret),
        session_id=session.id,
        device_id=device.id,
        expires_at=as_utc(session.expires_at),
    )


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


async def authenticate(db: AsyncSession, settings: Settings, token: str | None) -> AuthSession:
    """Resolve a cookie token to a live session or raise :class:`SessionInvalid`."""
    secret = settings.require_session_secret()
    if (session_id := verify_session_token(token, secret)) is None:
        raise SessionInvalid()
    return await get_session(db, session_id)


async def refresh(db: AsyncSession, settings: Settings, token: str | None) -> IssuedSession:
    """Extend a live session and reissue its token (same session id)."""
    session = await authenticate(db, settings, token)
    expires_at = await touch_session(db, session.id, ttl_seconds=settings.session_ttl_seconds)
    return IssuedSession(
        token=sign_session_token(session.id, settings.require_session_secret()),
        session_id=session.id,
        device_id=session.device_id,
        expires_at=expires_at,
    )


async def logout(db: AsyncSession, settings: Settings, token: str | None) -> None:
    """Best-effort revoke of the token's session. Never raises; failures are logged."""
    if not token:
        return
    try:
        session_id = verify_session_token(token, settings.require_session_secret())
        if session_id is not None:
            await revoke_session(db, session_id)
    except Exception:  # noqa: BLE001
        logger.exception("logout cleanup failed; reporting success anyway")


async def whoami(db: AsyncSession, settings: Settings, token: str | None) -> Identity:
    """Return the caller's identity, or ``authenticated=False`` for any bad token."""
    if not token:
        return Identity(authenticated=False)
    try:
        session = await authenticate(db, settings, token)
    except SessionInvalid:
        return Identity(authenticated=False)
    user = await get_profile(db, session.device_id)
    return Identity(
        authenticated=True,
        device_id=session.device_id,
        user=user,
        session=session,
    )


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


async def save_profile(
    db: AsyncSession,
    session: AuthSession,
    *,
    device_id: str,
    public_id: str,
    display_name: str,
) -> User:
    """Upsert the profile of the session's own device."""
    if device_id != session.device_id:
        raise Forbidden()
    await get_device(db, device_id)
    return await upsert_profile(db, device_id, public_id=public_id, display_name=display_name)
