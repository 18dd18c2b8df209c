"""Challenge ledger - single-use, short-lived nonces bound to a device."""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keybound.auth.devices import ensure_active
from keybound.auth.models import Challenge, Device, as_utc, utcnow
from keybound.auth.primitives import generate_nonce
from keybound.errors import AlreadyConsumed, ChallengeNotFound, DeviceMismatch, Expired

DEFAULT_CHALLENGE_TTL_SECONDS = 120


async def issue_challenge(
    db: AsyncSession,
    device: Device,
    *,
    ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
) -> Challenge:
    """Create a fresh challenge for an active *device*."""
    ensure_active(device)
    now = utcnow()
    challenge = Challenge(
        device_id=device.id,
        nonce=generate_nonce(),
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
    db.add(challenge)
    await db.commit()
    await db.refresh(challenge)
    return challenge


async def get_challenge(db: AsyncSession, challenge_id: str) -> Challenge:
    """Fetch a challenge or raise :class:`ChallengeNotFound`."""
    result = await db.execute(
        select(Challenge)
        .filter(Challenge.id == challenge_id)
        .execution_options(populate_existing=True)
    )
    if (challenge := result.scalars().first()) is None:
        raise ChallengeNotFound()
    return challenge


async def consume_challenge(db: AsyncSession, challenge_id: str, device_id: str) -> str:
    """Stamp a challenge consumed and return its nonce.

    The conditional UPDATE is the serialization point: of two concurrent
    consumers exactly one matches the row, the other sees ``AlreadyConsumed``.
    When nothing matched, the row is re-read to name the failure.
    """
    now = utcnow()
    result = await db.execute(
        update(Challenge)
        .where(
            Challenge.id == challenge_id,
            Challenge.device_id == device_id,
            Challenge.consumed_at.is_(None),
            Challenge.expires_at > now,
        )
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 1:  # type: ignore[attr-defined]
        challenge = await get_challenge(db, challenge_id)
        return challenge.nonce

    challenge = await get_challenge(db, challenge_id)
    if challenge.consumed_at is not None:
        raise AlreadyConsumed()
    if as_utc(challenge.expires_at) <= now:
        raise Expired()
    if challenge.device_id != device_id:
        raise DeviceMismatch()
    # A concurrent writer touched the row between the UPDATE and the re-read.
    raise AlreadyConsumed()
