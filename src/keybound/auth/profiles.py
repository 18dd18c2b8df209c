"""User profiles - the optional public identity attached to a device."""

from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keybound.auth.models import User
from keybound.errors import Conflict

logger = logging.getLogger(__name__)


async def get_profile(db: AsyncSession, device_id: str) -> User | None:
    result = await db.execute(select(User).filter(User.device_id == device_id))
    return result.scalars().first()


async def _raise_if_taken(
    db: AsyncSession, device_id: str, public_id: str, display_name: str
) -> None:
    result = await db.execute(
        select(User).filter(
            or_(User.public_id == public_id, User.display_name == display_name),
            User.device_id != device_id,
        )
    )
    others = result.scalars().all()
    if any(u.display_name == display_name for u in others):
        raise Conflict("display_name")
    if others:
        raise Conflict("public_id")


async def upsert_profile(
    db: AsyncSession,
    device_id: str,
    *,
    public_id: str,
    display_name: str,
) -> User:
    """Create or update the profile for *device_id*.

    A ``public_id`` or ``display_name`` owned by another device raises
    :class:`Conflict`; the other profile is left untouched and the requested
    values are never rewritten.
    """
    await _raise_if_taken(db, device_id, public_id, display_name)

    if (user := await get_profile(db, device_id)) is None:
        user = User(device_id=device_id, public_id=public_id, display_name=display_name)
        db.add(user)
    else:
        user.public_id = public_id
        user.display_name = display_name

    try:
        await db.commit()
    except IntegrityError:
        # Lost a race against another writer; the unique indexes decided.
        await db.rollback()
        await _raise_if_taken(db, device_id, public_id, display_name)
        raise
    await db.refresh(user)
    logger.info("profile saved for device %s", device_id)
    return user
