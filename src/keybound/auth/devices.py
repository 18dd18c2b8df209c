"""Device registry - thumbprint dedup, lockout accounting, status checks."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import and_, case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keybound.auth.models import (
    DEVICE_ACTIVE,
    DEVICE_LOCKED,
    DEVICE_REVOKED,
    Device,
    utcnow,
)
from keybound.auth.primitives import P256PublicJwk, thumbprint, validate_public_key_shape
from keybound.errors import DeviceLocked, DeviceNotFound, DeviceRevoked

logger = logging.getLogger(__name__)

DEFAULT_LOCKOUT_THRESHOLD = 5


async def _find_by_thumbprint(db: AsyncSession, tp: str) -> Device | None:
    result = await db.execute(select(Device).filter(Device.thumbprint == tp))
    return result.scalars().first()


def _touch(device: Device, ip: str | None, user_agent: str | None) -> None:
    device.last_seen_at = utcnow()
    device.last_ip = ip
    device.user_agent = user_agent


async def register_or_touch(
    db: AsyncSession,
    public_key_jwk: P256PublicJwk | Mapping[str, Any],
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> Device:
    """Return the Device for *public_key_jwk*, creating it on first sight.

    The unique index on ``thumbprint`` decides concurrent first registrations:
    the losing insert rolls back, re-fetches the surviving row and touches it.
    Raises :class:`~keybound.errors.InvalidKey` for a malformed key.
    """
    key = validate_public_key_shape(public_key_jwk)
    tp = thumbprint(key)

    existing = await _find_by_thumbprint(db, tp)
    if existing is None:
        device = Device(
            public_key_jwk=json.dumps(key.canonical()),
            thumbprint=tp,
            status=DEVICE_ACTIVE,
            failed_attempts=0,
            last_ip=ip,
            user_agent=user_agent,
        )
        db.add(device)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await _find_by_thumbprint(db, tp)
            if existing is None:
                raise
            logger.info("device registration raced; reusing %s", existing.id)
        else:
            await db.refresh(device)
            logger.info("device registered: %s", device.id)
            return device

    _touch(existing, ip, user_agent)
    await db.commit()
    return existing


async def get_device(db: AsyncSession, device_id: str) -> Device:
    """Fetch a device or raise :class:`DeviceNotFound`."""
    result = await db.execute(
        select(Device).filter(Device.id == device_id).execution_options(populate_existing=True)
    )
    if (device := result.scalars().first()) is None:
        raise DeviceNotFound()
    return device


def ensure_active(device: Device) -> None:
    """Reject locked and revoked devices with their distinct signals."""
    if device.status == DEVICE_LOCKED:
        raise DeviceLocked()
    if device.status == DEVICE_REVOKED:
        raise DeviceRevoked()
    if device.status != DEVICE_ACTIVE:
        raise DeviceRevoked(f"Device is {device.status}")


async def record_failure(
    db: AsyncSession,
    device: Device,
    *,
    threshold: int = DEFAULT_LOCKOUT_THRESHOLD,
) -> int:
    """Charge one failed verification attempt against *device*.

    Increment and lockout happen in a single UPDATE so concurrent failures
    cannot lose counts.  Committed before returning.  Returns the new count.
    """
    trips = and_(Device.status == DEVICE_ACTIVE, Device.failed_attempts + 1 >= threshold)
    await db.execute(
        update(Device)
        .where(Device.id == device.id)
        .values(
            failed_attempts=Device.failed_attempts + 1,
            status=case((trips, DEVICE_LOCKED), else_=Device.status),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(device)
    if device.status == DEVICE_LOCKED and device.failed_attempts == threshold:
        logger.warning(
            "device %s locked after %d failed attempts", device.id, device.failed_attempts
        )
    return device.failed_attempts


async def record_success(
    db: AsyncSession,
    device: Device,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> None:
    """Reset the failure counter and refresh last-seen metadata."""
    device.failed_attempts = 0
    _touch(device, ip, user_agent)
    await db.commit()


async def revoke_device(db: AsyncSession, device_id: str) -> Device:
    """Administratively revoke a device. There is no path back to active."""
    device = await get_device(db, device_id)
    if device.status != DEVICE_REVOKED:
        device.status = DEVICE_REVOKED
        await db.commit()
        logger.warning("device %s revoked", device.id)
    return device


async def list_devices(
    db: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Device]:
    stmt = select(Device).order_by(Device.created_at)
    if status is not None:
        stmt = stmt.filter(Device.status == status)
    result = await db.execute(stmt.limit(limit).offset(offset))
    return list(result.scalars().all())
