"""Device auth API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from keybound.auth import schemas, service
from keybound.auth.models import AuthSession, User, as_utc
from keybound.config import Settings
from keybound.db.session import get_db
from keybound.gate import client_ip

router = APIRouter(tags=["auth"])

_ERR = {"model": schemas.ErrorResponse}


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _settings(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[no-any-return]


def set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        key=settings.cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        path="/",
        secure=settings.effective_cookie_secure(),
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.cookie_name,
        path="/",
        secure=settings.effective_cookie_secure(),
        httponly=True,
        samesite="lax",
    )


async def require_session(request: Request, db: AsyncSession = Depends(get_db)) -> AuthSession:
    """Resolve the session cookie to a live session (full ledger check)."""
    settings = _settings(request)
    token = request.cookies.get(settings.cookie_name)
    return await service.authenticate(db, settings, token)


def _user_info(user: User) -> schemas.UserInfo:
    return schemas.UserInfo(public_id=user.public_id, display_name=user.display_name)


# ---------------------------------------------------------------------------
# Registration & challenge  (unauthenticated)
# ---------------------------------------------------------------------------


@router.post(
    "/device/register",
    response_model=schemas.RegisterDeviceResponse,
    summary="Register a device key",
    description=(
        "Register the public half of a device key pair. Registering the same key "
        "again returns the existing device ID."
    ),
    responses={400: {**_ERR, "description": "Invalid public key JWK."}},
)
async def register_device(
    body: schemas.RegisterDeviceRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    device = await service.register(
        db,
        body.public_key_jwk,
        ip=client_ip(request, trust_forwarded_for=_settings(request).trust_forwarded_for),
        user_agent=request.headers.get("user-agent"),
    )
    return schemas.RegisterDeviceResponse(device_id=device.id)


@router.post(
    "/auth/challenge",
    response_model=schemas.ChallengeResponse,
    summary="Issue a challenge",
    description="Issue a single-use nonce for the device to sign. Valid for two minutes.",
    responses={
        403: {**_ERR, "description": "Device revoked."},
        404: {**_ERR, "description": "Device not found."},
        423: {**_ERR, "description": "Device locked after repeated failures."},
    },
)
async def issue_challenge(
    body: schemas.ChallengeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    challenge = await service.start_challenge(db, _settings(request), body.device_id)
    return schemas.ChallengeResponse(challenge_id=challenge.id, nonce=challenge.nonce)


@router.post(
    "/auth/verify",
    response_model=schemas.OkResponse,
    summary="Verify a signed challenge",
    description=(
        "Verify the device's signature over the challenge nonce. On success a "
        "session is created and returned in the session cookie."
    ),
    responses={
        400: {**_ERR, "description": "Challenge consumed, expired or bound to another device."},
        401: {**_ERR, "description": "Signature does not verify."},
        403: {**_ERR, "description": "Device revoked."},
        404: {**_ERR, "description": "Device or challenge not found."},
        423: {**_ERR, "description": "Device locked after repeated failures."},
    },
)
async def verify_challenge(
    body: schemas.VerifyRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    settings = _settings(request)
    issued = await service.verify(
        db,
        settings,
        device_id=body.device_id,
        challenge_id=body.challenge_id,
        signature=body.signature,
        ip=client_ip(request, trust_forwarded_for=_settings(request).trust_forwarded_for),
        user_agent=request.headers.get("user-agent"),
    )
    set_session_cookie(response, settings, issued.token)
    return schemas.OkResponse()


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "/auth/refresh",
    response_model=schemas.RefreshResponse,
    summary="Refresh the current session",
    description="Extend the current session by the session TTL and reissue the cookie.",
    responses={401: {**_ERR, "description": "Missing, invalid, expired or revoked session."}},
)
async def refresh_session(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    settings = _settings(request)
    issued = await service.refresh(db, settings, request.cookies.get(settings.cookie_name))
    set_session_cookie(response, settings, issued.token)
    return schemas.RefreshResponse(expires_at=issued.expires_at)


@router.post(
    "/auth/logout",
    response_model=schemas.OkResponse,
    summary="Log out",
    description="Revoke the current session if there is one and clear the cookie. Always succeeds.",
)
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    settings = _settings(request)
    await service.logout(db, settings, request.cookies.get(settings.cookie_name))
    clear_session_cookie(response, settings)
    return schemas.OkResponse()


@router.get(
    "/me",
    response_model=schemas.MeResponse,
    response_model_exclude_none=True,
    summary="Current identity",
    description="Report whether the session cookie is valid, and for which device.",
)
async def me(request: Request, db: AsyncSession = Depends(get_db)):
    settings = _settings(request)
    identity = await service.whoami(db, settings, request.cookies.get(settings.cookie_name))
    if not identity.authenticated or identity.session is None:
        return schemas.MeResponse(authenticated=False)
    return schemas.MeResponse(
        authenticated=True,
        device_id=identity.device_id,
        user=_user_info(identity.user) if identity.user is not None else None,
        session_info=schemas.SessionInfo(
            created_at=as_utc(identity.session.created_at),
            expires_at=as_utc(identity.session.expires_at),
        ),
    )


# ---------------------------------------------------------------------------
# Profiles  (authenticated)
# ---------------------------------------------------------------------------


@router.post(
    "/user/upsert",
    response_model=schemas.UpsertUserResponse,
    status_code=status.HTTP_200_OK,
    summary="Create or update the device's profile",
    description=(
        "Set the public ID and display name for the session's device. Both must be "
        "unique across devices."
    ),
    responses={
        401: {**_ERR, "description": "Missing or invalid session."},
        403: {**_ERR, "description": "Session belongs to a different device."},
        404: {**_ERR, "description": "Device not found."},
        409: {**_ERR, "description": "Public ID or display name already taken."},
    },
)
async def upsert_user(
    body: schemas.UpsertUserRequest,
    session: AuthSession = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    user = await service.save_profile(
        db,
        session,
        device_id=body.device_id,
        public_id=body.public_id,
        display_name=body.display_name,
    )
    return schemas.UpsertUserResponse(user=_user_info(user))
