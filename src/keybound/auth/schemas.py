"""Pydantic schemas for the device auth endpoints.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from keybound.auth.ids import is_challenge_id, is_device_id
from keybound.auth.primitives import P256PublicJwk


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_device_id(value: str) -> str:
    if not is_device_id(value):
        raise ValueError("must be a device identifier")
    return value


def _check_challenge_id(value: str) -> str:
    if not is_challenge_id(value):
        raise ValueError("must be a challenge identifier")
    return value


DeviceId = Annotated[str, AfterValidator(_check_device_id)]
ChallengeId = Annotated[str, AfterValidator(_check_challenge_id)]


# -- Registration --


class RegisterDeviceRequest(CamelModel):
    public_key_jwk: P256PublicJwk = Field(
        ..., description="Public half of the device's ECDSA P-256 key as a JWK."
    )


class RegisterDeviceResponse(CamelModel):
    device_id: str = Field(..., description="Device ID that starts with the d prefix.")


# -- Challenge / verify --


class ChallengeRequest(CamelModel):
    device_id: DeviceId = Field(..., description="Device ID returned by /device/register.")


class ChallengeResponse(CamelModel):
    challenge_id: str = Field(..., description="Challenge ID that starts with the c prefix.")
    nonce: str = Field(..., description="Base64url nonce the device must sign.")


class VerifyRequest(CamelModel):
    device_id: DeviceId = Field(..., description="Device that signed the nonce.")
    challenge_id: ChallengeId = Field(..., description="Challenge ID returned by /auth/challenge.")
    signature: str = Field(
        ...,
        min_length=1,
        description="Base64url raw r||s ECDSA signature over the nonce text.",
    )


# -- Session lifecycle --


class OkResponse(CamelModel):
    ok: bool = True


class RefreshResponse(OkResponse):
    expires_at: datetime = Field(..., description="New session expiry in UTC.")


class UserInfo(CamelModel):
    public_id: str
    display_name: str


class SessionInfo(CamelModel):
    created_at: datetime
    expires_at: datetime


class MeResponse(CamelModel):
    authenticated: bool
    device_id: str | None = None
    user: UserInfo | None = None
    session_info: SessionInfo | None = None


# -- Profiles --


class UpsertUserRequest(CamelModel):
    device_id: DeviceId = Field(..., description="Must match the device of the current session.")
    public_id: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=64)


class UpsertUserResponse(OkResponse):
    user: UserInfo


# -- Errors --


class ErrorDetail(BaseModel):
    code: str = Field(..., description="Stable error code for the failure.")
    message: str = Field(..., description="Human-readable error message.")


class ErrorResponse(BaseModel):
    detail: ErrorDetail
