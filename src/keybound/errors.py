"""Error taxonomy shared by the auth core and the HTTP layer.

Every error carries an HTTP ``status_code`` and a machine-stable ``code``.
The HTTP layer turns them into ``{"detail": {"code": ..., "message": ...}}``.
"""

from __future__ import annotations


class KeyboundError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# 400 – malformed input
# ---------------------------------------------------------------------------


class ValidationError(KeyboundError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Invalid request data"


class InvalidKey(ValidationError):
    code = "INVALID_KEY"
    message = "Invalid ECDSA P-256 public key JWK format"


# ---------------------------------------------------------------------------
# 404 – absent records
# ---------------------------------------------------------------------------


class NotFound(KeyboundError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Not found"


class DeviceNotFound(NotFound):
    code = "DEVICE_NOT_FOUND"
    message = "Device not found"


class ChallengeNotFound(NotFound):
    code = "CHALLENGE_NOT_FOUND"
    message = "Challenge not found"


# ---------------------------------------------------------------------------
# Device status
# ---------------------------------------------------------------------------


class DeviceLocked(KeyboundError):
    status_code = 423
    code = "DEVICE_LOCKED"
    message = "Device is locked"


class DeviceRevoked(KeyboundError):
    status_code = 403
    code = "DEVICE_REVOKED"
    message = "Device is revoked"


# ---------------------------------------------------------------------------
# Challenge consumption (always charged against the device)
# ---------------------------------------------------------------------------


class ChallengeInvalid(KeyboundError):
    status_code = 400
    code = "CHALLENGE_INVALID"
    message = "Challenge is not valid"


class AlreadyConsumed(ChallengeInvalid):
    code = "CHALLENGE_CONSUMED"
    message = "Challenge already consumed"


class Expired(ChallengeInvalid):
    code = "CHALLENGE_EXPIRED"
    message = "Challenge expired"


class DeviceMismatch(ChallengeInvalid):
    code = "CHALLENGE_DEVICE_MISMATCH"
    message = "Challenge does not belong to device"


class SignatureInvalid(KeyboundError):
    status_code = 401
    code = "SIGNATURE_INVALID"
    message = "Invalid signature"


# ---------------------------------------------------------------------------
# Sessions (no device-side penalty)
# ---------------------------------------------------------------------------


class SessionInvalid(KeyboundError):
    status_code = 401
    code = "SESSION_INVALID"
    message = "Invalid session cookie"


class SessionNotFound(SessionInvalid):
    code = "SESSION_NOT_FOUND"
    message = "Session not found"


class SessionRevoked(SessionInvalid):
    code = "SESSION_REVOKED"
    message = "Session revoked"


class SessionExpired(SessionInvalid):
    code = "SESSION_EXPIRED"
    message = "Session expired"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class Forbidden(KeyboundError):
    status_code = 403
    code = "SESSION_DEVICE_MISMATCH"
    message = "Session does not belong to device"


class Conflict(KeyboundError):
    status_code = 409
    code = "CONFLICT"
    message = "Conflict"

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        self.code = f"{field.upper()}_TAKEN"
        super().__init__(message or f"{field} is already taken")

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message, "field": self.field}


# ---------------------------------------------------------------------------
# 500
# ---------------------------------------------------------------------------


class InternalError(KeyboundError):
    """Store or configuration failure; details are logged, never returned."""


class ConfigError(InternalError):
    """Required configuration is missing."""
