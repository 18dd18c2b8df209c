"""Prefixed base32 ID generators and validators.

Scheme
------
* 20 random bytes from :mod:`secrets` -> base32 (lowercase, no padding) = 32 chars.
* The first character is replaced with a type prefix:
  - 'd' for device IDs
  - 'c' for challenge IDs
  - 's' for session IDs
  - 'u' for user profile IDs

The alphabet never contains ``.``, so IDs are safe to embed in session tokens.
"""

from __future__ import annotations

import base64
import secrets

_ID_LEN = 32
_ID_BYTES = 20
_ALLOWED_CHARS = frozenset("abcdefghijklmnopqrstuvwxyz234567")

DEVICE_PREFIX = "d"
CHALLENGE_PREFIX = "c"
SESSION_PREFIX = "s"
USER_PREFIX = "u"


def random_base32(nbytes: int = _ID_BYTES) -> str:
    """Return a lowercase base32 string (no padding) from *nbytes* random bytes.

    *nbytes* must be a multiple of 5 to avoid ``=`` padding.
    """
    if nbytes <= 0 or nbytes % 5 != 0:
        raise ValueError("nbytes must be a positive multiple of 5")
    return base64.b32encode(secrets.token_bytes(nbytes)).decode("ascii").lower()


def _new_id(prefix: str) -> str:
    return prefix + random_base32()[1:]


def _is_id(value: object, prefix: str) -> bool:
    return (
        isinstance(value, str)
        and len(value) == _ID_LEN
        and value[:1] == prefix
        and all(c in _ALLOWED_CHARS for c in value[1:])
    )


def new_device_id() -> str:
    return _new_id(DEVICE_PREFIX)


def new_challenge_id() -> str:
    return _new_id(CHALLENGE_PREFIX)


def new_session_id() -> str:
    return _new_id(SESSION_PREFIX)


def new_user_id() -> str:
    return _new_id(USER_PREFIX)


def is_device_id(value: object) -> bool:
    """Return True when *value* looks like a device ID."""
    return _is_id(value, DEVICE_PREFIX)


def is_challenge_id(value: object) -> bool:
    return _is_id(value, CHALLENGE_PREFIX)


def is_session_id(value: object) -> bool:
    return _is_id(value, SESSION_PREFIX)
