"""Tamper-evident session tokens: ``<session_id>.<tag>``.

``tag`` is HMAC-SHA256 keyed with the server secret over the session id,
base64url encoded.  A token can be checked for tampering without touching
the store; liveness and revocation still need a Session Ledger lookup.
"""

from __future__ import annotations

import hashlib
import hmac

from keybound.auth.primitives import b64url

SEPARATOR = "."


def _tag(session_id: str, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256)
    return b64url(mac.digest())


def sign_session_token(session_id: str, secret: str) -> str:
    """Return the signed token for *session_id*."""
    if not session_id or SEPARATOR in session_id:
        raise ValueError("session_id must be non-empty and must not contain the separator")
    return f"{session_id}{SEPARATOR}{_tag(session_id, secret)}"


def verify_session_token(token: str | None, secret: str) -> str | None:
    """Return the embedded session id when *token* carries a valid tag, else None.

    Missing separator, empty parts and non-ASCII garbage are all just invalid.
    """
    if not token:
        return None
    session_id, sep, tag = token.rpartition(SEPARATOR)
    if not sep or not session_id or not tag:
        return None
    expected = _tag(session_id, secret)
    if not hmac.compare_digest(tag.encode("utf-8"), expected.encode("utf-8")):
        return None
    return session_id
