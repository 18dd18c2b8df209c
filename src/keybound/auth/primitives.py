"""Signature primitives for device keys (ECDSA P-256 / ES256).

Keys travel as JSON Web Keys.  Signatures use the raw ``r || s`` encoding
(64 bytes for P-256) that WebCrypto's ``ECDSA`` ``sign`` produces, base64url
encoded without padding.  PyJWT's :class:`~jwt.algorithms.ECAlgorithm`
handles JWK import and the raw/DER signature conversion.
"""

from __future__ import annotations

import binascii
import hashlib
import json
import secrets
from collections.abc import Mapping
from typing import Any, Literal

from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm
from jwt.exceptions import PyJWTError
from jwt.utils import base64url_decode, base64url_encode
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from keybound.errors import InvalidKey

NONCE_BYTES = 32

_B64URL_PATTERN = r"^[A-Za-z0-9_-]+$"
_ES256 = ECAlgorithm(ECAlgorithm.SHA256)


def b64url(data: bytes) -> str:
    """Encode *data* as unpadded base64url text."""
    return base64url_encode(data).decode("ascii")


class P256PublicJwk(BaseModel):
    """A structurally validated EC P-256 public JWK.

    Unknown members (``ext``, ``alg``, a stray private ``d``...) are dropped.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    kty: Literal["EC"]
    crv: Literal["P-256"]
    x: str = Field(..., min_length=1, pattern=_B64URL_PATTERN)
    y: str = Field(..., min_length=1, pattern=_B64URL_PATTERN)
    use: Literal["sig"] | None = None
    key_ops: list[str] | None = None

    def canonical(self) -> dict[str, str]:
        """Return the thumbprint members in their fixed order."""
        return {"crv": self.crv, "kty": self.kty, "x": self.x, "y": self.y}


def validate_public_key_shape(candidate: Any) -> P256PublicJwk:
    """Parse *candidate* into a :class:`P256PublicJwk` or raise :class:`InvalidKey`.

    Pure structural validation; no key import happens here.
    """
    if isinstance(candidate, P256PublicJwk):
        return candidate
    if not isinstance(candidate, Mapping):
        raise InvalidKey()
    try:
        return P256PublicJwk.model_validate(dict(candidate))
    except PydanticValidationError:
        raise InvalidKey() from None


def thumbprint(jwk: P256PublicJwk | Mapping[str, Any]) -> str:
    """Compute a deterministic SHA-256 thumbprint of a public JWK.

    Only ``crv``, ``kty``, ``x`` and ``y`` are serialized (sorted keys,
    compact separators), so client metadata never changes the result.
    """
    key = validate_public_key_shape(jwk)
    raw = json.dumps(key.canonical(), separators=(",", ":"), sort_keys=True)
    return b64url(hashlib.sha256(raw.encode("utf-8")).digest())


def generate_nonce() -> str:
    """Return 32 random bytes from a CSPRNG, base64url encoded."""
    return b64url(secrets.token_bytes(NONCE_BYTES))


def generate_key_pair() -> tuple[ec.EllipticCurvePrivateKey, dict[str, Any]]:
    """Generate an EC P-256 key pair. Returns (private_key, public_key_jwk_dict)."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    jwk_dict = json.loads(_ES256.to_jwk(private_key.public_key()))
    return private_key, jwk_dict


def sign_message(private_key: ec.EllipticCurvePrivateKey, message: str | bytes) -> str:
    """Sign *message* the way a browser device does (raw ``r || s``, base64url)."""
    data = message.encode("utf-8") if isinstance(message, str) else message
    return b64url(_ES256.sign(data, private_key))


def verify_signature(
    public_key_jwk: P256PublicJwk | Mapping[str, Any],
    message: str | bytes,
    signature: str,
) -> bool:
    """Return True when *signature* is a valid ES256 signature over *message*.

    Malformed keys or signatures yield False rather than an exception so
    callers cannot leak which part of the input was wrong.
    """
    data = message.encode("utf-8") if isinstance(message, str) else message
    try:
        key = validate_public_key_shape(public_key_jwk)
        public_key = _ES256.from_jwk(key.canonical())
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            return False
        raw_sig = base64url_decode(signature)
        return bool(_ES256.verify(data, public_key, raw_sig))
    except (InvalidKey, PyJWTError, ValueError, TypeError, binascii.Error):
        return False
