"""Tests for device key primitives, prefixed ids and the session codec."""

from __future__ import annotations

import hashlib
import json

import pytest

from keybound.auth.codec import sign_session_token, verify_session_token
from keybound.auth.ids import (
    is_challenge_id,
    is_device_id,
    is_session_id,
    new_challenge_id,
    new_device_id,
    new_session_id,
    new_user_id,
)
from keybound.auth.primitives import (
    b64url,
    generate_key_pair,
    generate_nonce,
    sign_message,
    thumbprint,
    validate_public_key_shape,
    verify_signature,
)
from keybound.errors import InvalidKey

_ALLOWED_BASE32 = set("abcdefghijklmnopqrstuvwxyz234567")
SECRET = "codec-secret"


# ---------------------------------------------------------------------------
# IDs
# ---------------------------------------------------------------------------


class TestIdGenerators:
    @pytest.mark.parametrize(
        ("factory", "prefix"),
        [(new_device_id, "d"), (new_challenge_id, "c"), (new_session_id, "s"), (new_user_id, "u")],
    )
    def test_shape(self, factory, prefix):
        value = factory()
        assert len(value) == 32
        assert value[0] == prefix
        assert all(c in _ALLOWED_BASE32 for c in value[1:])

    def test_validators_reject_other_kinds(self):
        assert is_device_id(new_device_id())
        assert not is_device_id(new_session_id())
        assert is_challenge_id(new_challenge_id())
        assert not is_challenge_id("c" + "!" * 31)
        assert is_session_id(new_session_id())
        assert not is_session_id(None)

    def test_unique(self):
        assert len({new_device_id() for _ in range(200)}) == 200


# ---------------------------------------------------------------------------
# Thumbprint & key shape
# ---------------------------------------------------------------------------


class TestThumbprint:
    def test_deterministic(self):
        _, jwk = generate_key_pair()
        assert thumbprint(jwk) == thumbprint(dict(jwk))

    def test_matches_canonical_digest(self):
        _, jwk = generate_key_pair()
        canonical = json.dumps(
            {"crv": "P-256", "kty": "EC", "x": jwk["x"], "y": jwk["y"]}, separators=(",", ":")
        )
        assert thumbprint(jwk) == b64url(hashlib.sha256(canonical.encode()).digest())

    def test_ignores_client_metadata(self):
        _, jwk = generate_key_pair()
        decorated = {**jwk, "ext": True, "key_ops": ["verify"], "use": "sig", "alg": "ES256"}
        assert thumbprint(decorated) == thumbprint(jwk)

    def test_distinct_keys_distinct_thumbprints(self):
        prints = {thumbprint(generate_key_pair()[1]) for _ in range(20)}
        assert len(prints) == 20


class TestKeyShape:
    @pytest.mark.parametrize(
        "mutate",
        [
            lambda k: {**k, "kty": "RSA"},
            lambda k: {**k, "crv": "P-384"},
            lambda k: {key: v for key, v in k.items() if key != "x"},
            lambda k: {**k, "y": 12345},
            lambda k: {**k, "x": "not+base64/url="},
            lambda k: {**k, "use": "enc"},
        ],
    )
    def test_rejects_malformed(self, mutate):
        _, jwk = generate_key_pair()
        with pytest.raises(InvalidKey):
            validate_public_key_shape(mutate(jwk))

    def test_rejects_non_mapping(self):
        with pytest.raises(InvalidKey):
            validate_public_key_shape("not a key")

    def test_drops_private_member(self):
        _, jwk = generate_key_pair()
        key = validate_public_key_shape({**jwk, "d": "secret"})
        assert "d" not in key.model_dump()


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestSignatures:
    def test_nonce_is_32_bytes(self):
        nonce = generate_nonce()
        assert len(nonce) == 43
        assert generate_nonce() != nonce

    def test_valid_signature(self):
        private_key, jwk = generate_key_pair()
        nonce = generate_nonce()
        assert verify_signature(jwk, nonce, sign_message(private_key, nonce)) is True

    def test_wrong_key(self):
        private_key, _ = generate_key_pair()
        _, other_jwk = generate_key_pair()
        nonce = generate_nonce()
        assert verify_signature(other_jwk, nonce, sign_message(private_key, nonce)) is False

    def test_other_message(self):
        private_key, jwk = generate_key_pair()
        signature = sign_message(private_key, generate_nonce())
        assert verify_signature(jwk, generate_nonce(), signature) is False

    @pytest.mark.parametrize("signature", ["", "!!!", "AAAA", b64url(b"\x00" * 64), b64url(b"x" * 10)])
    def test_malformed_signature_is_false(self, signature):
        _, jwk = generate_key_pair()
        assert verify_signature(jwk, "nonce", signature) is False

    def test_malformed_key_is_false(self):
        private_key, jwk = generate_key_pair()
        signature = sign_message(private_key, "nonce")
        assert verify_signature({**jwk, "x": "AAAA"}, "nonce", signature) is False
        assert verify_signature({"kty": "oct"}, "nonce", signature) is False


# ---------------------------------------------------------------------------
# Session codec
# ---------------------------------------------------------------------------


class TestSessionCodec:
    def test_round_trip(self):
        sid = new_session_id()
        assert verify_session_token(sign_session_token(sid, SECRET), SECRET) == sid

    def test_any_single_character_change_is_rejected(self):
        token = sign_session_token(new_session_id(), SECRET)
        for i, ch in enumerate(token):
            replacement = "a" if ch != "a" else "b"
            mutated = token[:i] + replacement + token[i + 1 :]
            assert verify_session_token(mutated, SECRET) is None, i

    def test_wrong_secret(self):
        token = sign_session_token(new_session_id(), SECRET)
        assert verify_session_token(token, "another-secret") is None

    def test_swapped_tag(self):
        a = sign_session_token(new_session_id(), SECRET)
        b = sign_session_token(new_session_id(), SECRET)
        forged = a.split(".")[0] + "." + b.split(".")[1]
        assert verify_session_token(forged, SECRET) is None

    @pytest.mark.parametrize("token", [None, "", "no-separator", ".tagonly", "sidonly.", "é.ü"])
    def test_malformed(self, token):
        assert verify_session_token(token, SECRET) is None

    def test_sign_rejects_separator(self):
        with pytest.raises(ValueError):
            sign_session_token("a.b", SECRET)
        with pytest.raises(ValueError):
            sign_session_token("", SECRET)
