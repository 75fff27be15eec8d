"""
Tests for ES256K compact tokens.
"""

import json

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec

from authbroker.tokens import (
    CURVE,
    address_from_did,
    b64url_decode,
    b64url_encode,
    canonical_private_key,
    decode_token,
    is_valid_token,
    make_did_from_address,
    private_key_hex,
    public_key_hex,
    sign_token,
    verify_token,
)


@pytest.fixture
def private_key() -> str:
    return private_key_hex(ec.generate_private_key(CURVE))


class TestKeyHelpers:
    def test_private_key_has_compression_marker(self, private_key):
        assert len(private_key) == 66
        assert private_key.endswith("01")
        assert canonical_private_key(private_key) == private_key[:64]

    def test_public_key_is_compressed(self, private_key):
        pub = public_key_hex(private_key)
        assert len(pub) == 66
        assert pub[:2] in ("02", "03")
        assert public_key_hex(canonical_private_key(private_key)) == pub

    def test_b64url_has_no_padding(self):
        encoded = b64url_encode(b"\xff\xfe")
        assert "=" not in encoded
        assert b64url_decode(encoded) == b"\xff\xfe"


class TestDid:
    def test_round_trip(self):
        did = make_did_from_address("1BoatSLRHtKNngkdXEeobR76b53LETtpyT")
        assert did == "did:btc-addr:1BoatSLRHtKNngkdXEeobR76b53LETtpyT"
        assert address_from_did(did) == "1BoatSLRHtKNngkdXEeobR76b53LETtpyT"

    def test_rejects_other_methods(self):
        with pytest.raises(ValueError):
            address_from_did("did:web:example.com")


class TestSignVerify:
    def test_verify_returns_payload(self, private_key):
        token = sign_token({"hello": "world", "n": 1}, private_key)
        assert verify_token(token, public_key_hex(private_key)) == {"hello": "world", "n": 1}

    def test_header_names_algorithm(self, private_key):
        header = decode_token(sign_token({}, private_key))["header"]
        assert header == {"alg": "ES256K", "typ": "JWT"}

    def test_signature_is_raw_64_bytes(self, private_key):
        token = sign_token({"a": 1}, private_key)
        assert len(b64url_decode(token.split(".")[2])) == 64

    def test_wrong_key_fails(self, private_key):
        other = private_key_hex(ec.generate_private_key(CURVE))
        token = sign_token({"a": 1}, private_key)
        with pytest.raises(InvalidSignature):
            verify_token(token, public_key_hex(other))
        assert not is_valid_token(token, public_key_hex(other))

    def test_tampered_payload_fails(self, private_key):
        token = sign_token({"a": 1}, private_key)
        header, _, sig = token.split(".")
        forged = ".".join([header, b64url_encode(b'{"a":2}'), sig])
        assert not is_valid_token(forged, public_key_hex(private_key))

    def test_malformed_token(self):
        with pytest.raises(ValueError):
            decode_token("not-a-token")
        with pytest.raises(ValueError):
            decode_token("a.b.c")

    @pytest.mark.parametrize("alg", [1, None, ["ES256K"]])
    def test_non_string_algorithm(self, private_key, alg):
        _, payload, sig = sign_token({"a": 1}, private_key).split(".")
        forged = ".".join([b64url_encode(b'{"alg":' + json.dumps(alg).encode() + b"}"), payload, sig])
        with pytest.raises(ValueError):
            verify_token(forged, public_key_hex(private_key))
        assert not is_valid_token(forged, public_key_hex(private_key))
