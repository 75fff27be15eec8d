"""
Tests for the transit layer (ECIES + signed envelope).
"""

import json

import pytest

from authbroker.errors import VerificationFailure
from authbroker.tokens import b64url_decode, b64url_encode, decode_token
from authbroker.transit import (
    TransitKeyPair,
    decrypt_content,
    encrypt_content,
    open_credential,
    seal_credential,
)


@pytest.fixture
def transit() -> TransitKeyPair:
    return TransitKeyPair.generate()


class TestEcies:
    def test_string_round_trip(self, transit):
        cipher = encrypt_content("hello world", transit.public_key)
        assert set(cipher) == {"iv", "ephemeralPK", "cipherText", "mac", "wasString"}
        assert cipher["wasString"] is True
        assert decrypt_content(cipher, transit.private_key) == "hello world"

    def test_bytes_round_trip(self, transit):
        cipher = encrypt_content(b"\x00\x01\x02", transit.public_key)
        assert decrypt_content(cipher, transit.private_key) == b"\x00\x01\x02"

    def test_fresh_ephemeral_key_each_time(self, transit):
        a = encrypt_content("x", transit.public_key)
        b = encrypt_content("x", transit.public_key)
        assert a["ephemeralPK"] != b["ephemeralPK"]

    def test_mac_mismatch(self, transit):
        cipher = encrypt_content("hello", transit.public_key)
        ct = bytearray.fromhex(cipher["cipherText"])
        ct[0] ^= 1
        cipher["cipherText"] = ct.hex()
        with pytest.raises(ValueError):
            decrypt_content(cipher, transit.private_key)

    def test_wrong_recipient(self, transit):
        cipher = encrypt_content("hello", transit.public_key)
        with pytest.raises(ValueError):
            decrypt_content(cipher, TransitKeyPair.generate().private_key)

    def test_malformed(self, transit):
        with pytest.raises(ValueError):
            decrypt_content({"iv": "zz"}, transit.private_key)


class TestEnvelope:
    def test_round_trip(self, transit):
        sealed = seal_credential("a.b.c", transit)
        assert open_credential(sealed, transit) == "a.b.c"

    def test_credential_is_not_readable_in_transit(self, transit):
        sealed = seal_credential("secret-credential", transit)
        assert "secret-credential" not in json.dumps(decode_token(sealed))

    def test_other_broker_cannot_open(self, transit):
        sealed = seal_credential("a.b.c", transit)
        with pytest.raises(VerificationFailure, match="not signed by this authenticator"):
            open_credential(sealed, TransitKeyPair.generate())

    @pytest.mark.parametrize("part", [0, 1, 2])
    def test_tampered_envelope_rejected_before_decryption(self, transit, part, monkeypatch):
        import authbroker.transit as transit_mod

        def fail(*a, **kw):
            raise AssertionError("decryption attempted")

        sealed = seal_credential("a.b.c", transit)
        parts = sealed.split(".")
        raw = bytearray(b64url_decode(parts[part]))
        raw[len(raw) // 2] ^= 0x01
        parts[part] = b64url_encode(bytes(raw))

        monkeypatch.setattr(transit_mod, "decrypt_content", fail)
        with pytest.raises(VerificationFailure):
            open_credential(".".join(parts), transit)
