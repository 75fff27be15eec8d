# authbroker/transit.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# The credential built for each identity travels through the user's browser
# as a URL parameter (sign-in link -> GET /signin). Anything that can read
# the address bar or history could lift it. So:
#
#   1. the credential is ECIES-encrypted to the broker's own transit key
#   2. the ciphertext is wrapped in a token signed by the same transit key
#
# On the way back, the envelope signature is checked first; a tampered
# envelope is rejected before any decryption is attempted.
#
# The transit keypair is generated once per process (TransitKeyPair.generate,
# called by the application factory) and is read-only afterwards. Its private
# half never leaves the process.
#
# ECIES layout (secp256k1):
#   shared      = ECDH(ephemeral_sk, recipient_pk)          (x coordinate)
#   keys        = SHA-512(shared); enc = keys[:32]; mac = keys[32:]
#   cipherText  = AES-256-CBC(enc, iv, PKCS7(plaintext))
#   mac         = HMAC-SHA256(mac, iv || ephemeral_pk || cipherText)
# -----------------------------------------------------------------------------

import hashlib
import hmac
import os
from dataclasses import dataclass, field
from typing import Any, Dict

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import VerificationFailure
from .tokens import (
    CURVE,
    decode_token,
    is_valid_token,
    load_private_key,
    load_public_key,
    private_key_hex,
    public_key_bytes,
    public_key_hex,
    sign_token,
)


# -----------------------------------------------------------------------------
# ECIES
# -----------------------------------------------------------------------------
def _shared_keys(sk: ec.EllipticCurvePrivateKey, pk: ec.EllipticCurvePublicKey) -> tuple[bytes, bytes]:
    shared = sk.exchange(ec.ECDH(), pk)
    digest = hashlib.sha512(shared).digest()
    return digest[:32], digest[32:]


def _mac(key: bytes, iv: bytes, ephemeral_pk: bytes, ciphertext: bytes) -> bytes:
    return hmac.new(key, iv + ephemeral_pk + ciphertext, hashlib.sha256).digest()


def encrypt_content(content: str | bytes, public_key: str) -> Dict[str, Any]:
    """Encrypt content to a compressed secp256k1 public key (hex)."""
    was_string = isinstance(content, str)
    plaintext = content.encode("utf-8") if was_string else bytes(content)

    ephemeral = ec.generate_private_key(CURVE)
    ephemeral_pk = public_key_bytes(ephemeral)
    enc_key, mac_key = _shared_keys(ephemeral, load_public_key(public_key))

    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return {
        "iv": iv.hex(),
        "ephemeralPK": ephemeral_pk.hex(),
        "cipherText": ciphertext.hex(),
        "mac": _mac(mac_key, iv, ephemeral_pk, ciphertext).hex(),
        "wasString": was_string,
    }


def decrypt_content(cipher_object: Dict[str, Any], private_key: str) -> str | bytes:
    """
    Reverse encrypt_content(). Raises ValueError on a MAC mismatch or a
    malformed cipher object.
    """
    try:
        iv = bytes.fromhex(cipher_object["iv"])
        ephemeral_pk = bytes.fromhex(cipher_object["ephemeralPK"])
        ciphertext = bytes.fromhex(cipher_object["cipherText"])
        mac = bytes.fromhex(cipher_object["mac"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"malformed cipher object: {e}") from e

    enc_key, mac_key = _shared_keys(load_private_key(private_key), load_public_key(ephemeral_pk.hex()))

    if not hmac.compare_digest(mac, _mac(mac_key, iv, ephemeral_pk, ciphertext)):
        raise ValueError("cipher object MAC mismatch")

    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    plaintext = unpadder.update(padded) + unpadder.finalize()

    if cipher_object.get("wasString", True):
        return plaintext.decode("utf-8")
    return plaintext


# -----------------------------------------------------------------------------
# Transit keypair
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TransitKeyPair:
    private_key: str = field(repr=False)
    public_key: str

    @classmethod
    def generate(cls) -> "TransitKeyPair":
        sk = private_key_hex(ec.generate_private_key(CURVE))
        return cls(private_key=sk, public_key=public_key_hex(sk))


def seal_credential(credential: str, transit: TransitKeyPair) -> str:
    """Encrypt a credential to the transit key and sign the envelope."""
    envelope = {"json": encrypt_content(credential, transit.public_key)}
    return sign_token(envelope, transit.private_key)


def open_credential(sealed: str, transit: TransitKeyPair) -> str:
    """
    Check the envelope signature, then decrypt the credential.

    Raises VerificationFailure for envelopes this broker did not sign; no
    decryption is attempted for them.
    """
    if not is_valid_token(sealed, transit.public_key):
        raise VerificationFailure("Invalid encrypted auth response: not signed by this authenticator")

    cipher_object = decode_token(sealed)["payload"].get("json")
    if not isinstance(cipher_object, dict):
        raise VerificationFailure("Invalid encrypted auth response: no ciphertext")

    try:
        credential = decrypt_content(cipher_object, transit.private_key)
    except ValueError as e:
        raise VerificationFailure(f"Invalid encrypted auth response: {e}") from e

    if not isinstance(credential, str):
        raise VerificationFailure("Invalid encrypted auth response: not a token")
    return credential
