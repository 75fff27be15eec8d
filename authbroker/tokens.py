# authbroker/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *token layer* shared by every party in the
# handshake: applications, the broker, identities and storage hubs.
#
# Responsibilities:
#   - Create and verify compact JWS tokens signed with secp256k1 (ES256K)
#   - Provide deterministic serialization of the signed payload
#   - Convert between private keys, public keys and DIDs
#
# What this module is NOT:
#   - Not a claims validator (expiry, issuer binding etc. live in credentials.py)
#   - Not a key derivation layer (keys.py)
#
# Token wire format (JWT compact serialization):
#
#     <header_b64url>.<payload_b64url>.<signature_b64url>
#
# Where:
#   - header  = {"alg": "ES256K", "typ": "JWT"}
#   - payload = JSON, sorted keys, no whitespace
#   - signature = raw r||s (32 + 32 bytes) over "<header_b64url>.<payload_b64url>"
#
# Key encoding:
#   - private keys: 64 hex chars, optionally followed by "01" (compressed marker)
#   - public keys:  compressed SEC1 point, hex (66 chars)
# -----------------------------------------------------------------------------

import base64
import json
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

ALGORITHM = "ES256K"
DID_PREFIX = "did:btc-addr:"

CURVE = ec.SECP256K1()
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 encoding WITHOUT padding (JWS segments, query strings)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Padding is restored automatically to allow lenient decoding.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


def _canonical_json(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


# -----------------------------------------------------------------------------
# Key helpers
# -----------------------------------------------------------------------------
def canonical_private_key(private_key_hex: str) -> str:
    """Strip the optional compressed-key marker, leaving 64 hex chars."""
    k = str(private_key_hex).strip().lower()
    if len(k) == 66 and k.endswith("01"):
        k = k[:64]
    if len(k) != 64:
        raise ValueError("private key must be 32 bytes of hex (optionally suffixed with 01)")
    return k


def load_private_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    secret = int(canonical_private_key(private_key_hex), 16)
    if not 0 < secret < CURVE_ORDER:
        raise ValueError("private key out of range for secp256k1")
    return ec.derive_private_key(secret, CURVE)


def load_public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes.fromhex(public_key_hex))


def public_key_bytes(key: ec.EllipticCurvePrivateKey | ec.EllipticCurvePublicKey) -> bytes:
    if isinstance(key, ec.EllipticCurvePrivateKey):
        key = key.public_key()
    return key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def public_key_hex(private_key_hex: str) -> str:
    """Compressed public key (hex) for a hex private key."""
    return public_key_bytes(load_private_key(private_key_hex)).hex()


def private_key_hex(key: ec.EllipticCurvePrivateKey, compressed: bool = True) -> str:
    raw = key.private_numbers().private_value.to_bytes(32, "big").hex()
    return raw + "01" if compressed else raw


# -----------------------------------------------------------------------------
# DIDs
# -----------------------------------------------------------------------------
def make_did_from_address(address: str) -> str:
    return DID_PREFIX + address


def address_from_did(did: str) -> str:
    did = str(did or "")
    if not did.startswith(DID_PREFIX):
        raise ValueError(f"unsupported DID: {did!r}")
    return did[len(DID_PREFIX):]


# -----------------------------------------------------------------------------
# Signing
# -----------------------------------------------------------------------------
def sign_token(payload_obj: Dict[str, Any], private_key_hex_: str) -> str:
    """
    Sign a payload object into a compact ES256K token.

    The payload is serialized with sorted keys and no whitespace, so the same
    object always yields the same signing input.
    """
    sk = load_private_key(private_key_hex_)
    header = {"alg": ALGORITHM, "typ": "JWT"}
    signing_input = b64url_encode(_canonical_json(header)) + "." + b64url_encode(_canonical_json(payload_obj))

    der = sk.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    # low-s form
    if s > CURVE_ORDER // 2:
        s = CURVE_ORDER - s
    sig = r.to_bytes(32, "big") + s.to_bytes(32, "big")
    return signing_input + "." + b64url_encode(sig)


# -----------------------------------------------------------------------------
# Decoding / verification
# -----------------------------------------------------------------------------
def decode_token(token: str) -> Dict[str, Any]:
    """
    Parse a compact token into {"header", "payload", "signature"}.

    This performs *format validation only*.
    """
    parts = str(token).strip().split(".")
    if len(parts) != 3:
        raise ValueError("bad token format")

    try:
        header = json.loads(b64url_decode(parts[0]).decode("utf-8"))
        payload = json.loads(b64url_decode(parts[1]).decode("utf-8"))
    except Exception as e:
        raise ValueError(f"bad token encoding: {e}") from e

    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise ValueError("token header and payload must be JSON objects")

    return {"header": header, "payload": payload, "signature": parts[2]}


def verify_token(token: str, public_key_hex_: str) -> Dict[str, Any]:
    """
    Verify a compact token against a compressed public key and return its payload.

    Raises:
      - ValueError on malformed tokens or unsupported algorithms
      - InvalidSignature when the signature does not match

    Claims (expiry, issuer, audience) are NOT checked here.
    """
    decoded = decode_token(token)
    alg = decoded["header"].get("alg")
    if not isinstance(alg, str) or alg.upper() != ALGORITHM:
        raise ValueError(f"unsupported token algorithm: {alg!r}")

    sig = b64url_decode(decoded["signature"])
    if len(sig) != 64:
        raise InvalidSignature("signature must be 64 bytes")

    r = int.from_bytes(sig[:32], "big")
    s = int.from_bytes(sig[32:], "big")
    signing_input = token.strip().rsplit(".", 1)[0].encode("ascii")

    pk = load_public_key(public_key_hex_)
    pk.verify(encode_dss_signature(r, s), signing_input, ec.ECDSA(hashes.SHA256()))
    return decoded["payload"]


def is_valid_token(token: str, public_key_hex_: str) -> bool:
    try:
        verify_token(token, public_key_hex_)
    except (ValueError, InvalidSignature):
        return False
    return True
