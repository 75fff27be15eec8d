"""
authbroker/keys.py

Deterministic key hierarchy for identities and applications.

Everything here is a pure function of the backup phrase (seed) and its
inputs; nothing is cached across requests and nothing touches the network.

Hierarchy (BIP-32, all hardened):

    m / 888' / 0'                      identity keychain
    m / 888' / 0' / i'                 owner key of identity i
    m / 888' / 0' / i' / 0'            apps node of identity i
    apps / <8 chunks of H(origin+salt)>'   application key (current)
    apps / <hashCode(H(origin+salt))>'     application key (legacy)

where salt = sha256(hex(owner public key)) and H = sha256, both as hex.

Addresses are Base58Check(version || RIPEMD160(SHA256(compressed pubkey))),
version 0 on mainnet and 111 on testnet/regtest. An identity address is the
owner key's address prefixed with "ID-".
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import base58
from Crypto.Hash import RIPEMD160
from cryptography.hazmat.primitives.asymmetric import ec
from mnemonic import Mnemonic

from .tokens import CURVE, CURVE_ORDER, load_private_key, public_key_bytes


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
HARDENED = 0x80000000
IDENTITY_KEYCHAIN = 888
BLOCKSTACK_ON_BITCOIN = 0
APPS_NODE_INDEX = 0

ID_ADDRESS_PREFIX = "ID-"

MAINNET_VERSION = 0
TESTNET_VERSION = 111
MAINNET_P2SH_VERSION = 5
TESTNET_P2SH_VERSION = 196


# -----------------------------------------------------------------------------
# Networks
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Network:
    name: str
    address_version: int


NETWORKS: Dict[str, Network] = {
    "mainnet": Network("mainnet", MAINNET_VERSION),
    "testnet": Network("testnet", TESTNET_VERSION),
    "regtest": Network("regtest", TESTNET_VERSION),
}


def get_network(name: str) -> Network:
    try:
        return NETWORKS[str(name).strip().lower()]
    except KeyError:
        raise ValueError(f"unknown network: {name!r}") from None


# -----------------------------------------------------------------------------
# Addresses
# -----------------------------------------------------------------------------
def _hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def address_from_public_key(pubkey: bytes, version: int = MAINNET_VERSION) -> str:
    return base58.b58encode_check(bytes([version]) + _hash160(pubkey)).decode("ascii")


def address_from_private_key(private_key_hex: str, version: int = MAINNET_VERSION) -> str:
    return address_from_public_key(public_key_bytes(load_private_key(private_key_hex)), version)


def to_mainnet_address(address: str) -> str:
    """
    Re-encode an address under the mainnet version byte.

    Registry lookups are keyed by the canonical (mainnet) form, whatever
    network the broker itself runs against.
    """
    raw = base58.b58decode_check(strip_id_prefix(address))
    version = raw[0]
    if version == TESTNET_VERSION:
        version = MAINNET_VERSION
    elif version == TESTNET_P2SH_VERSION:
        version = MAINNET_P2SH_VERSION
    return base58.b58encode_check(bytes([version]) + raw[1:]).decode("ascii")


def strip_id_prefix(address: str) -> str:
    address = str(address).strip()
    if address.startswith(ID_ADDRESS_PREFIX):
        return address[len(ID_ADDRESS_PREFIX):]
    return address


def same_address(a: str, b: str) -> bool:
    """Compare two addresses independent of network version and ID- prefix."""
    try:
        return to_mainnet_address(a) == to_mainnet_address(b)
    except ValueError:
        return False


# -----------------------------------------------------------------------------
# BIP-32 private derivation
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class HDNode:
    secret: int = field(repr=False)
    chain_code: bytes = field(repr=False)

    @classmethod
    def from_seed(cls, seed: bytes) -> "HDNode":
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        secret = int.from_bytes(digest[:32], "big")
        if not 0 < secret < CURVE_ORDER:
            raise ValueError("seed produced an invalid master key")
        return cls(secret, digest[32:])

    @property
    def public_key(self) -> bytes:
        return public_key_bytes(ec.derive_private_key(self.secret, CURVE))

    @property
    def private_key(self) -> str:
        """Hex private key with the compressed-key marker."""
        return self.secret.to_bytes(32, "big").hex() + "01"

    def derive(self, index: int) -> "HDNode":
        if index >= HARDENED:
            data = b"\x00" + self.secret.to_bytes(32, "big") + index.to_bytes(4, "big")
        else:
            data = self.public_key + index.to_bytes(4, "big")

        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        tweak = int.from_bytes(digest[:32], "big")
        child = (tweak + self.secret) % CURVE_ORDER
        if tweak >= CURVE_ORDER or child == 0:
            raise ValueError(f"invalid child key at index {index}")
        return HDNode(child, digest[32:])

    def derive_hardened(self, index: int) -> "HDNode":
        if not 0 <= index < HARDENED:
            raise ValueError(f"hardened index out of range: {index}")
        return self.derive(index + HARDENED)


# -----------------------------------------------------------------------------
# Key records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class OwnerKey:
    id_address: str
    private_key: str = field(repr=False)
    public_key: str
    index: int

    @property
    def address(self) -> str:
        return strip_id_prefix(self.id_address)


@dataclass(frozen=True)
class AppKey:
    private_key: str = field(repr=False)
    address: str


@dataclass(frozen=True)
class AppKeyInfo:
    key_info: AppKey
    legacy_key_info: AppKey
    owner_key_index: int


def _hash_code(s: str) -> int:
    # Java String.hashCode, truncated to a non-negative 31-bit index
    h = 0
    for ch in s:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h & 0x7FFFFFFF


# -----------------------------------------------------------------------------
# Keychain
# -----------------------------------------------------------------------------
class Keychain:
    """
    All identity and application keys of one backup phrase.

    Built per request from the phrase; holds the identity keychain node only
    for as long as the request that created it.
    """

    def __init__(self, backup_phrase: str, network: Network):
        phrase = " ".join(str(backup_phrase or "").split())
        if not Mnemonic("english").check(phrase):
            raise ValueError("Not a valid BIP-39 backup phrase")

        self.network = network
        master = HDNode.from_seed(Mnemonic.to_seed(phrase))
        self._identities = master.derive_hardened(IDENTITY_KEYCHAIN).derive_hardened(BLOCKSTACK_ON_BITCOIN)

    def _owner_node(self, index: int) -> HDNode:
        return self._identities.derive_hardened(index)

    def owner_key(self, index: int) -> OwnerKey:
        node = self._owner_node(index)
        pubkey = node.public_key
        address = address_from_public_key(pubkey, self.network.address_version)
        return OwnerKey(
            id_address=ID_ADDRESS_PREFIX + address,
            private_key=node.private_key,
            public_key=pubkey.hex(),
            index=index,
        )

    def app_key_info(self, id_address: str, app_origin: str, index: int) -> AppKeyInfo:
        owner = self._owner_node(index)
        owner_pubkey = owner.public_key

        if not same_address(address_from_public_key(owner_pubkey), id_address):
            raise ValueError(f"identity address {id_address} is not derived at index {index}")

        apps_node = owner.derive_hardened(APPS_NODE_INDEX)
        salt = hashlib.sha256(owner_pubkey.hex().encode("ascii")).hexdigest()
        app_hash = hashlib.sha256(f"{app_origin}{salt}".encode("utf-8")).hexdigest()

        node = apps_node
        for i in range(0, len(app_hash), 8):
            node = node.derive_hardened(int(app_hash[i:i + 8], 16) & 0x7FFFFFFF)

        legacy = apps_node.derive_hardened(_hash_code(app_hash))
        version = self.network.address_version

        return AppKeyInfo(
            key_info=AppKey(node.private_key, address_from_public_key(node.public_key, version)),
            legacy_key_info=AppKey(legacy.private_key, address_from_public_key(legacy.public_key, version)),
            owner_key_index=index,
        )


def derive_owner_key(backup_phrase: str, index: int, network: Network) -> OwnerKey:
    return Keychain(backup_phrase, network).owner_key(index)


def derive_app_key(backup_phrase: str, id_address: str, app_origin: str, index: int, network: Network) -> AppKeyInfo:
    return Keychain(backup_phrase, network).app_key_info(id_address, app_origin, index)


# -----------------------------------------------------------------------------
# Application key resolution
# -----------------------------------------------------------------------------
def extract_app_key(info: AppKeyInfo, app_address: Optional[str] = None) -> str:
    """
    Pick the application private key.

    With an address: the candidate (current, then legacy) whose address
    matches it, or LookupError. Without: the current derivation.
    """
    if app_address is None:
        return info.key_info.private_key

    for candidate in (info.key_info, info.legacy_key_info):
        if same_address(candidate.address, app_address):
            return candidate.private_key

    raise LookupError(f"no application key matches storage address {app_address}")


def resolve_app_private_key(info: AppKeyInfo, profile: Optional[Dict[str, Any]], app_origin: str) -> str:
    """
    Reproduce the application key the identity used before, if any.

    Tries the key matching the storage address the profile already lists for
    app_origin; falls back to the context-free derivation on any lookup
    failure (no profile entry, unparsable URL, no matching candidate).
    """
    from .profiles import storage_address_from_profile

    try:
        existing = storage_address_from_profile(profile, app_origin)
        return extract_app_key(info, existing)
    except LookupError:
        return extract_app_key(info)
