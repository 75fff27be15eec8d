"""
authbroker/backup.py

Encrypted backup phrase format (seed at rest).

The mnemonic is first normalized to its BIP-39 entropy, so every phrase of a
given length encrypts to the same size:

  keys   = PBKDF2-HMAC-SHA512(password, salt, 100000 iterations, 48 bytes)
  enc    = keys[0:16]   mac = keys[16:32]   iv = keys[32:48]
  ct     = AES-128-CBC(enc, iv, PKCS7(entropy))
  hmac   = HMAC-SHA256(mac, salt || ct)
  output = salt(16) || hmac(32) || ct

The HMAC is checked before anything is decrypted. The stored and recomputed
HMACs are compared by their SHA-256 hashes, so comparison time does not
depend on the ciphertext.

decrypt_backup_phrase() falls back to the legacy triplesec format (optional
'legacy' extra) when the current format fails; if both fail, both messages
are reported.
"""

import hashlib
import hmac
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from mnemonic import Mnemonic

from .errors import AuthenticationFailure, InvalidPlaintext

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000
SALT_LEN = 16
HMAC_LEN = 32

_mnemo = Mnemonic("english")


def _normalize_phrase(phrase: str) -> str:
    return " ".join(str(phrase or "").split())


def _derive_keys(password: str, salt: bytes) -> tuple[bytes, bytes, bytes]:
    block = hashlib.pbkdf2_hmac("sha512", password.encode("utf-8"), salt, PBKDF2_ITERATIONS, dklen=48)
    return block[:16], block[16:32], block[32:48]


def encrypt_backup_phrase(phrase: str, password: str) -> bytes:
    phrase = _normalize_phrase(phrase)
    if not _mnemo.check(phrase):
        raise ValueError("Not a valid BIP-39 mnemonic")
    if not password:
        raise ValueError("password must not be empty")

    entropy = bytes(_mnemo.to_entropy(phrase))

    salt = os.urandom(SALT_LEN)
    enc_key, mac_key, iv = _derive_keys(password, salt)

    padder = padding.PKCS7(128).padder()
    padded = padder.update(entropy) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    mac = hmac.new(mac_key, salt + ciphertext, hashlib.sha256).digest()
    return salt + mac + ciphertext


def _decrypt_current(data: bytes, password: str) -> str:
    if len(data) <= SALT_LEN + HMAC_LEN:
        raise AuthenticationFailure("Wrong password (HMAC mismatch)")

    salt = data[:SALT_LEN]
    stored_mac = data[SALT_LEN:SALT_LEN + HMAC_LEN]
    ciphertext = data[SALT_LEN + HMAC_LEN:]

    enc_key, mac_key, iv = _derive_keys(password, salt)
    mac = hmac.new(mac_key, salt + ciphertext, hashlib.sha256).digest()

    # compare hashes of both sides
    if hashlib.sha256(stored_mac).digest() != hashlib.sha256(mac).digest():
        raise AuthenticationFailure("Wrong password (HMAC mismatch)")

    try:
        decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        entropy = unpadder.update(padded) + unpadder.finalize()
        phrase = _mnemo.to_mnemonic(entropy)
    except ValueError:
        raise InvalidPlaintext("Wrong password (invalid plaintext)") from None

    if not _mnemo.check(phrase):
        raise InvalidPlaintext("Wrong password (invalid plaintext)")
    return phrase


def _decrypt_legacy(data: bytes, password: str) -> str:
    try:
        import triplesec
    except ImportError:
        raise AuthenticationFailure("legacy format support is not installed") from None

    try:
        plaintext = triplesec.decrypt(data, password.encode("utf-8"))
    except Exception as e:
        raise AuthenticationFailure(str(e) or "decryption failed") from e

    phrase = _normalize_phrase(plaintext.decode("utf-8", errors="replace"))
    if not _mnemo.check(phrase):
        raise InvalidPlaintext("Wrong password (invalid plaintext)")
    return phrase


def decrypt_backup_phrase(data: bytes, password: str) -> str:
    try:
        return _decrypt_current(data, password)
    except AuthenticationFailure as current:
        logger.debug("Current backup format failed, trying legacy format")
        try:
            return _decrypt_legacy(data, password)
        except AuthenticationFailure as legacy:
            raise type(current)(
                f'current algorithm: "{current.message}", legacy algorithm: "{legacy.message}"'
            ) from None
