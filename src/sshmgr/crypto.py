"""
Passphrase-derived authenticated encryption for stored secrets.

Every secret sshmgr persists (passwords, private key material, the sync
API token, host fields sent to the sync service) goes through this one
scheme:

    key  = PBKDF2-HMAC-SHA256(passphrase, app salt, 390k rounds)
    blob = "v1:" + base64(nonce[12] || AES-256-GCM ciphertext+tag)

The salt is fixed per application so every device holding the same
passphrase derives the same key and can open snapshots pulled from the
sync service. The nonce is random per call, so sealing the same
plaintext twice yields different blobs.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AuthenticationError, EncryptionError

logger = logging.getLogger("sshmgr.crypto")

SCHEME_PREFIX = "v1:"
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
KDF_ITERATIONS = 390_000

_KDF_SALT = b"sshmgr:credential-store:v1"
_AAD = b"sshmgr-secret"


def derive_key(passphrase: str, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a 256-bit key from a passphrase.

    Deterministic: the same passphrase always yields the same key.

    Args:
        passphrase: User passphrase. Any string, including empty.
        iterations: PBKDF2 round count.

    Returns:
        32 raw key bytes.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=_KDF_SALT,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt(key: bytes, plaintext: str) -> str:
    """Seal plaintext under key.

    Args:
        key: 32-byte key from derive_key().
        plaintext: Text to protect.

    Returns:
        Versioned, base64 ciphertext safe to embed in JSON.

    Raises:
        EncryptionError: If the key is unusable.
    """
    nonce = os.urandom(NONCE_SIZE)
    try:
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), _AAD)
    except (TypeError, ValueError) as exc:
        raise EncryptionError(f"Failed to encrypt secret: {exc}") from exc
    return SCHEME_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(key: bytes, blob: str) -> str:
    """Open a blob produced by encrypt().

    Raises:
        AuthenticationError: Unknown version, bad encoding, truncated
            input, wrong key, or tampered ciphertext.
    """
    if not isinstance(blob, str) or not blob.startswith(SCHEME_PREFIX):
        raise AuthenticationError("Unsupported or missing ciphertext version")

    try:
        raw = base64.b64decode(blob[len(SCHEME_PREFIX):], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationError("Ciphertext is not valid base64") from exc

    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise AuthenticationError("Ciphertext is truncated")

    try:
        plaintext = AESGCM(key).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], _AAD)
    except InvalidTag:
        raise AuthenticationError(
            "Decryption failed (wrong passphrase or corrupted data)"
        ) from None
    except (TypeError, ValueError) as exc:
        raise AuthenticationError(f"Unusable key: {exc}") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AuthenticationError("Decrypted secret is not valid UTF-8") from exc


class CipherEngine:
    """Holds a derived key and seals/opens secrets with it.

    The engine is injected into the store and the sync coordinator
    rather than living in a global, so tests can run several engines
    side by side.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise EncryptionError(f"Cipher key must be {KEY_SIZE} bytes")
        self._key = bytes(key)

    @classmethod
    def from_passphrase(
        cls, passphrase: str, iterations: int = KDF_ITERATIONS
    ) -> "CipherEngine":
        """Derive a key from passphrase and wrap it."""
        return cls(derive_key(passphrase, iterations=iterations))

    def encrypt(self, plaintext: str) -> str:
        return encrypt(self._key, plaintext)

    def decrypt(self, blob: str) -> str:
        return decrypt(self._key, blob)

    def verify(self, blob: str) -> bool:
        """True if blob opens under this engine's key."""
        try:
            self.decrypt(blob)
        except AuthenticationError:
            return False
        return True

    def __repr__(self) -> str:
        return "CipherEngine(<key hidden>)"
