"""
ArtifactCipher -- authenticated encryption for backup artifacts.

Format (all fields concatenated):

    MAGIC (5 bytes, b"MIBK1") | salt (16) | nonce (12) | ciphertext + GCM tag (16)

The AES-256 key is derived per artifact with PBKDF2-HMAC-SHA256 from the
configured secret (or a per-backup passphrase) and the fresh salt.  Salt and
nonce are stored in the clear; they are not secret.  GCM authentication
means a wrong key and a tampered ciphertext fail the same way: DecryptionError.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from inventory_kernel.exceptions import DecryptionError, MissingSecretError

MAGIC = b"MIBK1"
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
DEFAULT_ITERATIONS = 200_000

_HEADER_SIZE = len(MAGIC) + SALT_SIZE + NONCE_SIZE


def is_encrypted(data: bytes) -> bool:
    return data.startswith(MAGIC)


class ArtifactCipher:
    def __init__(
        self,
        secret: str | bytes | None,
        iterations: int = DEFAULT_ITERATIONS,
        secret_name: str = "BACKUP_ENCRYPTION_KEY",
    ):
        if not secret:
            raise MissingSecretError(secret_name)
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        self._iterations = iterations

    def _derive(self, salt: bytes, passphrase: str | None) -> bytes:
        material = passphrase.encode("utf-8") if passphrase else self._secret
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(material)

    def encrypt(self, plaintext: bytes, passphrase: str | None = None) -> bytes:
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        key = self._derive(salt, passphrase)
        return MAGIC + salt + nonce + AESGCM(key).encrypt(nonce, plaintext, MAGIC)

    def decrypt(self, data: bytes, passphrase: str | None = None) -> bytes:
        if not is_encrypted(data):
            raise DecryptionError("missing artifact header")
        if len(data) < _HEADER_SIZE + TAG_SIZE:
            raise DecryptionError("artifact too short to contain salt, nonce and tag")

        salt = data[len(MAGIC):len(MAGIC) + SALT_SIZE]
        nonce = data[len(MAGIC) + SALT_SIZE:_HEADER_SIZE]
        key = self._derive(salt, passphrase)
        try:
            return AESGCM(key).decrypt(nonce, data[_HEADER_SIZE:], MAGIC)
        except InvalidTag as exc:
            raise DecryptionError(
                "authentication failed (wrong key or passphrase, or tampered data)"
            ) from exc

    def __repr__(self) -> str:
        return f"<ArtifactCipher iterations={self._iterations} secret=***>"
