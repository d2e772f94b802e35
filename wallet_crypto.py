"""
Cryptographic capabilities used by the encrypted store and the backup
envelope.

- AES-256-GCM authenticated encryption
- PBKDF2-SHA256 password key derivation
- HMAC-SHA256 with constant-time verification
- HKDF-Expand for separating sub-keys from one derived root
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from wallet_errors import DecryptionFailed

AES_KEY_SIZE = 32
AES_IV_SIZE = 12  # 96 bits (recommended for GCM)
SALT_SIZE = 16
DEFAULT_PBKDF2_ITERATIONS = 600_000


def random_bytes(length: int) -> bytes:
    return secrets.token_bytes(length)


def wipe_bytes(buf: bytearray | None) -> None:
    """Zero a mutable buffer in place."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


class AeadCipher(Protocol):
    def encrypt(self, key: bytes, iv: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes: ...

    def decrypt(self, key: bytes, iv: bytes, ciphertext: bytes, aad: bytes | None = None) -> bytes: ...


class KeyDerivationFunction(Protocol):
    def derive(self, password: str, salt: bytes, iterations: int, length: int = AES_KEY_SIZE) -> bytes: ...


class Mac(Protocol):
    def sign(self, key: bytes, data: bytes) -> bytes: ...

    def verify(self, key: bytes, data: bytes, tag: bytes) -> bool: ...


class AesGcmCipher:
    """AES-256-GCM; the 16-byte tag is appended to the ciphertext."""

    def encrypt(self, key: bytes, iv: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
        return AESGCM(key).encrypt(iv, plaintext, aad)

    def decrypt(self, key: bytes, iv: bytes, ciphertext: bytes, aad: bytes | None = None) -> bytes:
        try:
            return AESGCM(key).decrypt(iv, ciphertext, aad)
        except InvalidTag as exc:
            raise DecryptionFailed("Decryption failed (wrong key or tampered data).") from exc


class Pbkdf2Sha256:
    def derive(self, password: str, salt: bytes, iterations: int, length: int = AES_KEY_SIZE) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=length,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))


class HmacSha256:
    def sign(self, key: bytes, data: bytes) -> bytes:
        return hmac.new(key, data, hashlib.sha256).digest()

    def verify(self, key: bytes, data: bytes, tag: bytes) -> bool:
        return hmac.compare_digest(self.sign(key, data), tag)


def hkdf_expand(root: bytes, info: bytes, length: int = AES_KEY_SIZE) -> bytes:
    """Derive an independent sub-key from an already uniform root key."""
    return HKDFExpand(algorithm=hashes.SHA256(), length=length, info=info).derive(root)
