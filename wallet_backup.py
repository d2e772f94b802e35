"""
Portable, password-protected wallet backups.

A backup is a base64-wrapped JSON envelope:

    {
      "version": 1,
      "cipher": "AES-GCM",
      "kdf": {"name": "PBKDF2", "hash": "SHA-256", "iterations": N, "salt": b64},
      "iv": b64,
      "ciphertext": b64,
      "createdAt": unix_ms,
      "network": "mainnet" | "testnet",
      "mac": b64,
      "macAlgo": "HMAC-SHA256"
    }

PBKDF2-SHA256(password, salt) yields one 32-byte root; HKDF-Expand splits it
into the AES-GCM key and the HMAC key, so the MAC key is never the password
itself. The MAC covers every field except ``mac``/``macAlgo``, serialized in
the order above, and is checked in constant time before any decryption.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, replace
from typing import Any

from wallet_crypto import (
    AES_IV_SIZE,
    SALT_SIZE,
    AeadCipher,
    AesGcmCipher,
    HmacSha256,
    KeyDerivationFunction,
    Mac,
    Pbkdf2Sha256,
    hkdf_expand,
    random_bytes,
    wipe_bytes,
)
from wallet_errors import (
    BackupFormatInvalid,
    BackupIntegrityFailure,
    DecryptionFailed,
)

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1
CIPHER_NAME = "AES-GCM"
KDF_NAME = "PBKDF2"
KDF_HASH = "SHA-256"
MAC_ALGO = "HMAC-SHA256"
MIN_BACKUP_ITERATIONS = 1
MAX_BACKUP_ITERATIONS = 10_000_000

_ENC_KEY_INFO = b"btc-vault/backup-enc"
_MAC_KEY_INFO = b"btc-vault/backup-mac"


@dataclass(frozen=True)
class KdfParams:
    name: str
    hash: str
    iterations: int
    salt: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "hash": self.hash,
            "iterations": self.iterations,
            "salt": self.salt,
        }


@dataclass(frozen=True)
class BackupEnvelope:
    version: int
    cipher: str
    kdf: KdfParams
    iv: str
    ciphertext: str
    created_at: int
    network: str
    mac: str = ""
    mac_algo: str = MAC_ALGO

    def mac_fields(self) -> dict[str, Any]:
        """Envelope fields covered by the MAC, in their canonical order."""
        return {
            "version": self.version,
            "cipher": self.cipher,
            "kdf": self.kdf.to_dict(),
            "iv": self.iv,
            "ciphertext": self.ciphertext,
            "createdAt": self.created_at,
            "network": self.network,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.mac_fields(), "mac": self.mac, "macAlgo": self.mac_algo}

    def encode(self) -> str:
        """base64(JSON) form handed to the user."""
        return base64.b64encode(json.dumps(self.to_dict()).encode("utf-8")).decode("ascii")


def serialize_for_mac(envelope: BackupEnvelope) -> bytes:
    return json.dumps(envelope.mac_fields(), separators=(",", ":")).encode("utf-8")


def _derive_backup_keys(
    password: str, salt: bytes, iterations: int, kdf: KeyDerivationFunction
) -> tuple[bytes, bytes]:
    root = kdf.derive(password, salt, iterations)
    return hkdf_expand(root, _ENC_KEY_INFO), hkdf_expand(root, _MAC_KEY_INFO)


def seal_backup(
    payload: dict[str, Any],
    password: str,
    iterations: int,
    network: str,
    created_at: int,
    cipher: AeadCipher | None = None,
    kdf: KeyDerivationFunction | None = None,
    mac: Mac | None = None,
) -> BackupEnvelope:
    """Encrypt ``payload`` (the JSON secret) and MAC the resulting envelope."""
    cipher = cipher or AesGcmCipher()
    kdf = kdf or Pbkdf2Sha256()
    mac = mac or HmacSha256()

    salt = random_bytes(SALT_SIZE)
    iv = random_bytes(AES_IV_SIZE)
    enc_key, mac_key = _derive_backup_keys(password, salt, iterations, kdf)
    plaintext = bytearray(json.dumps(payload).encode("utf-8"))
    try:
        ciphertext = cipher.encrypt(enc_key, iv, bytes(plaintext))
    finally:
        wipe_bytes(plaintext)

    unsigned = BackupEnvelope(
        version=BACKUP_VERSION,
        cipher=CIPHER_NAME,
        kdf=KdfParams(
            name=KDF_NAME,
            hash=KDF_HASH,
            iterations=iterations,
            salt=base64.b64encode(salt).decode("ascii"),
        ),
        iv=base64.b64encode(iv).decode("ascii"),
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        created_at=created_at,
        network=network,
    )
    tag = mac.sign(mac_key, serialize_for_mac(unsigned))
    return replace(unsigned, mac=base64.b64encode(tag).decode("ascii"), mac_algo=MAC_ALGO)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _b64_field(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise BackupFormatInvalid(f"Backup field '{name}' must be a base64 string.")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise BackupFormatInvalid(f"Backup field '{name}' is not valid base64.") from exc


def _load_envelope_json(raw: str) -> Any:
    text = raw.strip()
    # Prefer base64-wrapped JSON, then plain JSON.
    try:
        return json.loads(base64.b64decode(text, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError):
        pass
    try:
        return json.loads(text)
    except ValueError as exc:
        raise BackupFormatInvalid("Backup is neither base64 JSON nor JSON.") from exc


def parse_backup_envelope(raw: str) -> BackupEnvelope:
    """Structurally validate a backup string. No secret material is touched."""
    if not isinstance(raw, str) or not raw.strip():
        raise BackupFormatInvalid("Backup string is empty.")
    data = _load_envelope_json(raw)
    if not isinstance(data, dict):
        raise BackupFormatInvalid("Backup envelope must be a JSON object.")

    if data.get("version") != BACKUP_VERSION or not _is_int(data.get("version")):
        raise BackupFormatInvalid(f"Unsupported backup version: {data.get('version')!r}")
    if data.get("cipher") != CIPHER_NAME:
        raise BackupFormatInvalid(f"Unsupported backup cipher: {data.get('cipher')!r}")

    kdf = data.get("kdf")
    if not isinstance(kdf, dict):
        raise BackupFormatInvalid("Backup is missing its kdf parameters.")
    if kdf.get("name") != KDF_NAME or kdf.get("hash") != KDF_HASH:
        raise BackupFormatInvalid("Unsupported backup key derivation.")
    iterations = kdf.get("iterations")
    if not _is_int(iterations) or not (
        MIN_BACKUP_ITERATIONS <= iterations <= MAX_BACKUP_ITERATIONS
    ):
        raise BackupFormatInvalid(f"Backup iteration count out of range: {iterations!r}")
    if not _b64_field(kdf.get("salt"), "kdf.salt"):
        raise BackupFormatInvalid("Backup salt is empty.")

    if len(_b64_field(data.get("iv"), "iv")) != AES_IV_SIZE:
        raise BackupFormatInvalid("Backup IV has the wrong length.")
    _b64_field(data.get("ciphertext"), "ciphertext")

    created_at = data.get("createdAt")
    if not _is_int(created_at) or created_at < 0:
        raise BackupFormatInvalid("Backup createdAt must be a unix timestamp in ms.")
    network = data.get("network")
    if network not in ("mainnet", "testnet"):
        raise BackupFormatInvalid(f"Unsupported backup network: {network!r}")

    if data.get("macAlgo") != MAC_ALGO:
        raise BackupFormatInvalid(f"Unsupported backup MAC algorithm: {data.get('macAlgo')!r}")
    if not _b64_field(data.get("mac"), "mac"):
        raise BackupFormatInvalid("Backup MAC is missing.")

    return BackupEnvelope(
        version=data["version"],
        cipher=data["cipher"],
        kdf=KdfParams(
            name=kdf["name"], hash=kdf["hash"], iterations=iterations, salt=kdf["salt"]
        ),
        iv=data["iv"],
        ciphertext=data["ciphertext"],
        created_at=created_at,
        network=network,
        mac=data["mac"],
        mac_algo=data["macAlgo"],
    )


def open_backup(
    envelope: BackupEnvelope,
    password: str,
    cipher: AeadCipher | None = None,
    kdf: KeyDerivationFunction | None = None,
    mac: Mac | None = None,
) -> dict[str, Any]:
    """
    Verify the MAC, then decrypt and parse the payload.

    A wrong password and a tampered envelope are indistinguishable and both
    raise BackupIntegrityFailure.
    """
    cipher = cipher or AesGcmCipher()
    kdf = kdf or Pbkdf2Sha256()
    mac = mac or HmacSha256()

    enc_key, mac_key = _derive_backup_keys(
        password,
        base64.b64decode(envelope.kdf.salt),
        envelope.kdf.iterations,
        kdf,
    )
    if not mac.verify(mac_key, serialize_for_mac(envelope), base64.b64decode(envelope.mac)):
        raise BackupIntegrityFailure("Backup integrity check failed (MAC mismatch).")

    try:
        plaintext = bytearray(
            cipher.decrypt(
                enc_key,
                base64.b64decode(envelope.iv),
                base64.b64decode(envelope.ciphertext),
            )
        )
    except DecryptionFailed as exc:
        raise BackupIntegrityFailure("Backup could not be decrypted.") from exc

    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except ValueError as exc:
        raise BackupFormatInvalid("Backup payload is not valid JSON.") from exc
    finally:
        wipe_bytes(plaintext)

    if (
        not isinstance(payload, dict)
        or not _is_int(payload.get("version"))
        or not isinstance(payload.get("mnemonic"), str)
        or not payload["mnemonic"]
    ):
        raise BackupFormatInvalid("Invalid backup payload.")
    logger.debug("Opened backup created at %s", envelope.created_at)
    return payload
