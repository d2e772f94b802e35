"""
Encrypted, password-optional wallet store.

The store is a single JSON document (``vault.json``) inside the vault
directory:

    {
      "version": 1,
      "meta": {
        "hasPassword": bool,
        "salt": base64 | null,          # PBKDF2 salt (password mode)
        "iterations": int | null,       # PBKDF2 iterations (password mode)
        "keyCheck": {"iv", "ciphertext"},
        "backupCompletedAt": int | null # unix ms
      },
      "slots": {"mnemonic": {"iv", "ciphertext"}, ...}
    }

Every slot is AES-256-GCM encrypted under the store key with the slot name
as associated data. In password mode the store key is PBKDF2-SHA256 of the
password; otherwise it is a random 256-bit key held by a ``PlatformKeyStore``.
The document is always replaced atomically.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

from wallet_crypto import (
    AES_IV_SIZE,
    AES_KEY_SIZE,
    DEFAULT_PBKDF2_ITERATIONS,
    SALT_SIZE,
    AeadCipher,
    AesGcmCipher,
    KeyDerivationFunction,
    Pbkdf2Sha256,
    random_bytes,
    wipe_bytes,
)
from wallet_errors import (
    DecryptionFailed,
    PasswordRequired,
    StorageError,
    WalletLocked,
    WalletNotFound,
    WrongPassword,
)

logger = logging.getLogger(__name__)

STORE_VERSION = 1
STORE_FILENAME = "vault.json"
PLATFORM_KEY_FILENAME = "platform.key"
SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

SLOT_MNEMONIC = "mnemonic"
SLOT_PASSPHRASE = "passphrase"
SLOT_CONFIG = "config"
DATA_SLOTS = frozenset({SLOT_MNEMONIC, SLOT_PASSPHRASE, SLOT_CONFIG})

_KEY_CHECK_AAD = b"key-check"
_KEY_CHECK_PLAINTEXT = b"btc-vault"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


def _atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via temp file + fsync + rename, mode 0600."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if os.name == "posix":
            os.chmod(tmp_name, SECURE_FILE_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


# ---------------------------------------------------------------------------
# Platform key stores
# ---------------------------------------------------------------------------


class PlatformKeyStore(Protocol):
    """Holds the random store key of a passwordless wallet."""

    def load(self) -> bytes | None: ...

    def save(self, key: bytes) -> None: ...

    def delete(self) -> None: ...


class FilePlatformKeyStore:
    """Platform key kept in an owner-only file next to the store."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> bytes | None:
        try:
            key = self.path.read_bytes()
        except FileNotFoundError:
            return None
        if len(key) != AES_KEY_SIZE:
            raise StorageError(f"Platform key at {self.path} is corrupted.")
        return key

    def save(self, key: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=SECURE_DIR_MODE)
        _atomic_write(self.path, key)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryPlatformKeyStore:
    """Process-local platform key (tests, ephemeral wallets)."""

    def __init__(self) -> None:
        self._key: bytes | None = None

    def load(self) -> bytes | None:
        return self._key

    def save(self, key: bytes) -> None:
        self._key = bytes(key)

    def delete(self) -> None:
        self._key = None


# ---------------------------------------------------------------------------
# SecureStorage
# ---------------------------------------------------------------------------


class SecureStorage:
    """
    Encrypted slot store for wallet secrets.

    ``init()`` opens (or prepares) the store and holds the store key in
    memory until ``close()``. Reads and writes of slots require an open
    store; metadata queries (``exists``, ``has_password``...) do not.
    """

    def __init__(
        self,
        directory: Path | str,
        platform_keys: PlatformKeyStore | None = None,
        iterations: int = DEFAULT_PBKDF2_ITERATIONS,
        cipher: AeadCipher | None = None,
        kdf: KeyDerivationFunction | None = None,
    ) -> None:
        if iterations < 1:
            raise ValueError("PBKDF2 iterations must be a positive integer.")
        self.directory = Path(directory)
        self.path = self.directory / STORE_FILENAME
        self.platform_keys = platform_keys or FilePlatformKeyStore(
            self.directory / PLATFORM_KEY_FILENAME
        )
        self.iterations = iterations
        self._cipher = cipher or AesGcmCipher()
        self._kdf = kdf or Pbkdf2Sha256()
        self._key: bytearray | None = None
        self._doc: dict[str, Any] | None = None
        self._lock = threading.RLock()

    # -- document I/O -------------------------------------------------------

    def _read_document(self) -> dict[str, Any] | None:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            doc = json.loads(raw)
        except ValueError as exc:
            raise StorageError(f"Wallet store at {self.path} is corrupted.") from exc
        if (
            not isinstance(doc, dict)
            or doc.get("version") != STORE_VERSION
            or not isinstance(doc.get("meta"), dict)
            or not isinstance(doc.get("slots"), dict)
        ):
            raise StorageError(f"Wallet store at {self.path} has an unsupported format.")
        return doc

    def _write_document(self, doc: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True, mode=SECURE_DIR_MODE)
        _atomic_write(self.path, json.dumps(doc, indent=2).encode("utf-8"))

    def _document(self) -> dict[str, Any] | None:
        if self._doc is not None:
            return self._doc
        return self._read_document()

    # -- encryption helpers -------------------------------------------------

    def _seal(self, key: bytes | bytearray, plaintext: bytes, aad: bytes) -> dict[str, str]:
        iv = random_bytes(AES_IV_SIZE)
        ciphertext = self._cipher.encrypt(bytes(key), iv, plaintext, aad)
        return {"iv": _b64(iv), "ciphertext": _b64(ciphertext)}

    def _unseal(self, key: bytes | bytearray, blob: dict[str, str], aad: bytes) -> bytes:
        try:
            iv = _unb64(blob["iv"])
            ciphertext = _unb64(blob["ciphertext"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError("Encrypted record is malformed.") from exc
        return self._cipher.decrypt(bytes(key), iv, ciphertext, aad)

    def _password_key(self, password: str, meta: dict[str, Any]) -> bytes:
        return self._kdf.derive(password, _unb64(meta["salt"]), int(meta["iterations"]))

    def _check_key(self, key: bytes | bytearray, meta: dict[str, Any]) -> None:
        try:
            self._unseal(key, meta["keyCheck"], _KEY_CHECK_AAD)
        except DecryptionFailed as exc:
            if meta.get("hasPassword"):
                raise WrongPassword("Incorrect password.") from exc
            raise DecryptionFailed(
                "Platform key does not match the wallet store."
            ) from exc

    def _new_meta(self, key: bytes | bytearray, salt: bytes | None, iterations: int | None) -> dict[str, Any]:
        return {
            "hasPassword": salt is not None,
            "salt": _b64(salt) if salt is not None else None,
            "iterations": iterations,
            "keyCheck": self._seal(key, _KEY_CHECK_PLAINTEXT, _KEY_CHECK_AAD),
            "backupCompletedAt": None,
        }

    def _require_open(self) -> tuple[bytearray, dict[str, Any]]:
        if self._key is None or self._doc is None:
            raise WalletLocked("Storage is not initialized. Call init() first.")
        return self._key, self._doc

    # -- lifecycle ----------------------------------------------------------

    def exists(self) -> bool:
        return self.path.is_file()

    def init(self, password: str | None = None, read_only: bool = False) -> None:
        """
        Open the store, creating it when missing (unless ``read_only``).

        Raises:
            WalletNotFound: read-only open and no store exists.
            PasswordRequired: store is password protected and no password given.
            WrongPassword: password does not open the store.
        """
        with self._lock:
            self.close()
            doc = self._read_document()
            if doc is None:
                if read_only:
                    raise WalletNotFound("No wallet found. Create or restore a wallet first.")
                doc, key = self._create_document(password)
            else:
                key = self._open_document(doc, password)
            self._doc = doc
            self._key = bytearray(key)

    def _create_document(self, password: str | None) -> tuple[dict[str, Any], bytes]:
        if password:
            salt = random_bytes(SALT_SIZE)
            key = self._kdf.derive(password, salt, self.iterations)
            meta = self._new_meta(key, salt, self.iterations)
        else:
            key = random_bytes(AES_KEY_SIZE)
            # The key must be retrievable before any document refers to it.
            self.platform_keys.save(key)
            meta = self._new_meta(key, None, None)
        doc = {"version": STORE_VERSION, "meta": meta, "slots": {}}
        self._write_document(doc)
        logger.info(
            "Created wallet store at %s (password=%s)", self.path, meta["hasPassword"]
        )
        return doc, key

    def _open_document(self, doc: dict[str, Any], password: str | None) -> bytes:
        meta = doc["meta"]
        if meta.get("hasPassword"):
            if not password:
                raise PasswordRequired("Wallet is password protected. Provide the password.")
            key = self._password_key(password, meta)
        else:
            # A password offered to a passwordless store is ignored.
            key = self.platform_keys.load()
            if key is None:
                raise DecryptionFailed(
                    "Platform key is missing; the wallet cannot be decrypted."
                )
        self._check_key(key, meta)
        return key

    def close(self) -> None:
        with self._lock:
            wipe_bytes(self._key)
            self._key = None
            self._doc = None

    def clear(self) -> None:
        """Permanently delete the store and its platform key."""
        with self._lock:
            self.close()
            self.path.unlink(missing_ok=True)
            self.platform_keys.delete()
            logger.info("Deleted wallet store at %s", self.path)

    def request_persistence(self) -> bool:
        """Flush the vault directory entry so the store survives a crash."""
        if not self.directory.is_dir() or os.name != "posix":
            return False
        fd = os.open(self.directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
        return True

    # -- slots --------------------------------------------------------------

    def get(self, slot: str) -> bytes | None:
        if slot not in DATA_SLOTS:
            raise ValueError(f"Unknown storage slot: {slot}")
        with self._lock:
            key, doc = self._require_open()
            blob = doc["slots"].get(slot)
            if blob is None:
                return None
            return self._unseal(key, blob, slot.encode("utf-8"))

    def set(self, slot: str, data: bytes) -> None:
        if slot not in DATA_SLOTS:
            raise ValueError(f"Unknown storage slot: {slot}")
        with self._lock:
            key, doc = self._require_open()
            updated = dict(doc, slots=dict(doc["slots"]))
            updated["slots"][slot] = self._seal(key, bytes(data), slot.encode("utf-8"))
            self._write_document(updated)
            self._doc = updated

    # -- password management -----------------------------------------------

    def _rewrap(self, new_key: bytes | bytearray, new_meta: dict[str, Any]) -> dict[str, Any]:
        old_key, doc = self._require_open()
        slots = {}
        for name, blob in doc["slots"].items():
            aad = name.encode("utf-8")
            plaintext = bytearray(self._unseal(old_key, blob, aad))
            try:
                slots[name] = self._seal(new_key, bytes(plaintext), aad)
            finally:
                wipe_bytes(plaintext)
        new_meta["backupCompletedAt"] = doc["meta"].get("backupCompletedAt")
        return {"version": STORE_VERSION, "meta": new_meta, "slots": slots}

    def _verify_current_password(self, password: str) -> None:
        _, doc = self._require_open()
        meta = doc["meta"]
        if not meta.get("hasPassword"):
            raise StorageError("Wallet has no password.")
        if not password:
            raise PasswordRequired("Current password is required.")
        self._check_key(self._password_key(password, meta), meta)

    def _swap_key(self, doc: dict[str, Any], key: bytes) -> None:
        old_key = self._key
        self._doc = doc
        self._key = bytearray(key)
        wipe_bytes(old_key)

    def set_password(self, password: str) -> None:
        """Move a passwordless store to password mode."""
        with self._lock:
            _, doc = self._require_open()
            if doc["meta"].get("hasPassword"):
                raise StorageError("Wallet already has a password. Use change_password().")
            salt = random_bytes(SALT_SIZE)
            new_key = self._kdf.derive(password, salt, self.iterations)
            new_doc = self._rewrap(new_key, self._new_meta(new_key, salt, self.iterations))
            self._write_document(new_doc)
            self.platform_keys.delete()
            self._swap_key(new_doc, new_key)
            logger.info("Wallet store %s is now password protected", self.path)

    def change_password(
        self, old_password: str, new_password: str, iterations: int | None = None
    ) -> None:
        with self._lock:
            self._verify_current_password(old_password)
            iterations = self.iterations if iterations is None else iterations
            if iterations < 1:
                raise ValueError("PBKDF2 iterations must be a positive integer.")
            salt = random_bytes(SALT_SIZE)
            new_key = self._kdf.derive(new_password, salt, iterations)
            new_doc = self._rewrap(new_key, self._new_meta(new_key, salt, iterations))
            self._write_document(new_doc)
            self._swap_key(new_doc, new_key)
            logger.info("Changed password of wallet store %s", self.path)

    def remove_password(self, current_password: str) -> None:
        """Return a password store to passwordless (platform key) mode."""
        with self._lock:
            self._verify_current_password(current_password)
            new_key = random_bytes(AES_KEY_SIZE)
            new_doc = self._rewrap(new_key, self._new_meta(new_key, None, None))
            self.platform_keys.save(new_key)
            self._write_document(new_doc)
            self._swap_key(new_doc, new_key)
            logger.info("Removed password from wallet store %s", self.path)

    # -- metadata -----------------------------------------------------------

    def has_password(self) -> bool:
        with self._lock:
            doc = self._document()
            return bool(doc and doc["meta"].get("hasPassword"))

    def has_backup(self) -> bool:
        with self._lock:
            doc = self._document()
            return bool(doc and doc["meta"].get("backupCompletedAt") is not None)

    def mark_backup_completed(self, timestamp_ms: int) -> None:
        with self._lock:
            doc = self._document()
            if doc is None:
                raise WalletNotFound("No wallet found. Create or restore a wallet first.")
            updated = dict(doc, meta=dict(doc["meta"], backupCompletedAt=int(timestamp_ms)))
            self._write_document(updated)
            if self._doc is not None:
                self._doc = updated

    def get_pbkdf2_iterations(self) -> int | None:
        with self._lock:
            doc = self._document()
            if doc is None:
                return None
            return doc["meta"].get("iterations")
