"""
HD wallet handle: ties the key manager, the signing engine, the encrypted
store and the backup protocol together.

Typical use:

    cfg = WalletConfig.from_env()
    wallet = HDWallet.from_config(cfg)
    if wallet.exists():
        wallet.unlock(password)
    else:
        mnemonic = wallet.create(password)["mnemonic"]

    wallet.get_addresses(["payment", "ordinals"])
    wallet.sign_psbt(psbt_b64, [{"index": 0}])
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Literal

from btc_keys import KeyManager, path_type_from_path
from btc_signing import SignInputRequest, sign_message, sign_psbt, verify_message
from wallet_backup import open_backup, parse_backup_envelope, seal_backup
from wallet_config import BTCNetwork, WalletConfig, configure_logging
from wallet_crypto import wipe_bytes
from wallet_errors import (
    BackupFormatInvalid,
    BackupRequiresPassword,
    PasswordRequired,
    StorageError,
    WalletBusy,
    WalletExists,
    WalletLocked,
    WalletNotFound,
    WeakPassword,
    WrongPassword,
)
from wallet_storage import (
    SLOT_CONFIG,
    SLOT_MNEMONIC,
    SLOT_PASSPHRASE,
    SecureStorage,
)

logger = logging.getLogger(__name__)

WalletEvent = Literal["unlock", "lock", "networkChanged", "accountsChanged"]
WALLET_EVENTS = frozenset({"unlock", "lock", "networkChanged", "accountsChanged"})
DEFAULT_PURPOSES = ["payment", "ordinals"]
PASSWORD_MIN_LENGTH = 8
BACKUP_PAYLOAD_VERSION = 1


def validate_password(password: str | None, label: str = "wallet password") -> None:
    """Minimum strength for new passwords. Existing passwords are not re-checked."""
    if not password or not password.strip():
        raise WeakPassword(f"{label} is required")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise WeakPassword(f"{label} must be at least {PASSWORD_MIN_LENGTH} characters")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _validate_custom_paths(custom_paths: dict[str, str] | None) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for purpose, path in (custom_paths or {}).items():
        if purpose not in ("payment", "ordinals"):
            raise ValueError(f"Unsupported custom path purpose: {purpose}")
        if path:
            path_type_from_path(path)
            cleaned[purpose] = path
    return cleaned


class HDWallet:
    """Caller-owned wallet handle. Thread-safe; one instance per vault."""

    def __init__(
        self,
        storage: SecureStorage,
        network: BTCNetwork = "mainnet",
        lookup: dict[str, int] | None = None,
    ) -> None:
        self.storage = storage
        self._keys = KeyManager(network, lookup)
        self._custom_paths: dict[str, str] = {}
        self._handlers: dict[str, list[Callable[[Any], None]]] = {}
        self._unlocked = False
        self._in_flight = 0
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, cfg: WalletConfig) -> HDWallet:
        storage = SecureStorage(cfg.vault_dir, iterations=cfg.pbkdf2_iterations)
        return cls(storage, network=cfg.network, lookup=cfg.lookup)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def is_unlocked(self) -> bool:
        return self._unlocked

    def _ensure_unlocked(self) -> None:
        if not self._unlocked:
            raise WalletLocked("Wallet is locked. Call unlock() first.")

    def _assert_idle(self, operation: str) -> None:
        if self._in_flight:
            raise WalletBusy(f"Cannot {operation} while signing is in progress.")

    @contextmanager
    def _signing(self) -> Iterator[KeyManager]:
        with self._lock:
            self._ensure_unlocked()
            self._in_flight += 1
        try:
            yield self._keys
        finally:
            with self._lock:
                self._in_flight -= 1

    def status(self) -> dict[str, Any]:
        return {
            "exists": self.storage.exists(),
            "unlocked": self._unlocked,
            "network": self.network,
            "has_password": self.storage.has_password(),
            "has_backup": self.storage.has_backup(),
            "lookup": self._keys.lookup_config,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.storage.exists()

    def create(
        self,
        password: str | None = None,
        mnemonic_passphrase: str | None = None,
    ) -> dict[str, str]:
        """
        Create a new wallet. Without a password the store key is kept by the
        platform key store.

        Returns {"mnemonic": str}; the phrase must be backed up by the user.
        """
        if password:
            validate_password(password)
        with self._lock:
            self._assert_idle("create a wallet")
            if self.storage.exists():
                raise WalletExists(
                    "Wallet already exists. Call unlock() to use it or destroy() before creating a new one."
                )
            mnemonic = KeyManager.generate_mnemonic()
            self._initialize(mnemonic, password, mnemonic_passphrase, None)
        logger.info("Created new wallet on %s", self.network)
        return {"mnemonic": mnemonic}

    def restore(
        self,
        mnemonic: str,
        password: str | None = None,
        mnemonic_passphrase: str | None = None,
        custom_paths: dict[str, str] | None = None,
    ) -> None:
        if password:
            validate_password(password)
        cleaned_paths = _validate_custom_paths(custom_paths)
        with self._lock:
            self._assert_idle("restore a wallet")
            if self.storage.exists():
                raise WalletExists("Wallet already exists. Call destroy() before restoring a new one.")
            self._initialize(mnemonic, password, mnemonic_passphrase, cleaned_paths)
        logger.info("Restored wallet on %s", self.network)

    def _initialize(
        self,
        mnemonic: str,
        password: str | None,
        mnemonic_passphrase: str | None,
        custom_paths: dict[str, str] | None,
    ) -> None:
        # Validates the phrase before the store is touched.
        self._keys.from_mnemonic(mnemonic, mnemonic_passphrase or "")
        try:
            self.storage.init(password)
            mnemonic_bytes = bytearray(self._keys.export_mnemonic().encode("utf-8"))
            try:
                self.storage.set(SLOT_MNEMONIC, bytes(mnemonic_bytes))
            finally:
                wipe_bytes(mnemonic_bytes)
            if mnemonic_passphrase:
                self.storage.set(SLOT_PASSPHRASE, mnemonic_passphrase.encode("utf-8"))
            self._custom_paths = dict(custom_paths or {})
            self._keys.set_custom_paths(self._custom_paths)
            self._persist_config()
            self.storage.request_persistence()
        except Exception:
            self._keys.lock()
            self._custom_paths = {}
            self.storage.clear()
            raise

        self._unlocked = True
        self._emit("unlock", None)
        self._emit_accounts_snapshot()

    def unlock(
        self,
        password: str | None = None,
        mnemonic_passphrase: str | None = None,
    ) -> None:
        with self._lock:
            self._assert_idle("unlock")
            if not self.storage.exists():
                raise WalletNotFound("No wallet found. Create or restore a wallet first.")
            self.storage.init(password, read_only=True)
            try:
                self._load_keys(mnemonic_passphrase)
            except Exception:
                self.storage.close()
                raise
            self._unlocked = True
        logger.info("Wallet unlocked on %s", self.network)
        self._emit("unlock", None)
        self._emit_accounts_snapshot()

    def _load_keys(self, mnemonic_passphrase: str | None) -> None:
        mnemonic_bytes = self.storage.get(SLOT_MNEMONIC)
        if mnemonic_bytes is None:
            raise WalletNotFound("No wallet found. Create or restore a wallet first.")
        stored_bytes = self.storage.get(SLOT_PASSPHRASE)
        stored_passphrase = stored_bytes.decode("utf-8") if stored_bytes is not None else None

        if stored_passphrase is None and mnemonic_passphrase and mnemonic_passphrase.strip():
            raise WrongPassword(
                "Wallet was created without a passphrase. Do not provide one when unlocking."
            )
        if (
            stored_passphrase is not None
            and mnemonic_passphrase is not None
            and mnemonic_passphrase != stored_passphrase
        ):
            raise WrongPassword("Provided passphrase does not match the stored wallet passphrase.")

        buf = bytearray(mnemonic_bytes)
        try:
            self._keys.from_mnemonic(
                buf.decode("utf-8"), mnemonic_passphrase or stored_passphrase or ""
            )
        finally:
            wipe_bytes(buf)
        self._apply_stored_config()

    def lock(self) -> None:
        """Drop all key material from memory."""
        with self._lock:
            self._assert_idle("lock")
            self._keys.lock()
            self.storage.close()
            self._custom_paths = {}
            self._unlocked = False
        logger.info("Wallet locked")
        self._emit("lock", None)

    def destroy(self) -> None:
        """Permanently delete the wallet and detach all event handlers."""
        with self._lock:
            self._discard()
            self._handlers.clear()

    def _discard(self) -> None:
        self._assert_idle("destroy the wallet")
        self._keys.lock()
        self._custom_paths = {}
        self.storage.clear()
        self._unlocked = False
        logger.info("Wallet destroyed")

    # ------------------------------------------------------------------
    # Password management
    # ------------------------------------------------------------------

    def set_password(self, password: str) -> None:
        self._ensure_unlocked()
        validate_password(password)
        self.storage.set_password(password)

    def change_password(
        self, old_password: str, new_password: str, iterations: int | None = None
    ) -> None:
        self._ensure_unlocked()
        validate_password(new_password, "new wallet password")
        self.storage.change_password(old_password, new_password, iterations)

    def remove_password(self, current_password: str) -> None:
        self._ensure_unlocked()
        if not current_password or not current_password.strip():
            raise PasswordRequired("Current password is required to remove password protection.")
        self.storage.remove_password(current_password)

    def has_password(self) -> bool:
        return self.storage.has_password()

    def has_backup(self) -> bool:
        return self.storage.has_backup()

    def mark_backup_completed(self, timestamp_ms: int | None = None) -> None:
        self.storage.mark_backup_completed(timestamp_ms if timestamp_ms is not None else _now_ms())

    # ------------------------------------------------------------------
    # Addresses and signing
    # ------------------------------------------------------------------

    def get_addresses(self, purposes: list[str] | None = None) -> list[dict[str, str]]:
        self._ensure_unlocked()
        return self._keys.get_addresses(purposes or DEFAULT_PURPOSES, self._custom_paths)

    def sign_message(
        self, message: str, address: str, protocol: str | None = None
    ) -> dict[str, str]:
        with self._signing() as keys:
            return sign_message(keys, message, address, protocol)

    def verify_message(self, message: str, signature: str, address: str) -> dict[str, Any]:
        return verify_message(message, signature, address, self.network)

    def sign_psbt(
        self,
        psbt: str | bytes,
        inputs_to_sign: list[SignInputRequest | dict[str, Any]],
    ) -> str:
        with self._signing() as keys:
            return sign_psbt(keys, psbt, inputs_to_sign)

    def set_address_lookup_config(self, **config: Any) -> dict[str, int]:
        self._keys.set_address_lookup_config(**config)
        return self._keys.lookup_config

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    @property
    def network(self) -> BTCNetwork:
        return self._keys.network

    def set_network(self, network: BTCNetwork) -> None:
        """Switch network and persist it; rolled back if persisting fails."""
        with self._lock:
            self._ensure_unlocked()
            old_network = self._keys.network
            if old_network == network:
                return
            self._keys.set_network(network)
            try:
                self._persist_config()
            except Exception as exc:
                self._keys.set_network(old_network)
                raise StorageError(
                    f"Failed to persist network change. Network remains set to {old_network}."
                ) from exc
        logger.info("Network changed to %s", network)
        self._emit("networkChanged", network)
        self._emit_accounts_snapshot()

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def export_mnemonic(self) -> str:
        """Return the seed phrase. Exposes the seed; use with caution."""
        self._ensure_unlocked()
        return self._keys.export_mnemonic()

    def export_backup(self, backup_password: str) -> str:
        """Export an encrypted, authenticated backup string."""
        self._ensure_unlocked()
        validate_password(backup_password, "backup password")
        if not self.storage.has_password():
            raise BackupRequiresPassword(
                "Backup requires a wallet password. Set a wallet password first."
            )

        created_at = _now_ms()
        payload: dict[str, Any] = {
            "version": BACKUP_PAYLOAD_VERSION,
            "mnemonic": self._keys.export_mnemonic(),
            "network": self.network,
            "createdAt": created_at,
        }
        passphrase = self.storage.get(SLOT_PASSPHRASE)
        if passphrase is not None:
            payload["passphrase"] = passphrase.decode("utf-8")
        if self._custom_paths:
            payload["customPaths"] = dict(self._custom_paths)

        iterations = self.storage.get_pbkdf2_iterations() or self.storage.iterations
        try:
            envelope = seal_backup(payload, backup_password, iterations, self.network, created_at)
        finally:
            payload.clear()
        self.storage.mark_backup_completed(created_at)
        logger.info("Exported wallet backup (%d PBKDF2 iterations)", iterations)
        return envelope.encode()

    def import_backup(
        self,
        backup: str,
        backup_password: str,
        wallet_password: str,
        overwrite: bool = False,
    ) -> None:
        """
        Restore a wallet from a backup string.

        The backup is fully verified and decrypted before an existing wallet
        is replaced.
        """
        if not wallet_password or not wallet_password.strip():
            raise PasswordRequired(
                "wallet_password is required to restore a backup. It may match the backup password."
            )
        validate_password(wallet_password)

        with self._lock:
            self._assert_idle("import a backup")
            has_existing = self.storage.exists()
            if has_existing and not overwrite:
                raise WalletExists("Wallet already exists. Call destroy() first or pass overwrite=True.")

            envelope = parse_backup_envelope(backup)
            payload = open_backup(envelope, backup_password)
            try:
                network = payload.get("network", envelope.network)
                if network not in ("mainnet", "testnet"):
                    raise BackupFormatInvalid(f"Unsupported backup network: {network!r}")
                passphrase = payload.get("passphrase") or None
                custom_paths = payload.get("customPaths")
                if custom_paths is not None and not isinstance(custom_paths, dict):
                    raise BackupFormatInvalid("Backup customPaths must be an object.")
                custom_paths = _validate_custom_paths(custom_paths)
                # Check the phrase on a scratch key manager before anything is replaced.
                probe = KeyManager(network)
                probe.from_mnemonic(payload["mnemonic"], passphrase or "")
                probe.lock()

                if has_existing:
                    self._discard()
                self._keys.set_network(network)
                self.restore(payload["mnemonic"], wallet_password, passphrase, custom_paths)
            finally:
                payload.clear()

            created_at = envelope.created_at or _now_ms()
            self.storage.mark_backup_completed(created_at)
        logger.info("Imported wallet backup on %s", self.network)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: WalletEvent, handler: Callable[[Any], None]) -> None:
        if event not in WALLET_EVENTS:
            raise ValueError(f"Unknown wallet event: {event}")
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: WalletEvent, handler: Callable[[Any], None]) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: WalletEvent, data: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(data)
            except Exception:
                logger.exception("Error in event handler for %s", event)

    def _emit_accounts_snapshot(self) -> None:
        if self._unlocked and self._handlers.get("accountsChanged"):
            self._emit("accountsChanged", self.get_addresses(DEFAULT_PURPOSES))

    # ------------------------------------------------------------------
    # Persisted configuration
    # ------------------------------------------------------------------

    def _apply_stored_config(self) -> None:
        raw = self.storage.get(SLOT_CONFIG)
        if raw is None:
            return
        try:
            config = json.loads(raw.decode("utf-8"))
        except ValueError:
            logger.warning("Ignoring malformed stored wallet config")
            return
        if not isinstance(config, dict):
            logger.warning("Ignoring malformed stored wallet config")
            return
        if config.get("network") in ("mainnet", "testnet"):
            self._keys.set_network(config["network"])
        custom_paths = config.get("customPaths")
        if isinstance(custom_paths, dict):
            self._custom_paths = {k: v for k, v in custom_paths.items() if v}
            self._keys.set_custom_paths(self._custom_paths)

    def _persist_config(self) -> None:
        config: dict[str, Any] = {"network": self.network}
        if self._custom_paths:
            config["customPaths"] = dict(self._custom_paths)
        self.storage.set(SLOT_CONFIG, json.dumps(config).encode("utf-8"))


# ---------------------------------------------------------------------------
# Process-wide default handle (used by the MCP server)
# ---------------------------------------------------------------------------

_default_wallet: HDWallet | None = None
_default_lock = threading.Lock()


def get_default_wallet() -> HDWallet:
    global _default_wallet
    with _default_lock:
        if _default_wallet is None:
            cfg = WalletConfig.from_env()
            configure_logging(cfg.log_level)
            _default_wallet = HDWallet.from_config(cfg)
        return _default_wallet


def reset_default_wallet() -> None:
    global _default_wallet
    with _default_lock:
        _default_wallet = None
