"""
Error taxonomy for the BTC vault.

Every failure the wallet core can surface is one of the classes below. Each
class carries a stable ``code`` so tool callers can branch on the category
without parsing messages.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all wallet core errors."""

    code = "wallet-error"


class WalletLocked(WalletError):
    code = "wallet-locked"


class WalletBusy(WalletError):
    """A lock/unlock transition was attempted while signing was in flight."""

    code = "wallet-busy"


class WalletConfigError(WalletError):
    """Configuration error (environment or .env values)."""

    code = "config-invalid"


# ---------------------------------------------------------------------------
# Derivation Engine
# ---------------------------------------------------------------------------


class DerivationError(WalletError):
    code = "derivation-error"


class InvalidSeedPhrase(DerivationError):
    code = "invalid-seed-phrase"


class DerivedInvalidPublicKey(DerivationError):
    code = "derived-invalid-public-key"


class UnsupportedDerivationPurpose(DerivationError):
    code = "unsupported-derivation-purpose"


class InvalidDerivationPath(DerivationError):
    code = "invalid-derivation-path"


class InvalidLookupConfig(DerivationError, ValueError):
    code = "invalid-lookup-config"


# ---------------------------------------------------------------------------
# Signing Engine
# ---------------------------------------------------------------------------


class SigningError(WalletError):
    code = "signing-error"


class AddressNotFound(SigningError):
    code = "address-not-found"


class CannotDetermineScript(SigningError):
    code = "cannot-determine-script"


class TaprootScriptPathUnsupported(SigningError):
    code = "taproot-script-path-unsupported"


class TaprootMultiSighashUnsupported(SigningError):
    code = "taproot-multi-sighash-unsupported"


class TaprootRequiresBip322(SigningError):
    code = "taproot-requires-bip322"


class Bip322RequiresTaproot(SigningError):
    code = "bip322-requires-taproot"


class PsbtInputMismatch(SigningError):
    code = "psbt-input-mismatch"


class PsbtFormatInvalid(SigningError, ValueError):
    code = "psbt-format-invalid"


class SighashNotAllowed(SigningError):
    code = "sighash-not-allowed"


# ---------------------------------------------------------------------------
# Encrypted storage
# ---------------------------------------------------------------------------


class StorageError(WalletError):
    code = "storage-error"


class PasswordRequired(StorageError):
    code = "password-required"


class WrongPassword(StorageError):
    code = "wrong-password"


class DecryptionFailed(StorageError):
    code = "decryption-failed"


class WalletNotFound(StorageError):
    code = "wallet-not-found"


class WalletExists(StorageError):
    code = "wallet-exists"


class WeakPassword(StorageError, ValueError):
    code = "weak-password"


# ---------------------------------------------------------------------------
# Backup protocol
# ---------------------------------------------------------------------------


class BackupError(WalletError):
    code = "backup-error"


class BackupIntegrityFailure(BackupError):
    code = "backup-integrity-failure"


class BackupFormatInvalid(BackupError, ValueError):
    code = "backup-format-invalid"


class BackupRequiresPassword(BackupError):
    code = "backup-requires-password"
