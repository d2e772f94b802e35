"""
Bitcoin HD key derivation and address handling.

Implements:
- BIP-39 seed phrase validation / generation and seed derivation
- BIP-32 derivation along BIP-44/49/84/86 paths, with a per-session cache
- Address construction for P2PKH, P2SH-P2WPKH, P2WPKH and key-path-only P2TR
- Address <-> scriptPubKey conversion
- Reverse lookup of an address to the derivation path that produced it
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

import coincurve
from bip_utils import (
    Base58ChecksumError,
    Base58Decoder,
    Base58Encoder,
    Bech32ChecksumError,
    Bip32Slip10Secp256k1,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
    P2PKHAddrEncoder,
    P2SHAddrEncoder,
    P2TRAddrEncoder,
    P2WPKHAddrEncoder,
    SegwitBech32Decoder,
    SegwitBech32Encoder,
)
from bitcoin.core import Hash160

from wallet_config import BTCNetwork
from wallet_crypto import wipe_bytes
from wallet_errors import (
    DerivedInvalidPublicKey,
    InvalidDerivationPath,
    InvalidLookupConfig,
    InvalidSeedPhrase,
    UnsupportedDerivationPurpose,
    WalletLocked,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HARDENED = 0x80000000
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

AddressType = Literal["p2pkh", "p2sh-p2wpkh", "p2wpkh", "p2tr"]
AddressPurpose = Literal["payment", "ordinals"]


@dataclass(frozen=True)
class NetworkParams:
    coin_type: int
    p2pkh_ver: bytes
    p2sh_ver: bytes
    hrp: str


NETWORKS: dict[str, NetworkParams] = {
    "mainnet": NetworkParams(coin_type=0, p2pkh_ver=b"\x00", p2sh_ver=b"\x05", hrp="bc"),
    "testnet": NetworkParams(coin_type=1, p2pkh_ver=b"\x6f", p2sh_ver=b"\xc4", hrp="tb"),
}


class DerivationPathType(str, Enum):
    """The four supported script conventions, keyed by their BIP purpose."""

    LEGACY = "legacy"
    NESTED_SEGWIT = "nestedSegwit"
    NATIVE_SEGWIT = "nativeSegwit"
    TAPROOT = "taproot"

    @property
    def purpose(self) -> int:
        return _PURPOSES[self]

    @property
    def address_type(self) -> AddressType:
        return _ADDRESS_TYPES[self]

    @classmethod
    def from_purpose(cls, purpose: int) -> DerivationPathType:
        for path_type, value in _PURPOSES.items():
            if value == purpose:
                return path_type
        raise UnsupportedDerivationPurpose(
            f"Unsupported derivation purpose: {purpose}. Expected one of 44, 49, 84, 86."
        )

    @classmethod
    def from_address_type(cls, address_type: str) -> DerivationPathType:
        for path_type, value in _ADDRESS_TYPES.items():
            if value == address_type:
                return path_type
        raise ValueError(f"Unknown address type: {address_type}")


_PURPOSES = {
    DerivationPathType.LEGACY: 44,
    DerivationPathType.NESTED_SEGWIT: 49,
    DerivationPathType.NATIVE_SEGWIT: 84,
    DerivationPathType.TAPROOT: 86,
}

_ADDRESS_TYPES: dict[DerivationPathType, AddressType] = {
    DerivationPathType.LEGACY: "p2pkh",
    DerivationPathType.NESTED_SEGWIT: "p2sh-p2wpkh",
    DerivationPathType.NATIVE_SEGWIT: "p2wpkh",
    DerivationPathType.TAPROOT: "p2tr",
}

# Order used by the reverse lookup scan.
SCAN_ORDER = (
    DerivationPathType.LEGACY,
    DerivationPathType.NESTED_SEGWIT,
    DerivationPathType.NATIVE_SEGWIT,
    DerivationPathType.TAPROOT,
)

PURPOSE_ADDRESS_TYPES: dict[str, DerivationPathType] = {
    "payment": DerivationPathType.NATIVE_SEGWIT,
    "ordinals": DerivationPathType.TAPROOT,
}

DEFAULT_ADDRESS_LOOKUP = {
    "max_account_index": 4,  # accounts 0..4
    "receive_window": 20,  # indices 0..19 on the receive chain
    "change_window": 20,  # indices 0..19 on the change chain
}

ADDRESS_LOOKUP_LIMITS = {
    "max_account_index": 100,
    "receive_window": 200,
    "change_window": 200,
}

_PATH_RE = re.compile(r"^m(/\d+['hH]?)*$")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    public_key: bytes
    path: str
    type: AddressType

    def to_dict(self) -> dict[str, str]:
        return {
            "address": self.address,
            "public_key": self.public_key.hex(),
            "derivation_path": self.path,
            "address_type": self.type,
        }


@dataclass(frozen=True)
class AddressPath:
    path: str
    type: AddressType


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def parse_derivation_path(path: str) -> list[int]:
    """
    Parse ``m/84'/0'/0'/0/0`` style paths into child indices.

    Both ``'`` and ``h`` are accepted as hardened markers.
    """
    if not isinstance(path, str):
        raise InvalidDerivationPath(f"Invalid derivation path: {path!r}")
    cleaned = path.strip()
    if not _PATH_RE.match(cleaned):
        raise InvalidDerivationPath(f"Invalid derivation path format: {path}")
    indices: list[int] = []
    for part in cleaned.split("/")[1:]:
        hardened = part[-1] in "'hH"
        number = int(part[:-1] if hardened else part)
        if number >= HARDENED:
            raise InvalidDerivationPath(f"Derivation index out of range in path: {path}")
        indices.append(number | HARDENED if hardened else number)
    return indices


def format_derivation_path(indices: list[int] | tuple[int, ...]) -> str:
    parts = ["m"]
    for index in indices:
        if index & HARDENED:
            parts.append(f"{index & ~HARDENED}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


def canonical_path(path: str) -> str:
    return format_derivation_path(parse_derivation_path(path))


def path_type_from_path(path: str) -> DerivationPathType:
    """Infer the script convention from the purpose field of a path."""
    indices = parse_derivation_path(path)
    if not indices:
        raise UnsupportedDerivationPurpose(f"Derivation path has no purpose field: {path}")
    purpose = indices[0]
    if not purpose & HARDENED:
        raise UnsupportedDerivationPurpose(
            f"Unsupported derivation purpose: {purpose} in path {path}"
        )
    try:
        return DerivationPathType.from_purpose(purpose & ~HARDENED)
    except UnsupportedDerivationPurpose as exc:
        raise UnsupportedDerivationPurpose(
            f"Unsupported derivation purpose: {purpose & ~HARDENED} in path {path}"
        ) from exc


def build_derivation_path(
    path_type: DerivationPathType,
    network: BTCNetwork,
    account: int = 0,
    change: int = 0,
    index: int = 0,
) -> str:
    if not isinstance(account, int) or not 0 <= account < HARDENED:
        raise InvalidDerivationPath(f"Invalid account index: {account!r}")
    if change not in (0, 1):
        raise InvalidDerivationPath(f"Invalid change value: {change!r}. Expected 0 or 1.")
    if not isinstance(index, int) or not 0 <= index < HARDENED:
        raise InvalidDerivationPath(f"Invalid address index: {index!r}")
    coin_type = NETWORKS[network].coin_type
    return f"m/{path_type.purpose}'/{coin_type}'/{account}'/{change}/{index}"


# ---------------------------------------------------------------------------
# Scripts and addresses
# ---------------------------------------------------------------------------


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash."""
    tag_hash = hashlib.sha256(tag.encode("utf-8")).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def validate_public_key(public_key: bytes) -> bytes:
    """Reject anything that is not a compressed point on secp256k1."""
    if len(public_key) != 33 or public_key[0] not in (2, 3):
        raise DerivedInvalidPublicKey("Derived invalid public key")
    try:
        coincurve.PublicKey(bytes(public_key))
    except ValueError as exc:
        raise DerivedInvalidPublicKey("Derived invalid public key") from exc
    return bytes(public_key)


def x_only(public_key: bytes) -> bytes:
    return public_key[1:] if len(public_key) == 33 else public_key


def taproot_tweak(internal_key: bytes) -> bytes:
    """TapTweak for a key-path-only output (no script tree)."""
    return tagged_hash("TapTweak", x_only(internal_key))


def taproot_output_key(internal_key: bytes) -> bytes:
    """Return the x-only BIP-341 output key Q = P + H_TapTweak(P)*G."""
    lifted = coincurve.PublicKey(b"\x02" + x_only(internal_key))
    tweaked = lifted.add(taproot_tweak(internal_key))
    return tweaked.format(compressed=True)[1:]


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    return b"\x00\x14" + pubkey_hash


def p2sh_script(script_hash: bytes) -> bytes:
    return b"\xa9\x14" + script_hash + b"\x87"


def p2tr_script(output_key: bytes) -> bytes:
    return b"\x51\x20" + output_key


def nested_segwit_redeem_script(public_key: bytes) -> bytes:
    return p2wpkh_script(Hash160(public_key))


def script_for_public_key(public_key: bytes, path_type: DerivationPathType) -> bytes:
    """Build the scriptPubKey a key pays to under the given script convention."""
    if path_type is DerivationPathType.LEGACY:
        return p2pkh_script(Hash160(public_key))
    if path_type is DerivationPathType.NESTED_SEGWIT:
        return p2sh_script(Hash160(nested_segwit_redeem_script(public_key)))
    if path_type is DerivationPathType.NATIVE_SEGWIT:
        return p2wpkh_script(Hash160(public_key))
    if path_type is DerivationPathType.TAPROOT:
        return p2tr_script(taproot_output_key(public_key))
    raise ValueError(f"Unhandled derivation path type: {path_type}")


def encode_address(
    public_key: bytes, path_type: DerivationPathType, network: BTCNetwork
) -> str:
    params = NETWORKS[network]
    if path_type is DerivationPathType.LEGACY:
        return P2PKHAddrEncoder.EncodeKey(public_key, net_ver=params.p2pkh_ver)
    if path_type is DerivationPathType.NESTED_SEGWIT:
        return P2SHAddrEncoder.EncodeKey(public_key, net_ver=params.p2sh_ver)
    if path_type is DerivationPathType.NATIVE_SEGWIT:
        return P2WPKHAddrEncoder.EncodeKey(public_key, hrp=params.hrp, wit_ver=0)
    if path_type is DerivationPathType.TAPROOT:
        return P2TRAddrEncoder.EncodeKey(public_key, hrp=params.hrp)
    raise ValueError(f"Unhandled derivation path type: {path_type}")


def script_address_type(script: bytes) -> AddressType | None:
    """Classify a scriptPubKey into one of the supported output types."""
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return "p2pkh"
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return "p2sh-p2wpkh"
    if len(script) == 22 and script[:2] == b"\x00\x14":
        return "p2wpkh"
    if len(script) == 34 and script[:2] == b"\x51\x20":
        return "p2tr"
    return None


def script_to_address(script: bytes, network: BTCNetwork) -> str | None:
    params = NETWORKS[network]
    kind = script_address_type(script)
    if kind == "p2pkh":
        return Base58Encoder.CheckEncode(params.p2pkh_ver + script[3:23])
    if kind == "p2sh-p2wpkh":
        return Base58Encoder.CheckEncode(params.p2sh_ver + script[2:22])
    if kind == "p2wpkh":
        return SegwitBech32Encoder.Encode(params.hrp, 0, script[2:])
    if kind == "p2tr":
        return SegwitBech32Encoder.Encode(params.hrp, 1, script[2:])
    return None


def address_to_script(address: str, network: BTCNetwork) -> bytes:
    """Decode an address of the active network into its scriptPubKey."""
    params = NETWORKS[network]
    address = address.strip()
    if address.lower().startswith(params.hrp + "1"):
        try:
            wit_ver, program = SegwitBech32Decoder.Decode(params.hrp, address.lower())
        except (ValueError, Bech32ChecksumError) as exc:
            raise ValueError(f"Invalid {network} address: {address}") from exc
        if wit_ver == 0 and len(program) == 20:
            return p2wpkh_script(program)
        if wit_ver == 1 and len(program) == 32:
            return p2tr_script(program)
        raise ValueError(f"Unsupported witness program in address: {address}")
    try:
        decoded = Base58Decoder.CheckDecode(address)
    except (ValueError, Base58ChecksumError) as exc:
        raise ValueError(f"Invalid {network} address: {address}") from exc
    if len(decoded) != 21:
        raise ValueError(f"Invalid {network} address: {address}")
    version, payload = decoded[:1], decoded[1:]
    if version == params.p2pkh_ver:
        return p2pkh_script(payload)
    if version == params.p2sh_ver:
        return p2sh_script(payload)
    raise ValueError(f"Address {address} does not belong to {network}.")


# ---------------------------------------------------------------------------
# Key manager
# ---------------------------------------------------------------------------


class KeyManager:
    """
    Holds the unlocked master key and derives keys and addresses from it.

    All derivation state (master node, mnemonic, derived-key cache) lives on
    the instance and is dropped by ``lock()``.
    """

    def __init__(
        self,
        network: BTCNetwork = "mainnet",
        lookup: dict[str, int] | None = None,
    ) -> None:
        if network not in NETWORKS:
            raise ValueError(f"Unknown network: {network}")
        self._network: BTCNetwork = network
        self._master: Bip32Slip10Secp256k1 | None = None
        self._mnemonic: bytearray | None = None
        self._cache: dict[str, Bip32Slip10Secp256k1] = {}
        self._lookup = dict(DEFAULT_ADDRESS_LOOKUP)
        self._custom_paths: dict[str, str] = {}
        self._lock = threading.RLock()
        if lookup:
            self.set_address_lookup_config(**lookup)

    # -- seed handling ------------------------------------------------------

    @staticmethod
    def generate_mnemonic(strength: int = 128) -> str:
        """Generate a new BIP-39 phrase: 128 bits -> 12 words, 256 bits -> 24 words."""
        words = {128: Bip39WordsNum.WORDS_NUM_12, 256: Bip39WordsNum.WORDS_NUM_24}
        if strength not in words:
            raise ValueError("strength must be 128 or 256")
        return Bip39MnemonicGenerator().FromWordsNumber(words[strength]).ToStr()

    def from_mnemonic(self, mnemonic: str, passphrase: str = "") -> None:
        normalized = " ".join(str(mnemonic).split())
        if not normalized or not Bip39MnemonicValidator().IsValid(normalized):
            raise InvalidSeedPhrase("Invalid mnemonic")

        seed = bytearray(Bip39SeedGenerator(normalized).Generate(passphrase or ""))
        try:
            master = Bip32Slip10Secp256k1.FromSeed(bytes(seed))
        finally:
            wipe_bytes(seed)

        with self._lock:
            wipe_bytes(self._mnemonic)
            self._master = master
            self._mnemonic = bytearray(normalized.encode("utf-8"))
            self._cache.clear()
        logger.debug("Key manager unlocked on %s", self._network)

    def export_mnemonic(self) -> str:
        """Return the seed phrase. Exposes the seed; callers must re-encrypt it."""
        with self._lock:
            if self._mnemonic is None:
                raise WalletLocked("No mnemonic available")
            return self._mnemonic.decode("utf-8")

    def is_initialized(self) -> bool:
        return self._master is not None

    def lock(self) -> None:
        with self._lock:
            self._master = None
            wipe_bytes(self._mnemonic)
            self._mnemonic = None
            self._cache.clear()
            self._custom_paths = {}
        logger.debug("Key manager locked")

    def _assert_unlocked(self) -> Bip32Slip10Secp256k1:
        master = self._master
        if master is None or self._mnemonic is None:
            raise WalletLocked("Wallet is locked")
        return master

    # -- settings -----------------------------------------------------------

    @property
    def network(self) -> BTCNetwork:
        return self._network

    def set_network(self, network: BTCNetwork) -> None:
        if network not in NETWORKS:
            raise ValueError(f"Unknown network: {network}")
        with self._lock:
            if self._network != network:
                self._network = network
                self._cache.clear()

    def set_custom_paths(self, paths: dict[str, str] | None) -> None:
        cleaned: dict[str, str] = {}
        for purpose in ("payment", "ordinals"):
            value = (paths or {}).get(purpose)
            if value:
                cleaned[purpose] = value
        self._custom_paths = cleaned

    def get_custom_paths(self) -> dict[str, str]:
        return dict(self._custom_paths)

    @property
    def lookup_config(self) -> dict[str, int]:
        return dict(self._lookup)

    def set_address_lookup_config(self, **config: Any) -> None:
        """
        Adjust the reverse lookup window. Values must be non-negative
        integers and are clamped to ADDRESS_LOOKUP_LIMITS.
        """
        updated = dict(self._lookup)
        for name, value in config.items():
            if name not in ADDRESS_LOOKUP_LIMITS:
                raise InvalidLookupConfig(f"Unknown lookup setting: {name}")
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidLookupConfig(f"{name} must be a non-negative integer")
            updated[name] = min(value, ADDRESS_LOOKUP_LIMITS[name])
        self._lookup = updated

    # -- derivation ---------------------------------------------------------

    def derive_key(self, path: str) -> Bip32Slip10Secp256k1:
        """Derive (or fetch from cache) the node at ``path``."""
        indices = parse_derivation_path(path)
        with self._lock:
            master = self._assert_unlocked()
            key = format_derivation_path(indices)
            node = self._cache.get(key)
            if node is not None:
                return node

            # Start from the deepest cached ancestor.
            node = master
            start = 0
            for depth in range(len(indices) - 1, 0, -1):
                cached = self._cache.get(format_derivation_path(indices[:depth]))
                if cached is not None:
                    node, start = cached, depth
                    break
            for position in range(start, len(indices)):
                node = node.ChildKey(indices[position])
                self._cache[format_derivation_path(indices[: position + 1])] = node
            return node

    def _public_key(self, node: Bip32Slip10Secp256k1) -> bytes:
        return validate_public_key(node.PublicKey().RawCompressed().ToBytes())

    def _derived(self, path: str, path_type: DerivationPathType) -> DerivedAddress:
        public_key = self._public_key(self.derive_key(path))
        return DerivedAddress(
            address=encode_address(public_key, path_type, self._network),
            public_key=public_key,
            path=path,
            type=path_type.address_type,
        )

    def derive_address(
        self,
        path_type: DerivationPathType | str,
        account: int = 0,
        change: int = 0,
        index: int = 0,
    ) -> DerivedAddress:
        path_type = DerivationPathType(path_type)
        path = build_derivation_path(path_type, self._network, account, change, index)
        self._assert_unlocked()
        return self._derived(path, path_type)

    def derive_address_from_path(self, path: str) -> DerivedAddress:
        path_type = path_type_from_path(path)
        self._assert_unlocked()
        return self._derived(canonical_path(path), path_type)

    def get_addresses(
        self,
        purposes: list[str],
        custom_paths: dict[str, str] | None = None,
    ) -> list[dict[str, str]]:
        """
        Return one address per requested purpose (payment / ordinals).

        A custom path configured for a purpose wins over the default
        account-0 receive path.
        """
        if custom_paths is None:
            custom_paths = self._custom_paths
        addresses: list[dict[str, str]] = []
        for purpose in purposes:
            if purpose not in PURPOSE_ADDRESS_TYPES:
                raise ValueError(
                    f"Unsupported address purpose: {purpose}. Use 'payment' or 'ordinals'."
                )
            custom_path = custom_paths.get(purpose)
            if custom_path:
                derived = self.derive_address_from_path(custom_path)
            else:
                derived = self.derive_address(PURPOSE_ADDRESS_TYPES[purpose], 0, 0, 0)
            info = derived.to_dict()
            info["purpose"] = purpose
            addresses.append(info)
        return addresses

    def find_address_path(self, address: str) -> AddressPath | None:
        """
        Find the derivation path that produced ``address``.

        Custom paths are checked first, then the standard paths inside the
        configured lookup window. Returns None when the address is not ours
        (or lies outside the window).
        """
        self._assert_unlocked()
        address = address.strip()
        # Bech32 is case-insensitive; encoders emit lower case.
        if address.lower().startswith(NETWORKS[self._network].hrp + "1"):
            address = address.lower()

        for purpose in ("payment", "ordinals"):
            custom_path = self._custom_paths.get(purpose)
            if not custom_path:
                continue
            try:
                derived = self.derive_address_from_path(custom_path)
            except (InvalidDerivationPath, UnsupportedDerivationPurpose):
                logger.debug("Skipping unusable custom %s path", purpose)
                continue
            if derived.address == address:
                return AddressPath(derived.path, derived.type)

        lookup = self._lookup
        for path_type in SCAN_ORDER:
            for account in range(lookup["max_account_index"] + 1):
                for change, window in ((0, lookup["receive_window"]), (1, lookup["change_window"])):
                    for index in range(window):
                        derived = self.derive_address(path_type, account, change, index)
                        if derived.address == address:
                            return AddressPath(derived.path, derived.type)
        logger.debug("Address not found within lookup window %s", lookup)
        return None
