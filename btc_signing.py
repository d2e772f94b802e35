"""
Message and PSBT signing for keys produced by ``btc_keys.KeyManager``.

Implements:
- Bitcoin signed-message ECDSA signatures (BIP-137 headers) and verification
- BIP-322 "simple" signatures for Taproot addresses (BIP-340 Schnorr over the
  BIP-341 key-path sighash of the virtual to_sign transaction)
- PSBT input signing: legacy P2PKH, P2SH-P2WPKH, P2WPKH (BIP-143) and
  Taproot key-path spends, with optional per-input finalization
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import struct
from dataclasses import dataclass
from typing import Any, Iterable, Literal

import coincurve
from bip_utils import Bip32Slip10Secp256k1
from bitcoin.core import CTransaction, CTxIn, CTxOut, COutPoint, Hash160
from bitcoin.core.script import (
    OP_0,
    OP_RETURN,
    SIGVERSION_BASE,
    SIGVERSION_WITNESS_V0,
    CScript,
    SignatureHash,
)

from btc_keys import (
    CURVE_ORDER,
    DerivationPathType,
    KeyManager,
    address_to_script,
    canonical_path,
    nested_segwit_redeem_script,
    p2pkh_script,
    path_type_from_path,
    script_address_type,
    script_for_public_key,
    script_to_address,
    tagged_hash,
    validate_public_key,
)
from btc_psbt import (
    FINALIZER_STRIPPED_TYPES,
    PSBT_IN_FINAL_SCRIPTSIG,
    PSBT_IN_FINAL_SCRIPTWITNESS,
    PSBT_IN_PARTIAL_SIG,
    PSBT_IN_REDEEM_SCRIPT,
    PSBT_IN_TAP_INTERNAL_KEY,
    PSBT_IN_TAP_KEY_SIG,
    Psbt,
    _decode_varint,
    encode_varint,
    serialize_witness,
)
from wallet_config import BTCNetwork
from wallet_crypto import wipe_bytes
from wallet_errors import (
    AddressNotFound,
    Bip322RequiresTaproot,
    CannotDetermineScript,
    PsbtFormatInvalid,
    PsbtInputMismatch,
    SighashNotAllowed,
    SigningError,
    TaprootMultiSighashUnsupported,
    TaprootRequiresBip322,
    TaprootScriptPathUnsupported,
)

logger = logging.getLogger(__name__)

MessageProtocol = Literal["ecdsa", "bip322-simple"]

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

ECDSA_SIGHASH_TYPES = frozenset({0x01, 0x02, 0x03, 0x81, 0x82, 0x83})
TAPROOT_SIGHASH_TYPES = frozenset({0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83})

# BIP-137 header base per address type (compressed keys only).
BIP137_HEADER_BASE = {"p2pkh": 31, "p2sh-p2wpkh": 35, "p2wpkh": 39}

MESSAGE_MAGIC = b"\x18Bitcoin Signed Message:\n"


# ---------------------------------------------------------------------------
# Hashing and key helpers
# ---------------------------------------------------------------------------


def bitcoin_message_hash(message: str) -> bytes:
    """
    Double SHA-256 of the standard Bitcoin Signed Message serialization:
    \\x18Bitcoin Signed Message:\\n + varint(len) + message
    """
    msg_bytes = message.encode("utf-8")
    full_msg = MESSAGE_MAGIC + encode_varint(len(msg_bytes)) + msg_bytes
    return hashlib.sha256(hashlib.sha256(full_msg).digest()).digest()


def bip322_message_hash(message: str) -> bytes:
    """BIP-322 message hash (tagged hash)."""
    return tagged_hash("BIP0322-signed-message", message.encode("utf-8"))


def even_y_key_material(private_key: bytes, public_key: bytes) -> tuple[bytearray, bytes]:
    """
    Normalize a key pair to the even-Y form required by BIP-340.

    Negates the scalar mod n when the public key has odd Y, then recomputes
    the x-only public key from the normalized scalar.
    """
    secret = int.from_bytes(private_key, "big")
    if public_key[0] == 0x03:
        secret = (CURVE_ORDER - secret) % CURVE_ORDER
    even_priv = bytearray(secret.to_bytes(32, "big"))
    even_pub = coincurve.PrivateKey(bytes(even_priv)).public_key.format(compressed=True)
    return even_priv, even_pub[1:]


def taproot_tweak_private_key(even_priv: bytes | bytearray, x_only_pubkey: bytes) -> bytearray:
    """Tweak an even-Y private key by H_TapTweak(x-only key) for a key-path spend."""
    tweak = int.from_bytes(tagged_hash("TapTweak", x_only_pubkey), "big")
    if tweak >= CURVE_ORDER:
        raise SigningError("Taproot tweak is out of range.")
    tweaked = (int.from_bytes(even_priv, "big") + tweak) % CURVE_ORDER
    if tweaked == 0:
        raise SigningError("Failed to tweak private key for Taproot")
    return bytearray(tweaked.to_bytes(32, "big"))


def _schnorr_sign(msg_hash: bytes, private_key: bytes | bytearray) -> bytes:
    return coincurve.PrivateKey(bytes(private_key)).sign_schnorr(
        msg_hash, aux_randomness=os.urandom(32)
    )


def _node_key_pair(node: Bip32Slip10Secp256k1) -> tuple[bytearray, bytes]:
    public_key = validate_public_key(node.PublicKey().RawCompressed().ToBytes())
    private_key = bytearray(node.PrivateKey().Raw().ToBytes())
    return private_key, public_key


# ---------------------------------------------------------------------------
# Sighashes
# ---------------------------------------------------------------------------


def _outpoint_bytes(txin: CTxIn) -> bytes:
    return bytes(txin.prevout.hash) + struct.pack("<I", txin.prevout.n)


def _txout_bytes(amount: int, script: bytes) -> bytes:
    return struct.pack("<q", amount) + encode_varint(len(script)) + script


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def taproot_sighash(
    tx: CTransaction,
    input_index: int,
    spent_outputs: list[tuple[int, bytes]],
    hash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """
    BIP-341 signature hash for a key-path spend (no annex, ext_flag 0).

    ``spent_outputs`` holds (amount_sats, scriptPubKey) for every input.
    """
    if hash_type not in TAPROOT_SIGHASH_TYPES:
        raise SighashNotAllowed(f"Invalid Taproot sighash type: {hash_type:#x}")
    if len(spent_outputs) != len(tx.vin):
        raise CannotDetermineScript("Taproot sighash needs the spent output of every input.")

    output_type = SIGHASH_ALL if hash_type == SIGHASH_DEFAULT else hash_type & 0x03
    anyone_can_pay = bool(hash_type & SIGHASH_ANYONECANPAY)

    msg = bytes([hash_type])
    msg += struct.pack("<i", tx.nVersion) + struct.pack("<I", tx.nLockTime)
    if not anyone_can_pay:
        msg += _sha256(b"".join(_outpoint_bytes(txin) for txin in tx.vin))
        msg += _sha256(b"".join(struct.pack("<q", amount) for amount, _ in spent_outputs))
        msg += _sha256(
            b"".join(encode_varint(len(script)) + script for _, script in spent_outputs)
        )
        msg += _sha256(b"".join(struct.pack("<I", txin.nSequence) for txin in tx.vin))
    if output_type not in (SIGHASH_NONE, SIGHASH_SINGLE):
        msg += _sha256(
            b"".join(_txout_bytes(o.nValue, bytes(o.scriptPubKey)) for o in tx.vout)
        )
    msg += b"\x00"  # spend_type: key path, no annex
    if anyone_can_pay:
        txin = tx.vin[input_index]
        amount, script = spent_outputs[input_index]
        msg += _outpoint_bytes(txin)
        msg += struct.pack("<q", amount) + encode_varint(len(script)) + script
        msg += struct.pack("<I", txin.nSequence)
    else:
        msg += struct.pack("<I", input_index)
    if output_type == SIGHASH_SINGLE:
        if input_index >= len(tx.vout):
            raise SighashNotAllowed(
                f"SIGHASH_SINGLE input {input_index} has no matching output."
            )
        out = tx.vout[input_index]
        msg += _sha256(_txout_bytes(out.nValue, bytes(out.scriptPubKey)))
    return tagged_hash("TapSighash", b"\x00" + msg)


def ecdsa_sighash(
    tx: CTransaction,
    input_index: int,
    script_code: bytes,
    amount: int,
    hash_type: int,
    segwit: bool,
) -> bytes:
    """Legacy or BIP-143 (segwit v0) signature hash via python-bitcoinlib."""
    try:
        return SignatureHash(
            CScript(script_code),
            tx,
            input_index,
            hash_type,
            amount=amount,
            sigversion=SIGVERSION_WITNESS_V0 if segwit else SIGVERSION_BASE,
        )
    except ValueError as exc:
        raise SighashNotAllowed(f"Cannot compute sighash for input {input_index}: {exc}") from exc


# ---------------------------------------------------------------------------
# Message signing
# ---------------------------------------------------------------------------


def sign_message_ecdsa(message: str, private_key: bytes | bytearray, address_type: str) -> str:
    """
    Sign with the Bitcoin signed-message scheme.

    Returns base64(header || r || s) where the header encodes the recovery
    id and the address type (BIP-137).
    """
    if address_type not in BIP137_HEADER_BASE:
        raise TaprootRequiresBip322("Taproot addresses require bip322-simple signing")
    recoverable = coincurve.PrivateKey(bytes(private_key)).sign_recoverable(
        bitcoin_message_hash(message), hasher=None
    )
    header = BIP137_HEADER_BASE[address_type] + recoverable[64]
    return base64.b64encode(bytes([header]) + recoverable[:64]).decode("ascii")


def verify_message_ecdsa(
    message: str, signature: str, address: str, network: BTCNetwork
) -> bool:
    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    if len(raw) != 65 or not 27 <= raw[0] <= 42:
        return False
    header = raw[0]
    if header < 31:
        # Uncompressed keys are never produced by this wallet.
        return False
    try:
        script = address_to_script(address, network)
        public_key = coincurve.PublicKey.from_signature_and_message(
            raw[1:] + bytes([(header - 27) & 0x03]),
            bitcoin_message_hash(message),
            hasher=None,
        ).format(compressed=True)
    except ValueError:
        return False
    address_type = script_address_type(script)
    if address_type not in BIP137_HEADER_BASE:
        return False
    # Electrum-style signers use the P2PKH header range for segwit addresses
    # too, so the address decides which script to rebuild.
    expected = script_for_public_key(
        public_key, DerivationPathType.from_address_type(address_type)
    )
    return expected == script


def _bip322_transactions(message: str, script_pubkey: bytes) -> tuple[CTransaction, CTransaction]:
    to_spend = CTransaction(
        [
            CTxIn(
                COutPoint(b"\x00" * 32, 0xFFFFFFFF),
                CScript([OP_0, bip322_message_hash(message)]),
                0,
            )
        ],
        [CTxOut(0, CScript(script_pubkey))],
        nLockTime=0,
        nVersion=0,
    )
    to_sign = CTransaction(
        [CTxIn(COutPoint(to_spend.GetTxid(), 0), CScript(), 0)],
        [CTxOut(0, CScript([OP_RETURN]))],
        nLockTime=0,
        nVersion=0,
    )
    return to_spend, to_sign


def sign_message_bip322_simple(
    message: str,
    address: str,
    network: BTCNetwork,
    private_key: bytes | bytearray,
    public_key: bytes,
) -> str:
    """
    BIP-322 simple signature for a key-path Taproot address.

    Returns the base64 encoded witness stack of the virtual to_sign input.
    """
    script_pubkey = address_to_script(address, network)
    if script_address_type(script_pubkey) != "p2tr":
        raise Bip322RequiresTaproot(
            "BIP322 simple signing is only supported for taproot addresses"
        )
    _to_spend, to_sign = _bip322_transactions(message, script_pubkey)
    sighash = taproot_sighash(to_sign, 0, [(0, script_pubkey)], SIGHASH_DEFAULT)

    even_priv, x_only_pubkey = even_y_key_material(private_key, public_key)
    tweaked = None
    try:
        tweaked = taproot_tweak_private_key(even_priv, x_only_pubkey)
        signature = _schnorr_sign(sighash, tweaked)
    finally:
        wipe_bytes(even_priv)
        wipe_bytes(tweaked)
    return base64.b64encode(serialize_witness([signature])).decode("ascii")


def verify_message_bip322_simple(
    message: str, signature: str, address: str, network: BTCNetwork
) -> bool:
    try:
        script_pubkey = address_to_script(address, network)
        witness = base64.b64decode(signature, validate=True)
        count, offset = _decode_varint(witness, 0)
        if count != 1:
            return False
        sig_len, offset = _decode_varint(witness, offset)
    except (ValueError, binascii.Error, PsbtFormatInvalid):
        return False
    sig = witness[offset : offset + sig_len]
    if script_address_type(script_pubkey) != "p2tr" or offset + sig_len != len(witness):
        return False
    if len(sig) == 64:
        hash_type = SIGHASH_DEFAULT
    elif len(sig) == 65 and sig[64] != SIGHASH_DEFAULT:
        hash_type = sig[64]
    else:
        return False
    _to_spend, to_sign = _bip322_transactions(message, script_pubkey)
    try:
        sighash = taproot_sighash(to_sign, 0, [(0, script_pubkey)], hash_type)
        return coincurve.PublicKeyXOnly(script_pubkey[2:]).verify(sig[:64], sighash)
    except (SigningError, ValueError):
        return False


def sign_message(
    keys: KeyManager,
    message: str,
    address: str,
    protocol: str | None = None,
) -> dict[str, str]:
    """
    Sign ``message`` with the key behind ``address``.

    Non-Taproot addresses default to ECDSA; Taproot addresses default to,
    and require, BIP-322 simple.
    """
    if protocol == "bip322":
        protocol = "bip322-simple"
    if protocol not in (None, "ecdsa", "bip322-simple"):
        raise ValueError(
            f"Unsupported signing protocol: {protocol}. Use 'ecdsa' or 'bip322-simple'."
        )

    address_info = keys.find_address_path(address)
    if address_info is None:
        raise AddressNotFound(f"Address not found: {address}")

    is_taproot = address_info.type == "p2tr"
    resolved: MessageProtocol = protocol or ("bip322-simple" if is_taproot else "ecdsa")  # type: ignore[assignment]
    if resolved == "bip322-simple" and not is_taproot:
        raise Bip322RequiresTaproot(
            "BIP322 simple signing is only supported for taproot addresses"
        )
    if resolved == "ecdsa" and is_taproot:
        raise TaprootRequiresBip322("Taproot addresses require bip322-simple signing")

    private_key, public_key = _node_key_pair(keys.derive_key(address_info.path))
    try:
        if resolved == "bip322-simple":
            signature = sign_message_bip322_simple(
                message, address, keys.network, private_key, public_key
            )
        else:
            signature = sign_message_ecdsa(message, private_key, address_info.type)
    finally:
        wipe_bytes(private_key)

    return {
        "signature": signature,
        "address": address,
        "message": message,
        "protocol": resolved,
    }


def verify_message(
    message: str,
    signature: str,
    address: str,
    network: BTCNetwork,
) -> dict[str, Any]:
    """
    Verify a signed message. Taproot addresses are checked as BIP-322
    simple, everything else as BIP-137 ECDSA.

    Returns {"valid": bool, "address": str, "message": str, "protocol": str}
    """
    try:
        kind = script_address_type(address_to_script(address, network))
    except ValueError:
        kind = None
    if kind == "p2tr":
        protocol = "bip322-simple"
        valid = verify_message_bip322_simple(message, signature, address, network)
    else:
        protocol = "ecdsa"
        valid = kind is not None and verify_message_ecdsa(message, signature, address, network)
    return {"valid": valid, "address": address, "message": message, "protocol": protocol}


# ---------------------------------------------------------------------------
# PSBT signing
# ---------------------------------------------------------------------------


@dataclass
class SignInputRequest:
    """Which PSBT input to sign and how to find its key."""

    index: int
    address: str | None = None
    derivation_path: str | None = None
    sighash_types: list[int] | None = None
    finalize: bool = False
    tap_merkle_root: str | None = None
    tap_leaf_hash: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignInputRequest:
        """Accept snake_case or the camelCase keys used by WBIP callers."""
        if "index" not in data:
            raise ValueError("Each input to sign needs an 'index'.")
        index = data["index"]
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValueError(f"Invalid input index: {index!r}")
        sighash_types = data.get("sighash_types", data.get("sighashTypes"))
        if sighash_types is not None:
            if not isinstance(sighash_types, list) or not all(
                isinstance(s, int) and not isinstance(s, bool) for s in sighash_types
            ):
                raise ValueError("sighash_types must be a list of integers.")
        return cls(
            index=index,
            address=data.get("address") or None,
            derivation_path=data.get("derivation_path", data.get("derivationPath")) or None,
            sighash_types=sighash_types,
            finalize=data.get("finalize") is True,
            tap_merkle_root=data.get("tap_merkle_root", data.get("tapMerkleRootHex")) or None,
            tap_leaf_hash=data.get("tap_leaf_hash", data.get("tapLeafHashHex")) or None,
        )


def _resolve_sighash(
    psbt: Psbt,
    index: int,
    requested: list[int] | None,
    default: int,
    valid: frozenset[int],
) -> int:
    declared = psbt.sighash_type(index)
    if declared is not None:
        hash_type = declared
    elif requested and len(requested) == 1:
        hash_type = requested[0]
    else:
        hash_type = default
    if hash_type not in valid:
        raise SighashNotAllowed(f"Sighash type {hash_type:#x} is not valid for input {index}")
    if requested and hash_type not in requested:
        raise SighashNotAllowed(
            f"Input {index} uses sighash type {hash_type:#x}, which was not requested."
        )
    return hash_type


def _resolve_signing_path(
    keys: KeyManager, request: SignInputRequest, script: bytes
) -> tuple[str, DerivationPathType]:
    """Explicit path > explicit address > address derived from the script."""
    if request.derivation_path:
        return canonical_path(request.derivation_path), path_type_from_path(
            request.derivation_path
        )

    address = request.address or script_to_address(script, keys.network)
    if address is None:
        raise AddressNotFound(
            f"Cannot find key for input {request.index}; provide address or derivation_path"
        )
    address_info = keys.find_address_path(address)
    if address_info is None:
        raise AddressNotFound(f"Address not found: {address}")
    return address_info.path, DerivationPathType.from_address_type(address_info.type)


def _check_non_witness_utxo(psbt: Psbt, index: int) -> None:
    prev_tx = psbt.non_witness_utxo(index)
    if prev_tx is not None and prev_tx.GetTxid() != psbt.tx.vin[index].prevout.hash:
        raise PsbtInputMismatch(
            f"PSBT input {index} non-witness UTXO does not match the spent outpoint."
        )


def _sign_ecdsa_input(
    psbt: Psbt,
    request: SignInputRequest,
    path_type: DerivationPathType,
    private_key: bytearray,
    public_key: bytes,
    amount: int,
    script: bytes,
) -> None:
    index = request.index
    hash_type = _resolve_sighash(
        psbt, index, request.sighash_types, SIGHASH_ALL, ECDSA_SIGHASH_TYPES
    )

    if path_type is DerivationPathType.LEGACY:
        sighash = ecdsa_sighash(psbt.tx, index, script, 0, hash_type, segwit=False)
    else:
        if path_type is DerivationPathType.NESTED_SEGWIT:
            redeem_script = nested_segwit_redeem_script(public_key)
            existing = psbt.get_input(index, PSBT_IN_REDEEM_SCRIPT)
            if existing is not None and existing != redeem_script:
                raise PsbtInputMismatch(
                    f"PSBT input {index} redeem script does not match the derived key."
                )
            psbt.set_input(index, PSBT_IN_REDEEM_SCRIPT, redeem_script)
        script_code = p2pkh_script(Hash160(public_key))
        sighash = ecdsa_sighash(psbt.tx, index, script_code, amount, hash_type, segwit=True)

    signature = coincurve.PrivateKey(bytes(private_key)).sign(sighash, hasher=None)
    psbt.set_input(index, PSBT_IN_PARTIAL_SIG, signature + bytes([hash_type]), key_data=public_key)


def _sign_taproot_input(
    psbt: Psbt,
    request: SignInputRequest,
    private_key: bytearray,
    public_key: bytes,
) -> None:
    index = request.index
    hash_type = _resolve_sighash(
        psbt, index, request.sighash_types, SIGHASH_DEFAULT, TAPROOT_SIGHASH_TYPES
    )

    spent_outputs = []
    for i in range(len(psbt.inputs)):
        spent = psbt.spent_output(i)
        if spent is None:
            raise CannotDetermineScript(
                f"Taproot signing needs the spent output of every input; input {i} has none."
            )
        spent_outputs.append(spent)

    even_priv, x_only_pubkey = even_y_key_material(private_key, public_key)
    tweaked = None
    try:
        internal_key = psbt.get_input(index, PSBT_IN_TAP_INTERNAL_KEY)
        if internal_key is not None and internal_key != x_only_pubkey:
            raise PsbtInputMismatch(
                f"Taproot input {index} does not match derived internal key"
            )
        sighash = taproot_sighash(psbt.tx, index, spent_outputs, hash_type)
        tweaked = taproot_tweak_private_key(even_priv, x_only_pubkey)
        signature = _schnorr_sign(sighash, tweaked)
    finally:
        wipe_bytes(even_priv)
        wipe_bytes(tweaked)

    if hash_type != SIGHASH_DEFAULT:
        signature += bytes([hash_type])
    if internal_key is None:
        psbt.set_input(index, PSBT_IN_TAP_INTERNAL_KEY, x_only_pubkey)
    psbt.set_input(index, PSBT_IN_TAP_KEY_SIG, signature)


def finalize_input(psbt: Psbt, index: int, path_type: DerivationPathType) -> None:
    """Build the final scriptSig / witness for a single-key input."""
    script_sig: bytes | None = None
    witness: list[bytes] | None = None

    if path_type is DerivationPathType.TAPROOT:
        signature = psbt.get_input(index, PSBT_IN_TAP_KEY_SIG)
        if signature is None:
            raise SigningError(f"Input {index} has no Taproot key-path signature.")
        witness = [signature]
    else:
        partial = [
            (key[1:], value)
            for key, value in psbt.inputs[index].items()
            if key[0] == PSBT_IN_PARTIAL_SIG
        ]
        if len(partial) != 1:
            raise SigningError(f"Input {index} needs exactly one partial signature.")
        public_key, signature = partial[0]
        if path_type is DerivationPathType.LEGACY:
            script_sig = bytes(CScript([signature, public_key]))
        elif path_type is DerivationPathType.NESTED_SEGWIT:
            redeem_script = psbt.get_input(index, PSBT_IN_REDEEM_SCRIPT)
            if redeem_script is None:
                raise SigningError(f"Input {index} is missing its redeem script.")
            script_sig = bytes(CScript([redeem_script]))
            witness = [signature, public_key]
        else:
            witness = [signature, public_key]

    psbt.clear_input_types(index, FINALIZER_STRIPPED_TYPES)
    if script_sig is not None:
        psbt.set_input(index, PSBT_IN_FINAL_SCRIPTSIG, script_sig)
    if witness is not None:
        psbt.set_input(index, PSBT_IN_FINAL_SCRIPTWITNESS, serialize_witness(witness))


def _sign_input(keys: KeyManager, psbt: Psbt, request: SignInputRequest) -> None:
    index = request.index
    if not 0 <= index < len(psbt.inputs):
        raise PsbtFormatInvalid(f"Input {index} not found in PSBT")

    spent = psbt.spent_output(index)
    if spent is None:
        raise CannotDetermineScript(f"Cannot determine script for input {index}")
    amount, script = spent
    _check_non_witness_utxo(psbt, index)

    path, path_type = _resolve_signing_path(keys, request, script)
    if (
        path_type is DerivationPathType.TAPROOT
        and request.sighash_types
        and len(request.sighash_types) > 1
    ):
        raise TaprootMultiSighashUnsupported("Taproot signing supports a single sighashType")

    private_key, public_key = _node_key_pair(keys.derive_key(path))
    try:
        expected_script = script_for_public_key(public_key, path_type)
        if expected_script != script:
            raise PsbtInputMismatch(
                f"PSBT input {index} does not match the key at {path}"
            )
        if path_type is DerivationPathType.TAPROOT:
            _sign_taproot_input(psbt, request, private_key, public_key)
        else:
            _sign_ecdsa_input(psbt, request, path_type, private_key, public_key, amount, script)
    finally:
        wipe_bytes(private_key)
    logger.debug("Signed PSBT input %d with %s key", index, path_type.address_type)

    if request.finalize:
        try:
            finalize_input(psbt, index, path_type)
        except SigningError as exc:
            logger.debug("Input %d not finalizable yet: %s", index, exc)


def sign_psbt(
    keys: KeyManager,
    psbt_str: str | bytes,
    inputs_to_sign: Iterable[SignInputRequest | dict[str, Any]],
) -> str:
    """
    Sign the requested inputs of a PSBT and return it base64 encoded.

    Fails as a whole (returning nothing) when any input cannot be signed,
    so the caller's PSBT is never partially updated.
    """
    requests = [
        r if isinstance(r, SignInputRequest) else SignInputRequest.from_dict(r)
        for r in inputs_to_sign
    ]
    for request in requests:
        if request.tap_merkle_root or request.tap_leaf_hash:
            raise TaprootScriptPathUnsupported(
                "Taproot script-path signing is not supported yet"
            )

    psbt = Psbt.from_string(psbt_str).copy()
    for request in requests:
        _sign_input(keys, psbt, request)
    return psbt.to_base64()


__all__ = [
    "SIGHASH_ALL",
    "SIGHASH_ANYONECANPAY",
    "SIGHASH_DEFAULT",
    "SIGHASH_NONE",
    "SIGHASH_SINGLE",
    "SignInputRequest",
    "bip322_message_hash",
    "bitcoin_message_hash",
    "ecdsa_sighash",
    "even_y_key_material",
    "finalize_input",
    "sign_message",
    "sign_message_bip322_simple",
    "sign_message_ecdsa",
    "sign_psbt",
    "taproot_sighash",
    "taproot_tweak_private_key",
    "verify_message",
    "verify_message_bip322_simple",
    "verify_message_ecdsa",
]
