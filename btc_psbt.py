"""
BIP-174 partially signed transaction container.

Parses and re-serializes PSBTs while preserving every record, including
unknown and proprietary ones, so that signing only ever adds or replaces the
records it owns.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass, field
from typing import Any

from bitcoin.core import CTransaction
from bitcoin.core.serialize import DeserializationExtraDataError, SerializationTruncationError

from wallet_errors import PsbtFormatInvalid

PSBT_MAGIC = b"psbt\xff"

# Global types
PSBT_GLOBAL_UNSIGNED_TX = 0x00

# Input types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_BIP32_DERIVATION = 0x16
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18

# Records a finalizer strips once the final scriptSig / witness is in place.
FINALIZER_STRIPPED_TYPES = frozenset(
    {
        PSBT_IN_PARTIAL_SIG,
        PSBT_IN_SIGHASH_TYPE,
        PSBT_IN_REDEEM_SCRIPT,
        PSBT_IN_WITNESS_SCRIPT,
        PSBT_IN_BIP32_DERIVATION,
        PSBT_IN_TAP_KEY_SIG,
        PSBT_IN_TAP_SCRIPT_SIG,
        PSBT_IN_TAP_LEAF_SCRIPT,
        PSBT_IN_TAP_BIP32_DERIVATION,
        PSBT_IN_TAP_INTERNAL_KEY,
        PSBT_IN_TAP_MERKLE_ROOT,
    }
)


# ---------------------------------------------------------------------------
# Compact size helpers
# ---------------------------------------------------------------------------


def _decode_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a Bitcoin compact-size varint. Returns (value, new_offset)."""
    if offset >= len(data):
        raise PsbtFormatInvalid("Unexpected end of PSBT data.")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + 1 + size > len(data):
        raise PsbtFormatInvalid("Unexpected end of PSBT data.")
    fmt = {2: "<H", 4: "<I", 8: "<Q"}[size]
    return struct.unpack_from(fmt, data, offset + 1)[0], offset + 1 + size


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def serialize_witness(items: list[bytes]) -> bytes:
    out = encode_varint(len(items))
    for item in items:
        out += encode_varint(len(item)) + item
    return out


def parse_witness_utxo(value: bytes) -> tuple[int, bytes]:
    """Decode a PSBT_IN_WITNESS_UTXO value into (amount_sats, scriptPubKey)."""
    if len(value) < 9:
        raise PsbtFormatInvalid("Witness UTXO record is truncated.")
    amount = struct.unpack_from("<q", value, 0)[0]
    script_len, offset = _decode_varint(value, 8)
    script = value[offset : offset + script_len]
    if len(script) != script_len or offset + script_len != len(value):
        raise PsbtFormatInvalid("Witness UTXO record has an invalid script length.")
    return amount, script


def serialize_witness_utxo(amount: int, script: bytes) -> bytes:
    return struct.pack("<q", amount) + encode_varint(len(script)) + script


# ---------------------------------------------------------------------------
# Format detection
# ---------------------------------------------------------------------------


def _detect_and_parse_psbt(psbt_input: str | bytes) -> bytes:
    """Detect format (raw, hex or base64) and return PSBT bytes."""
    if isinstance(psbt_input, (bytes, bytearray)):
        if bytes(psbt_input[:5]) == PSBT_MAGIC:
            return bytes(psbt_input)
        psbt_input = bytes(psbt_input).decode("ascii", errors="replace")
    psbt_input = psbt_input.strip()
    # PSBT magic bytes: 70736274ff (hex) = "cHNidP" (base64 prefix)
    if psbt_input.startswith("70736274"):
        try:
            return bytes.fromhex(psbt_input)
        except ValueError as exc:
            raise PsbtFormatInvalid("Invalid hex PSBT.") from exc
    try:
        raw = base64.b64decode(psbt_input, validate=True)
        if raw[:5] == PSBT_MAGIC:
            return raw
    except (binascii.Error, ValueError):
        pass
    raise PsbtFormatInvalid(
        "Invalid PSBT format. Provide hex or base64 encoded PSBT "
        "starting with magic bytes 70736274ff."
    )


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


def _read_map(raw: bytes, offset: int, what: str) -> tuple[dict[bytes, bytes], int]:
    records: dict[bytes, bytes] = {}
    while True:
        key_len, offset = _decode_varint(raw, offset)
        if key_len == 0:
            return records, offset
        key = raw[offset : offset + key_len]
        offset += key_len
        if len(key) != key_len:
            raise PsbtFormatInvalid(f"Truncated key in {what} map.")
        val_len, offset = _decode_varint(raw, offset)
        value = raw[offset : offset + val_len]
        offset += val_len
        if len(value) != val_len:
            raise PsbtFormatInvalid(f"Truncated value in {what} map.")
        if key in records:
            raise PsbtFormatInvalid(f"Duplicate key {key.hex()} in {what} map.")
        records[key] = value


def _write_map(records: dict[bytes, bytes]) -> bytes:
    out = b""
    for key, value in records.items():
        out += encode_varint(len(key)) + key + encode_varint(len(value)) + value
    return out + b"\x00"


@dataclass
class Psbt:
    """A parsed PSBT: the unsigned transaction plus global/input/output maps."""

    tx: CTransaction
    global_map: dict[bytes, bytes] = field(default_factory=dict)
    inputs: list[dict[bytes, bytes]] = field(default_factory=list)
    outputs: list[dict[bytes, bytes]] = field(default_factory=list)

    # -- construction -------------------------------------------------------

    @classmethod
    def from_unsigned_tx(cls, tx: CTransaction) -> Psbt:
        if any(len(txin.scriptSig) for txin in tx.vin):
            raise PsbtFormatInvalid("Unsigned transaction must have empty scriptSigs.")
        tx = CTransaction.from_tx(tx)
        return cls(
            tx=tx,
            global_map={bytes([PSBT_GLOBAL_UNSIGNED_TX]): tx.serialize()},
            inputs=[{} for _ in tx.vin],
            outputs=[{} for _ in tx.vout],
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> Psbt:
        if raw[:5] != PSBT_MAGIC:
            raise PsbtFormatInvalid("Not a valid PSBT (missing magic bytes).")
        global_map, offset = _read_map(raw, 5, "global")
        unsigned = global_map.get(bytes([PSBT_GLOBAL_UNSIGNED_TX]))
        if unsigned is None:
            raise PsbtFormatInvalid("PSBT is missing the unsigned transaction.")
        try:
            tx = CTransaction.deserialize(unsigned)
        except (DeserializationExtraDataError, SerializationTruncationError, ValueError) as exc:
            raise PsbtFormatInvalid("PSBT unsigned transaction is malformed.") from exc
        if any(len(txin.scriptSig) for txin in tx.vin) or tx.has_witness():
            raise PsbtFormatInvalid("PSBT unsigned transaction must not carry signatures.")

        inputs = []
        for i in range(len(tx.vin)):
            records, offset = _read_map(raw, offset, f"input {i}")
            inputs.append(records)
        outputs = []
        for i in range(len(tx.vout)):
            records, offset = _read_map(raw, offset, f"output {i}")
            outputs.append(records)
        if offset != len(raw):
            raise PsbtFormatInvalid("Trailing data after PSBT maps.")
        return cls(tx=tx, global_map=global_map, inputs=inputs, outputs=outputs)

    @classmethod
    def from_string(cls, psbt_input: str | bytes) -> Psbt:
        return cls.from_bytes(_detect_and_parse_psbt(psbt_input))

    def copy(self) -> Psbt:
        return Psbt(
            tx=self.tx,
            global_map=dict(self.global_map),
            inputs=[dict(m) for m in self.inputs],
            outputs=[dict(m) for m in self.outputs],
        )

    # -- serialization ------------------------------------------------------

    def to_bytes(self) -> bytes:
        out = PSBT_MAGIC + _write_map(self.global_map)
        for records in self.inputs:
            out += _write_map(records)
        for records in self.outputs:
            out += _write_map(records)
        return out

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    # -- record access ------------------------------------------------------

    def get_input(self, index: int, key_type: int, key_data: bytes = b"") -> bytes | None:
        return self.inputs[index].get(bytes([key_type]) + key_data)

    def set_input(self, index: int, key_type: int, value: bytes, key_data: bytes = b"") -> None:
        self.inputs[index][bytes([key_type]) + key_data] = value

    def input_has_type(self, index: int, key_type: int) -> bool:
        return any(key[0] == key_type for key in self.inputs[index])

    def clear_input_types(self, index: int, key_types: frozenset[int] | set[int]) -> None:
        self.inputs[index] = {
            key: value
            for key, value in self.inputs[index].items()
            if key[0] not in key_types
        }

    def set_witness_utxo(self, index: int, amount: int, script: bytes) -> None:
        self.set_input(index, PSBT_IN_WITNESS_UTXO, serialize_witness_utxo(amount, script))

    def set_non_witness_utxo(self, index: int, prev_tx: CTransaction) -> None:
        self.set_input(index, PSBT_IN_NON_WITNESS_UTXO, prev_tx.serialize())

    def sighash_type(self, index: int) -> int | None:
        value = self.get_input(index, PSBT_IN_SIGHASH_TYPE)
        if value is None:
            return None
        if len(value) != 4:
            raise PsbtFormatInvalid(f"Input {index} has a malformed sighash type record.")
        return struct.unpack("<I", value)[0]

    def non_witness_utxo(self, index: int) -> CTransaction | None:
        value = self.get_input(index, PSBT_IN_NON_WITNESS_UTXO)
        if value is None:
            return None
        try:
            return CTransaction.deserialize(value)
        except (DeserializationExtraDataError, SerializationTruncationError, ValueError) as exc:
            raise PsbtFormatInvalid(f"Input {index} has a malformed non-witness UTXO.") from exc

    def spent_output(self, index: int) -> tuple[int, bytes] | None:
        """
        Return (amount_sats, scriptPubKey) for the output input ``index``
        spends: from the witness UTXO, or by locating the referenced output
        inside the non-witness UTXO transaction.
        """
        value = self.get_input(index, PSBT_IN_WITNESS_UTXO)
        if value is not None:
            return parse_witness_utxo(value)
        prev_tx = self.non_witness_utxo(index)
        if prev_tx is None:
            return None
        vout = self.tx.vin[index].prevout.n
        if vout >= len(prev_tx.vout):
            return None
        txout = prev_tx.vout[vout]
        return txout.nValue, bytes(txout.scriptPubKey)

    # -- summary ------------------------------------------------------------

    def summary(self) -> dict[str, Any]:
        input_details = []
        total_input_sats = 0
        has_all_utxos = True
        for i in range(len(self.inputs)):
            info: dict[str, Any] = {"index": i}
            try:
                spent = self.spent_output(i)
            except PsbtFormatInvalid:
                spent = None
            if spent is not None:
                info["value_sats"] = spent[0]
                info["script_pubkey"] = spent[1].hex()
                total_input_sats += spent[0]
            else:
                has_all_utxos = False
            info["finalized"] = self.input_has_type(
                i, PSBT_IN_FINAL_SCRIPTSIG
            ) or self.input_has_type(i, PSBT_IN_FINAL_SCRIPTWITNESS)
            info["signed"] = self.input_has_type(i, PSBT_IN_PARTIAL_SIG) or self.input_has_type(
                i, PSBT_IN_TAP_KEY_SIG
            )
            input_details.append(info)

        output_details = []
        total_output_sats = 0
        for i, txout in enumerate(self.tx.vout):
            output_details.append(
                {
                    "index": i,
                    "value_sats": txout.nValue,
                    "script_pubkey": bytes(txout.scriptPubKey).hex(),
                }
            )
            total_output_sats += txout.nValue

        is_finalized = (
            all(inp["finalized"] for inp in input_details) if input_details else False
        )
        return {
            "num_inputs": len(self.inputs),
            "num_outputs": len(self.outputs),
            "total_input_sats": total_input_sats if has_all_utxos else None,
            "total_output_sats": total_output_sats,
            "fee_sats": total_input_sats - total_output_sats if has_all_utxos else None,
            "is_finalized": is_finalized,
            "inputs": input_details,
            "outputs": output_details,
            "size_bytes": len(self.to_bytes()),
        }


def decode_psbt(psbt_str: str) -> dict[str, Any]:
    """Decode a PSBT (hex or base64) and return a human-readable summary."""
    return Psbt.from_string(psbt_str).summary()
