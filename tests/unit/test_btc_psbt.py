import base64
import sys
from pathlib import Path

import pytest
from bitcoin.core import COutPoint, CTransaction, CTxIn, CTxOut
from bitcoin.core.script import CScript

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import btc_psbt  # noqa: E402
from btc_psbt import Psbt, decode_psbt  # noqa: E402
from wallet_errors import PsbtFormatInvalid  # noqa: E402

P2WPKH_SCRIPT = bytes.fromhex("0014") + b"\x11" * 20
OUTPUT_SCRIPT = bytes.fromhex("0014") + b"\x22" * 20


def _unsigned_tx(n_inputs=1):
    return CTransaction(
        [CTxIn(COutPoint(bytes([i + 1]) * 32, i)) for i in range(n_inputs)],
        [CTxOut(40_000, CScript(OUTPUT_SCRIPT))],
        nLockTime=0,
        nVersion=2,
    )


def _psbt(n_inputs=1):
    psbt = Psbt.from_unsigned_tx(_unsigned_tx(n_inputs))
    for i in range(n_inputs):
        psbt.set_witness_utxo(i, 50_000, P2WPKH_SCRIPT)
    return psbt


def test_base64_and_hex_forms_parse_to_same_psbt():
    psbt = _psbt()
    raw = psbt.to_bytes()

    from_b64 = Psbt.from_string(psbt.to_base64())
    from_hex = Psbt.from_string(raw.hex())
    from_raw = Psbt.from_string(raw)

    assert from_b64.to_bytes() == raw
    assert from_hex.to_bytes() == raw
    assert from_raw.to_bytes() == raw


def test_unknown_records_survive_reserialization():
    psbt = _psbt()
    psbt.inputs[0][b"\xfc\x05hello"] = b"proprietary"
    psbt.outputs[0][b"\x07"] = b"unknown"

    reparsed = Psbt.from_string(psbt.to_base64())
    assert reparsed.inputs[0][b"\xfc\x05hello"] == b"proprietary"
    assert reparsed.outputs[0][b"\x07"] == b"unknown"


@pytest.mark.parametrize("value", ["", "not a psbt", "cHNidP8=", "70736274ffzz"])
def test_garbage_is_rejected(value):
    with pytest.raises(PsbtFormatInvalid):
        Psbt.from_string(value)


def test_trailing_data_is_rejected():
    raw = _psbt().to_bytes() + b"\x00"
    with pytest.raises(PsbtFormatInvalid):
        Psbt.from_string(raw)


def test_duplicate_keys_are_rejected():
    psbt = _psbt()
    raw = psbt.to_bytes()
    record = btc_psbt.encode_varint(1) + b"\x03" + btc_psbt.encode_varint(4) + b"\x01\x00\x00\x00"
    # Global map ends right after the unsigned tx record; append the same
    # sighash record twice to the first input map.
    global_len = len(btc_psbt.PSBT_MAGIC + btc_psbt._write_map(psbt.global_map))
    tampered = raw[:global_len] + record + record + raw[global_len:]
    with pytest.raises(PsbtFormatInvalid):
        Psbt.from_string(tampered)


def test_input_map_count_must_match_transaction():
    psbt = _psbt(2)
    psbt.inputs.pop()
    with pytest.raises(PsbtFormatInvalid):
        Psbt.from_string(psbt.to_bytes())


def test_spent_output_from_non_witness_utxo():
    prev_tx = CTransaction(
        [CTxIn(COutPoint(b"\x09" * 32, 0))],
        [CTxOut(1_000, CScript(OUTPUT_SCRIPT)), CTxOut(70_000, CScript(P2WPKH_SCRIPT))],
    )
    tx = CTransaction([CTxIn(COutPoint(prev_tx.GetTxid(), 1))], [CTxOut(60_000, CScript(OUTPUT_SCRIPT))])
    psbt = Psbt.from_unsigned_tx(tx)
    assert psbt.spent_output(0) is None

    psbt.set_non_witness_utxo(0, prev_tx)
    assert psbt.spent_output(0) == (70_000, P2WPKH_SCRIPT)


def test_copy_is_independent():
    psbt = _psbt()
    clone = psbt.copy()
    clone.set_input(0, btc_psbt.PSBT_IN_SIGHASH_TYPE, b"\x01\x00\x00\x00")
    assert psbt.sighash_type(0) is None
    assert clone.sighash_type(0) == 1


def test_decode_psbt_summary():
    summary = decode_psbt(_psbt(2).to_base64())

    assert summary["num_inputs"] == 2
    assert summary["num_outputs"] == 1
    assert summary["total_input_sats"] == 100_000
    assert summary["total_output_sats"] == 40_000
    assert summary["fee_sats"] == 60_000
    assert summary["is_finalized"] is False
    assert summary["inputs"][0]["script_pubkey"] == P2WPKH_SCRIPT.hex()
    assert summary["inputs"][0]["signed"] is False


def test_decode_psbt_without_utxos_has_unknown_fee():
    psbt = Psbt.from_unsigned_tx(_unsigned_tx())
    summary = decode_psbt(base64.b64encode(psbt.to_bytes()).decode())
    assert summary["fee_sats"] is None
    assert summary["total_input_sats"] is None


def test_unsigned_tx_with_scriptsig_is_rejected():
    tx = CTransaction(
        [CTxIn(COutPoint(b"\x01" * 32, 0), CScript([b"\x01\x02"]))],
        [CTxOut(1, CScript(OUTPUT_SCRIPT))],
    )
    with pytest.raises(PsbtFormatInvalid):
        Psbt.from_unsigned_tx(tx)
