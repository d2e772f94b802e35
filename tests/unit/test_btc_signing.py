import base64
import struct
import sys
from pathlib import Path

import coincurve
import pytest
from bitcoin.core import COutPoint, CTransaction, CTxIn, CTxOut
from bitcoin.core.script import CScript

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import btc_psbt  # noqa: E402
import btc_signing  # noqa: E402
from btc_keys import KeyManager, address_to_script  # noqa: E402
from btc_psbt import Psbt  # noqa: E402
from btc_signing import (  # noqa: E402
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    SignInputRequest,
    bip322_message_hash,
    ecdsa_sighash,
    sign_message,
    sign_psbt,
    taproot_sighash,
    verify_message,
)
from wallet_errors import (  # noqa: E402
    AddressNotFound,
    Bip322RequiresTaproot,
    CannotDetermineScript,
    PsbtFormatInvalid,
    PsbtInputMismatch,
    SighashNotAllowed,
    TaprootMultiSighashUnsupported,
    TaprootRequiresBip322,
    TaprootScriptPathUnsupported,
)

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
SEGWIT_ADDRESS = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
TAPROOT_ADDRESS = "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"
FOREIGN_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
OUTPUT_SCRIPT = bytes.fromhex("0014") + b"\x22" * 20


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def keys():
    manager = KeyManager(
        "mainnet", {"max_account_index": 0, "receive_window": 3, "change_window": 1}
    )
    manager.from_mnemonic(MNEMONIC)
    return manager


def _prev_tx(script, amount=50_000, seed=b"\x07"):
    return CTransaction(
        [CTxIn(COutPoint(seed * 32, 0))],
        [CTxOut(amount, CScript(script))],
    )


def _psbt_spending(scripts, amount=50_000, witness=True):
    """Build a PSBT spending one output per script."""
    prev_txs = [_prev_tx(script, amount, bytes([i + 1])) for i, script in enumerate(scripts)]
    tx = CTransaction(
        [CTxIn(COutPoint(prev.GetTxid(), 0), nSequence=0xFFFFFFFD) for prev in prev_txs],
        [CTxOut(amount * len(scripts) - 1_000, CScript(OUTPUT_SCRIPT))],
        nVersion=2,
    )
    psbt = Psbt.from_unsigned_tx(tx)
    for i, (script, prev) in enumerate(zip(scripts, prev_txs)):
        if witness:
            psbt.set_witness_utxo(i, amount, script)
        else:
            psbt.set_non_witness_utxo(i, prev)
    return psbt


def _script(keys, path_type, change=0, index=0):
    return address_to_script(keys.derive_address(path_type, 0, change, index).address, "mainnet")


def _partial_sigs(psbt, index):
    return {
        key[1:]: value
        for key, value in psbt.inputs[index].items()
        if key[0] == btc_psbt.PSBT_IN_PARTIAL_SIG
    }


# ---------------------------------------------------------------------------
# Message hashing
# ---------------------------------------------------------------------------


def test_bip322_message_hash_vectors():
    assert bip322_message_hash("").hex() == (
        "c90c269c4f8fcbe6880f72a721ddfbf1914268a794cbb21cfafee13770ae19f1"
    )
    assert bip322_message_hash("Hello World").hex() == (
        "f0eb03b1a75ac6d9847f55c624a99169b5dccba2a31f5b23bea77ba270de0a7a"
    )


# ---------------------------------------------------------------------------
# Message signing
# ---------------------------------------------------------------------------


def test_ecdsa_message_round_trip(keys):
    result = sign_message(keys, "Hello World", SEGWIT_ADDRESS)

    assert result["protocol"] == "ecdsa"
    assert result["address"] == SEGWIT_ADDRESS
    raw = base64.b64decode(result["signature"])
    assert len(raw) == 65
    assert 39 <= raw[0] <= 42

    assert verify_message("Hello World", result["signature"], SEGWIT_ADDRESS, "mainnet")["valid"]
    assert not verify_message("Hello World!", result["signature"], SEGWIT_ADDRESS, "mainnet")["valid"]


@pytest.mark.parametrize("path_type, header_base", [("legacy", 31), ("nestedSegwit", 35)])
def test_ecdsa_header_tracks_address_type(keys, path_type, header_base):
    address = keys.derive_address(path_type).address
    result = sign_message(keys, "ping", address, "ecdsa")
    header = base64.b64decode(result["signature"])[0]
    assert header_base <= header <= header_base + 3
    assert verify_message("ping", result["signature"], address, "mainnet")["valid"]


def test_ecdsa_signature_does_not_verify_for_other_address(keys):
    result = sign_message(keys, "ping", SEGWIT_ADDRESS)
    other = keys.derive_address("nativeSegwit", 0, 0, 1).address
    assert not verify_message("ping", result["signature"], other, "mainnet")["valid"]


def test_taproot_defaults_to_bip322(keys):
    result = sign_message(keys, "Hello World", TAPROOT_ADDRESS)

    assert result["protocol"] == "bip322-simple"
    witness = base64.b64decode(result["signature"])
    # one stack item of 64 bytes (SIGHASH_DEFAULT)
    assert witness[:2] == b"\x01\x40" and len(witness) == 66

    verified = verify_message("Hello World", result["signature"], TAPROOT_ADDRESS, "mainnet")
    assert verified == {
        "valid": True,
        "address": TAPROOT_ADDRESS,
        "message": "Hello World",
        "protocol": "bip322-simple",
    }
    assert not verify_message("Hello", result["signature"], TAPROOT_ADDRESS, "mainnet")["valid"]


def test_bip322_signs_empty_message(keys):
    result = sign_message(keys, "", TAPROOT_ADDRESS, "bip322-simple")
    assert verify_message("", result["signature"], TAPROOT_ADDRESS, "mainnet")["valid"]


def test_protocol_gating(keys):
    with pytest.raises(TaprootRequiresBip322):
        sign_message(keys, "x", TAPROOT_ADDRESS, "ecdsa")
    with pytest.raises(Bip322RequiresTaproot):
        sign_message(keys, "x", SEGWIT_ADDRESS, "bip322-simple")
    with pytest.raises(ValueError):
        sign_message(keys, "x", SEGWIT_ADDRESS, "schnorr")


def test_sign_message_unknown_address(keys):
    with pytest.raises(AddressNotFound):
        sign_message(keys, "x", FOREIGN_ADDRESS)


def test_verify_message_rejects_garbage():
    assert not verify_message("x", "%%%", SEGWIT_ADDRESS, "mainnet")["valid"]
    assert not verify_message("x", "AAAA", TAPROOT_ADDRESS, "mainnet")["valid"]
    assert not verify_message("x", "AAAA", "not-an-address", "mainnet")["valid"]


# ---------------------------------------------------------------------------
# PSBT signing: ECDSA
# ---------------------------------------------------------------------------


def test_sign_p2wpkh_input_by_script_lookup(keys):
    script = _script(keys, "nativeSegwit")
    psbt = _psbt_spending([script])

    signed = Psbt.from_string(sign_psbt(keys, psbt.to_base64(), [{"index": 0}]))

    sigs = _partial_sigs(signed, 0)
    assert len(sigs) == 1
    pubkey, sig = next(iter(sigs.items()))
    assert pubkey == keys.derive_address("nativeSegwit").public_key
    assert sig[-1] == SIGHASH_ALL

    script_code = bytes.fromhex("76a914") + script[2:] + bytes.fromhex("88ac")
    sighash = ecdsa_sighash(signed.tx, 0, script_code, 50_000, SIGHASH_ALL, segwit=True)
    assert coincurve.PublicKey(pubkey).verify(sig[:-1], sighash, hasher=None)


def test_sign_p2wpkh_and_finalize(keys):
    psbt = _psbt_spending([_script(keys, "nativeSegwit")])

    signed = Psbt.from_string(
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "address": SEGWIT_ADDRESS, "finalize": True}])
    )

    assert signed.get_input(0, btc_psbt.PSBT_IN_FINAL_SCRIPTWITNESS) is not None
    assert not _partial_sigs(signed, 0)
    assert signed.get_input(0, btc_psbt.PSBT_IN_WITNESS_UTXO) is not None
    assert signed.summary()["is_finalized"] is True


def test_sign_nested_segwit_adds_redeem_script(keys):
    psbt = _psbt_spending([_script(keys, "nestedSegwit")])

    signed = Psbt.from_string(
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "derivation_path": "m/49'/0'/0'/0/0"}])
    )

    public_key = keys.derive_address("nestedSegwit").public_key
    assert public_key in _partial_sigs(signed, 0)
    redeem = signed.get_input(0, btc_psbt.PSBT_IN_REDEEM_SCRIPT)
    assert redeem[:2] == b"\x00\x14" and len(redeem) == 22


def test_sign_legacy_input_with_non_witness_utxo(keys):
    psbt = _psbt_spending([_script(keys, "legacy")], witness=False)

    signed = Psbt.from_string(sign_psbt(keys, psbt.to_base64(), [{"index": 0, "finalize": True}]))

    script_sig = signed.get_input(0, btc_psbt.PSBT_IN_FINAL_SCRIPTSIG)
    assert script_sig is not None
    assert script_sig.endswith(keys.derive_address("legacy").public_key)


def test_non_witness_utxo_must_match_outpoint(keys):
    script = _script(keys, "legacy")
    psbt = _psbt_spending([script], witness=False)
    psbt.set_non_witness_utxo(0, _prev_tx(script, seed=b"\x42"))

    with pytest.raises(PsbtInputMismatch):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0}])


def test_declared_sighash_must_be_requested(keys):
    psbt = _psbt_spending([_script(keys, "nativeSegwit")])
    psbt.set_input(0, btc_psbt.PSBT_IN_SIGHASH_TYPE, struct.pack("<I", 0x02))

    with pytest.raises(SighashNotAllowed):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "sighash_types": [SIGHASH_ALL]}])

    signed = Psbt.from_string(
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "sighash_types": [0x02]}])
    )
    assert next(iter(_partial_sigs(signed, 0).values()))[-1] == 0x02


def test_default_sighash_not_in_requested_list_is_refused(keys):
    psbt = _psbt_spending([_script(keys, "nativeSegwit")])
    with pytest.raises(SighashNotAllowed):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "sighash_types": [0x81, 0x83]}])


# ---------------------------------------------------------------------------
# PSBT signing: Taproot
# ---------------------------------------------------------------------------


def test_sign_taproot_key_path(keys):
    script = _script(keys, "taproot")
    psbt = _psbt_spending([script])

    signed = Psbt.from_string(sign_psbt(keys, psbt.to_base64(), [{"index": 0}]))

    sig = signed.get_input(0, btc_psbt.PSBT_IN_TAP_KEY_SIG)
    assert len(sig) == 64
    internal_key = signed.get_input(0, btc_psbt.PSBT_IN_TAP_INTERNAL_KEY)
    assert internal_key == keys.derive_address("taproot").public_key[1:]

    sighash = taproot_sighash(signed.tx, 0, [(50_000, script)], SIGHASH_DEFAULT)
    assert coincurve.PublicKeyXOnly(script[2:]).verify(sig, sighash)


def test_taproot_explicit_sighash_appends_byte(keys):
    script = _script(keys, "taproot")
    psbt = _psbt_spending([script])

    signed = Psbt.from_string(
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "sighash_types": [SIGHASH_ALL], "finalize": True}])
    )

    witness = signed.get_input(0, btc_psbt.PSBT_IN_FINAL_SCRIPTWITNESS)
    assert witness[:2] == b"\x01\x41"
    assert witness[-1] == SIGHASH_ALL
    sighash = taproot_sighash(signed.tx, 0, [(50_000, script)], SIGHASH_ALL)
    assert coincurve.PublicKeyXOnly(script[2:]).verify(witness[2:66], sighash)


def test_taproot_wrong_internal_key_is_rejected(keys):
    psbt = _psbt_spending([_script(keys, "taproot")])
    psbt.set_input(0, btc_psbt.PSBT_IN_TAP_INTERNAL_KEY, b"\x55" * 32)

    with pytest.raises(PsbtInputMismatch):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0}])


def test_taproot_needs_every_spent_output(keys):
    taproot = _script(keys, "taproot")
    psbt = _psbt_spending([taproot, _script(keys, "nativeSegwit")])
    del psbt.inputs[1][bytes([btc_psbt.PSBT_IN_WITNESS_UTXO])]

    with pytest.raises(CannotDetermineScript):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0}])


def test_taproot_multiple_sighash_types_unsupported(keys):
    psbt = _psbt_spending([_script(keys, "taproot")])
    with pytest.raises(TaprootMultiSighashUnsupported):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "sighash_types": [0x00, 0x01]}])


def test_script_path_hints_are_rejected(keys):
    psbt = _psbt_spending([_script(keys, "taproot")])
    with pytest.raises(TaprootScriptPathUnsupported):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "tapLeafHashHex": "00" * 32}])
    with pytest.raises(TaprootScriptPathUnsupported):
        sign_psbt(keys, psbt.to_base64(), [SignInputRequest(index=0, tap_merkle_root="11" * 32)])


# ---------------------------------------------------------------------------
# PSBT signing: safety
# ---------------------------------------------------------------------------


def test_explicit_path_not_matching_utxo_is_rejected(keys):
    psbt = _psbt_spending([_script(keys, "nativeSegwit", index=1)])
    with pytest.raises(PsbtInputMismatch):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "derivation_path": "m/84'/0'/0'/0/0"}])


def test_explicit_address_not_matching_utxo_is_rejected(keys):
    psbt = _psbt_spending([_script(keys, "nativeSegwit", index=1)])
    with pytest.raises(PsbtInputMismatch):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0, "address": SEGWIT_ADDRESS}])


def test_foreign_input_is_not_found(keys):
    psbt = _psbt_spending([address_to_script(FOREIGN_ADDRESS, "mainnet")])
    with pytest.raises(AddressNotFound):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0}])


def test_missing_utxo_and_bad_index(keys):
    psbt = _psbt_spending([_script(keys, "nativeSegwit")])
    with pytest.raises(PsbtFormatInvalid):
        sign_psbt(keys, psbt.to_base64(), [{"index": 3}])

    del psbt.inputs[0][bytes([btc_psbt.PSBT_IN_WITNESS_UTXO])]
    with pytest.raises(CannotDetermineScript):
        sign_psbt(keys, psbt.to_base64(), [{"index": 0}])


def test_failed_signing_returns_nothing(keys, monkeypatch):
    psbt = _psbt_spending([_script(keys, "nativeSegwit"), address_to_script(FOREIGN_ADDRESS, "mainnet")])
    original = psbt.to_base64()
    calls = []
    real_sign_input = btc_signing._sign_input

    def tracking_sign_input(keys_, parsed, request):
        calls.append(request.index)
        return real_sign_input(keys_, parsed, request)

    monkeypatch.setattr(btc_signing, "_sign_input", tracking_sign_input)

    with pytest.raises(AddressNotFound):
        sign_psbt(keys, original, [{"index": 0}, {"index": 1}])
    assert calls == [0, 1]
    assert Psbt.from_string(original).to_base64() == original


def test_sign_input_request_from_dict_validation():
    request = SignInputRequest.from_dict(
        {"index": 2, "derivationPath": "m/86'/0'/0'/0/0", "sighashTypes": [0], "finalize": True}
    )
    assert request.derivation_path == "m/86'/0'/0'/0/0"
    assert request.sighash_types == [0]
    assert request.finalize is True

    with pytest.raises(ValueError):
        SignInputRequest.from_dict({"address": SEGWIT_ADDRESS})
    with pytest.raises(ValueError):
        SignInputRequest.from_dict({"index": "0"})
    with pytest.raises(ValueError):
        SignInputRequest.from_dict({"index": 0, "sighash_types": ["ALL"]})
