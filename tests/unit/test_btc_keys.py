import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import btc_keys  # noqa: E402
from btc_keys import (  # noqa: E402
    DerivationPathType,
    KeyManager,
    address_to_script,
    build_derivation_path,
    parse_derivation_path,
    script_to_address,
)
from wallet_errors import (  # noqa: E402
    InvalidDerivationPath,
    InvalidLookupConfig,
    InvalidSeedPhrase,
    UnsupportedDerivationPurpose,
    WalletLocked,
)

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _keys(network="mainnet", **lookup):
    keys = KeyManager(network, lookup or {"max_account_index": 0, "receive_window": 3, "change_window": 2})
    keys.from_mnemonic(MNEMONIC)
    return keys


# ---------------------------------------------------------------------------
# Public BIP test vectors
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "path_type, change, index, expected",
    [
        ("nativeSegwit", 0, 0, "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"),
        ("nativeSegwit", 0, 1, "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"),
        ("nativeSegwit", 1, 0, "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"),
        ("taproot", 0, 0, "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"),
        ("taproot", 0, 1, "bc1p4qhjn9zdvkux4e44uhx8tc55attvtyu358kutcqkudyccelu0was9fqzwh"),
        ("taproot", 1, 0, "bc1p3qkhfews2uk44qtvauqyr2ttdsw7svhkl9nkm9s9c3x4ax5h60wqwruhk7"),
        ("legacy", 0, 0, "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"),
    ],
)
def test_mainnet_vectors(path_type, change, index, expected):
    derived = _keys().derive_address(path_type, 0, change, index)
    assert derived.address == expected
    assert len(derived.public_key) == 33


def test_bip49_testnet_vector():
    derived = _keys("testnet").derive_address(DerivationPathType.NESTED_SEGWIT, 0, 0, 0)
    assert derived.address == "2Mww8dCYPUpKHofjgcXcBCEGmniw9CoaiD2"
    assert derived.path == "m/49'/1'/0'/0/0"
    assert derived.type == "p2sh-p2wpkh"


def test_derivation_is_deterministic_across_instances():
    first = _keys().derive_address("taproot", 2, 0, 7)
    second = _keys().derive_address("taproot", 2, 0, 7)
    assert first == second


def test_mnemonic_whitespace_is_normalized():
    keys = KeyManager()
    keys.from_mnemonic("  " + MNEMONIC.replace(" ", "   ") + "\n")
    assert keys.export_mnemonic() == MNEMONIC
    assert keys.derive_address("nativeSegwit").address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"


def test_passphrase_changes_keys():
    keys = KeyManager()
    keys.from_mnemonic(MNEMONIC, "TREZOR")
    assert keys.derive_address("nativeSegwit").address != "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"


def test_invalid_mnemonic_rejected():
    with pytest.raises(InvalidSeedPhrase):
        KeyManager().from_mnemonic("abandon " * 11 + "abandon")
    with pytest.raises(InvalidSeedPhrase):
        KeyManager().from_mnemonic("")


def test_generate_mnemonic_word_counts():
    assert len(KeyManager.generate_mnemonic().split()) == 12
    assert len(KeyManager.generate_mnemonic(256).split()) == 24
    with pytest.raises(ValueError):
        KeyManager.generate_mnemonic(160)


# ---------------------------------------------------------------------------
# Lock state
# ---------------------------------------------------------------------------


def test_locked_manager_refuses_derivation():
    keys = _keys()
    keys.lock()
    assert not keys.is_initialized()
    with pytest.raises(WalletLocked):
        keys.derive_address("nativeSegwit")
    with pytest.raises(WalletLocked):
        keys.export_mnemonic()
    with pytest.raises(WalletLocked):
        keys.find_address_path("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu")


def test_set_network_switches_coin_type():
    keys = _keys()
    mainnet = keys.derive_address("nativeSegwit")
    keys.set_network("testnet")
    testnet = keys.derive_address("nativeSegwit")
    assert testnet.address.startswith("tb1q")
    assert testnet.path == "m/84'/1'/0'/0/0"
    assert testnet.public_key != mainnet.public_key
    with pytest.raises(ValueError):
        keys.set_network("regtest")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def test_parse_derivation_path_accepts_hardened_markers():
    assert parse_derivation_path("m/84'/0h/0H/1/2") == [
        84 | btc_keys.HARDENED,
        btc_keys.HARDENED,
        btc_keys.HARDENED,
        1,
        2,
    ]


@pytest.mark.parametrize("path", ["", "84'/0'/0'", "m/84'/x", "m//1", "m/4294967296"])
def test_parse_derivation_path_rejects_garbage(path):
    with pytest.raises(InvalidDerivationPath):
        parse_derivation_path(path)


def test_build_derivation_path_validates_components():
    assert build_derivation_path(DerivationPathType.TAPROOT, "testnet", 1, 1, 5) == "m/86'/1'/1'/1/5"
    with pytest.raises(InvalidDerivationPath):
        build_derivation_path(DerivationPathType.TAPROOT, "mainnet", 0, 2, 0)
    with pytest.raises(InvalidDerivationPath):
        build_derivation_path(DerivationPathType.TAPROOT, "mainnet", -1, 0, 0)


def test_unsupported_purpose():
    with pytest.raises(UnsupportedDerivationPurpose):
        _keys().derive_address_from_path("m/45'/0'/0'/0/0")


# ---------------------------------------------------------------------------
# Addresses and reverse lookup
# ---------------------------------------------------------------------------


def test_address_script_round_trip():
    keys = _keys()
    for path_type in DerivationPathType:
        derived = keys.derive_address(path_type, 0, 0, 0)
        script = address_to_script(derived.address, "mainnet")
        assert script_to_address(script, "mainnet") == derived.address


def test_address_to_script_rejects_other_network():
    with pytest.raises(ValueError):
        address_to_script("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu", "testnet")


def test_find_address_path_round_trip():
    keys = _keys()
    for path_type in DerivationPathType:
        derived = keys.derive_address(path_type, 0, 1, 1)
        found = keys.find_address_path(derived.address)
        assert found is not None
        assert found.path == derived.path
        assert found.type == derived.type


def test_find_address_path_accepts_upper_case_bech32():
    keys = _keys()
    for path_type in ("nativeSegwit", "taproot"):
        derived = keys.derive_address(path_type, 0, 0, 0)
        found = keys.find_address_path(derived.address.upper())
        assert found is not None
        assert found.path == derived.path

    legacy = keys.derive_address("legacy", 0, 0, 0)
    assert keys.find_address_path(legacy.address.upper()) is None


def test_find_address_path_outside_window_is_none():
    keys = _keys()
    far = keys.derive_address("nativeSegwit", 0, 0, 10)
    assert keys.find_address_path(far.address) is None

    keys.set_address_lookup_config(receive_window=11)
    found = keys.find_address_path(far.address)
    assert found is not None and found.path == "m/84'/0'/0'/0/10"


def test_custom_path_takes_priority():
    keys = _keys()
    custom = "m/84'/0'/3'/0/42"
    keys.set_custom_paths({"payment": custom})

    addresses = keys.get_addresses(["payment", "ordinals"])
    assert addresses[0]["derivation_path"] == custom
    assert addresses[0]["purpose"] == "payment"
    assert addresses[1]["address"] == "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"

    found = keys.find_address_path(addresses[0]["address"])
    assert found.path == custom


def test_get_addresses_rejects_unknown_purpose():
    with pytest.raises(ValueError):
        _keys().get_addresses(["stacks"])


def test_lookup_config_is_clamped_and_validated():
    keys = KeyManager()
    keys.set_address_lookup_config(max_account_index=1000, receive_window=5)
    assert keys.lookup_config == {"max_account_index": 100, "receive_window": 5, "change_window": 20}

    with pytest.raises(InvalidLookupConfig):
        keys.set_address_lookup_config(change_window=-1)
    with pytest.raises(InvalidLookupConfig):
        keys.set_address_lookup_config(gap=3)
