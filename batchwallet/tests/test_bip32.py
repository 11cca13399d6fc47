"""
Tests for BIP32/BIP84 key derivation.
"""

import pytest

from batchwallet.wallet.bip32 import (
    HDKey,
    mnemonic_from_entropy,
    mnemonic_to_seed,
)


class TestBip84Vectors:
    """BIP84 test vectors for the 'abandon ... about' mnemonic."""

    @pytest.fixture
    def account(self, sample_mnemonic: str) -> HDKey:
        return HDKey.from_seed(mnemonic_to_seed(sample_mnemonic)).derive("m/84'/0'/0'")

    def test_first_receive_address(self, account: HDKey):
        key = account.derive_child(0).derive_child(0)
        assert key.get_public_key_bytes().hex() == (
            "0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c"
        )
        assert key.get_address("mainnet") == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"

    def test_second_receive_address(self, account: HDKey):
        key = account.derive("m/0/1")
        assert key.get_address("mainnet") == "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"

    def test_first_change_address(self, account: HDKey):
        key = account.derive_child(1).derive_child(0)
        assert key.get_address("mainnet") == "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

    def test_scriptpubkey_is_p2wpkh(self, account: HDKey):
        script = account.derive("m/0/0").get_scriptpubkey()
        assert len(script) == 22
        assert script[:2] == b"\x00\x14"


class TestMnemonic:
    def test_passphrase_changes_seed(self, sample_mnemonic: str):
        assert mnemonic_to_seed(sample_mnemonic) != mnemonic_to_seed(sample_mnemonic, "test")

    def test_from_entropy_is_deterministic(self):
        assert mnemonic_from_entropy(bytes(16)) == mnemonic_from_entropy(bytes(16))
        assert mnemonic_from_entropy(bytes(16)).split()[-1] == "about"

    def test_distinct_entropy_distinct_wallets(self):
        assert mnemonic_from_entropy(bytes([1]) * 16) != mnemonic_from_entropy(bytes([2]) * 16)

    def test_entropy_length_sets_word_count(self):
        assert len(mnemonic_from_entropy(bytes(16)).split()) == 12
        assert len(mnemonic_from_entropy(bytes(32)).split()) == 24


class TestDerivation:
    def test_hardened_and_normal_differ(self, sample_mnemonic: str):
        master = HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))
        assert (
            master.derive("m/0'").get_public_key_bytes()
            != master.derive("m/0").get_public_key_bytes()
        )

    def test_path_equals_stepwise_derivation(self, sample_mnemonic: str):
        master = HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))
        assert (
            master.derive("m/84'/1'/0'/0/3").get_public_key_bytes()
            == master.derive("m/84'/1'/0'").derive_child(0).derive_child(3).get_public_key_bytes()
        )

    def test_regtest_address_prefix(self, sample_mnemonic: str):
        master = HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))
        assert master.derive("m/84'/1'/0'/0/0").get_address("regtest").startswith("bcrt1q")
