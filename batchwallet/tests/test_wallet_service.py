"""
Tests for WalletService: address cursor, chain sync and PSBT signing.
"""

from __future__ import annotations

import pytest

from batchcore.errors import SigningError
from batchcore.psbt import BatchPsbt, PsbtInput, PsbtOutput
from batchcore.tx import TxInput, TxOutput
from batchwallet.backends.memory import MemoryBackend
from batchwallet.wallet.service import WalletService


def spend_all(wallet: WalletService, fee: int = 1_000, proof: str = "full-tx") -> BatchPsbt:
    """A PSBT sweeping every synced UTXO of ``wallet`` back to itself."""
    inputs = []
    for utxo in wallet.list_unspent():
        if proof == "full-tx":
            meta = PsbtInput(non_witness_utxo=wallet.lookup_funding_transaction(utxo.txid))
        else:
            meta = PsbtInput(
                witness_utxo=TxOutput(
                    value=utxo.value, scriptpubkey=bytes.fromhex(utxo.scriptpubkey)
                )
            )
        inputs.append((TxInput(txid=utxo.txid, vout=utxo.vout), meta))
    output = TxOutput(
        value=wallet.get_balance() - fee, scriptpubkey=wallet.reveal_next_output_script(1)
    )
    return BatchPsbt.empty().extended(inputs=inputs, outputs=[(output, PsbtOutput())])


class TestAddresses:
    def test_mainnet_first_address(self, sample_mnemonic: str, memory_backend: MemoryBackend):
        wallet = WalletService(sample_mnemonic, memory_backend, network="mainnet")
        assert wallet.get_address(0, 0) == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        assert wallet.get_path(0, 0) == "m/84'/0'/0'/0/0"

    def test_passphrase_wallet(self, memory_backend: MemoryBackend):
        mnemonic = (
            "actress inmate filter october eagle floor conduct issue rail nominee mixture kid "
            "tunnel thought list tower lobster route ghost cigar bundle oak fiscal pulse"
        )
        wallet = WalletService(mnemonic, memory_backend, network="mainnet", passphrase="test")
        assert wallet.get_address(0, 0) == "bc1qw90s2z6etu728elvs0hxh6tda35p465phy9qz4"

    def test_testnet_coin_type(self, regtest_wallet: WalletService):
        assert regtest_wallet.root_path == "m/84'/1'/0'"
        assert regtest_wallet.get_address(0, 0).startswith("bcrt1q")

    def test_reveal_is_monotonic(self, regtest_wallet: WalletService):
        first = regtest_wallet.reveal_next_address()
        second = regtest_wallet.reveal_next_address()
        change = regtest_wallet.reveal_next_address(1)
        assert first != second
        assert change not in (first, second)
        assert regtest_wallet.next_index == {0: 2, 1: 1}

    def test_reveal_script_matches_address(self, regtest_wallet: WalletService):
        script = regtest_wallet.reveal_next_output_script()
        assert regtest_wallet.script_cache[script] == (0, 0)
        assert script == regtest_wallet.get_key(0, 0).get_scriptpubkey()


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_finds_utxos_and_funding(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        funding = memory_backend.fund_many(
            [(regtest_wallet.get_address(0, 0), 10_000), (regtest_wallet.get_address(1, 3), 20_000)]
        )

        utxos = await regtest_wallet.sync()

        assert sorted(u.value for u in utxos) == [10_000, 20_000]
        assert regtest_wallet.get_balance() == 30_000
        assert regtest_wallet.lookup_funding_transaction(funding.txid).txid == funding.txid
        change_utxo = next(u for u in utxos if u.value == 20_000)
        assert change_utxo.is_change
        assert change_utxo.path == "m/84'/1'/0'/1/3"
        assert (change_utxo.chain, change_utxo.index) == (1, 3)

    @pytest.mark.asyncio
    async def test_sync_advances_cursor_past_used(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        memory_backend.fund(regtest_wallet.get_address(0, 4), 10_000)
        await regtest_wallet.sync()
        assert regtest_wallet.next_index[0] == 5
        assert regtest_wallet.reveal_next_address() == regtest_wallet.get_address(0, 5)

    @pytest.mark.asyncio
    async def test_sync_beyond_first_gap_window(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        memory_backend.fund(regtest_wallet.get_address(0, 15), 1_000)
        memory_backend.fund(regtest_wallet.get_address(0, 30), 2_000)
        await regtest_wallet.sync()
        assert regtest_wallet.get_balance() == 3_000

    @pytest.mark.asyncio
    async def test_empty_wallet(self, regtest_wallet: WalletService):
        assert await regtest_wallet.sync() == []
        assert regtest_wallet.get_balance() == 0


class TestSign:
    @pytest.mark.asyncio
    async def test_sign_finalizes_and_broadcasts(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        memory_backend.fund(regtest_wallet.reveal_next_address(), 50_000)
        memory_backend.fund(regtest_wallet.reveal_next_address(), 70_000)
        await regtest_wallet.sync()
        psbt = spend_all(regtest_wallet)

        signed = regtest_wallet.sign(psbt)

        assert not psbt.is_finalized  # original untouched
        assert signed.is_finalized
        assert all(len(meta.partial_sigs) == 1 for meta in signed.inputs)
        txid = await memory_backend.broadcast_transaction(signed.extract_tx().hex())
        assert txid == signed.tx.txid

    @pytest.mark.asyncio
    async def test_sign_with_witness_utxo_proof(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        memory_backend.fund(regtest_wallet.reveal_next_address(), 50_000)
        await regtest_wallet.sync()
        signed = regtest_wallet.sign(spend_all(regtest_wallet, proof="witness-utxo"))
        assert signed.is_finalized
        await memory_backend.broadcast_transaction(signed.extract_tx().hex())

    @pytest.mark.asyncio
    async def test_sign_is_idempotent(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        memory_backend.fund(regtest_wallet.reveal_next_address(), 50_000)
        await regtest_wallet.sync()
        once = regtest_wallet.sign(spend_all(regtest_wallet))
        twice = regtest_wallet.sign(once)
        assert twice.to_hex() == once.to_hex()

    @pytest.mark.asyncio
    async def test_sign_leaves_foreign_inputs(
        self,
        regtest_wallet: WalletService,
        memory_backend: MemoryBackend,
    ):
        other = WalletService(
            "zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo wrong",
            memory_backend,
            network="regtest",
            name="bob",
        )
        memory_backend.fund(regtest_wallet.reveal_next_address(), 50_000)
        memory_backend.fund(other.reveal_next_address(), 60_000)
        await regtest_wallet.sync()
        await other.sync()

        mine = spend_all(regtest_wallet)
        theirs = spend_all(other)
        combined = mine.extended(
            inputs=zip(theirs.tx.inputs, theirs.inputs),
            outputs=zip(theirs.tx.outputs, theirs.outputs),
        )

        partly = regtest_wallet.sign(combined)
        assert partly.inputs[0].is_finalized
        assert not partly.inputs[1].is_finalized
        assert not partly.is_finalized

        full = other.sign(partly)
        assert full.is_finalized
        await memory_backend.broadcast_transaction(full.extract_tx().hex())

    @pytest.mark.asyncio
    async def test_owned_input_without_proof(
        self, regtest_wallet: WalletService, memory_backend: MemoryBackend
    ):
        memory_backend.fund(regtest_wallet.reveal_next_address(), 50_000)
        await regtest_wallet.sync()
        psbt = spend_all(regtest_wallet)
        psbt.inputs[0].non_witness_utxo = None

        with pytest.raises(SigningError, match="no proof-of-funds"):
            regtest_wallet.sign(psbt)

    def test_extract_requires_signatures(self, regtest_wallet: WalletService):
        psbt = BatchPsbt.empty().extended(
            inputs=[(TxInput(txid="aa" * 32, vout=0), PsbtInput())],
        )
        with pytest.raises(SigningError, match="not finalized"):
            psbt.extract_tx()
