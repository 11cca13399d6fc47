"""
Tests for the in-memory simulated chain.
"""

from __future__ import annotations

import pytest

from batchcore.errors import RejectedByNetwork
from batchcore.tx import OutPoint, Transaction, TxInput, TxOutput
from batchwallet.backends.memory import MemoryBackend
from batchwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from batchwallet.wallet.signing import (
    create_p2wpkh_script_code,
    create_witness_stack,
    sign_p2wpkh_input,
)


@pytest.fixture
def key(sample_mnemonic: str) -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(sample_mnemonic)).derive("m/84'/1'/0'/0/0")


@pytest.fixture
def address(key: HDKey) -> str:
    return key.get_address("regtest")


def signed_spend(
    key: HDKey, funding: Transaction, vouts: list[int], outputs: list[TxOutput]
) -> Transaction:
    tx = Transaction(
        inputs=[TxInput(txid=funding.txid, vout=vout) for vout in vouts], outputs=outputs
    )
    pubkey = key.get_public_key_bytes()
    for index, vout in enumerate(vouts):
        signature = sign_p2wpkh_input(
            tx, index, create_p2wpkh_script_code(pubkey), funding.outputs[vout].value,
            key.private_key,
        )
        tx.inputs[index].witness = create_witness_stack(signature, pubkey)
    return tx


class TestFunding:
    @pytest.mark.asyncio
    async def test_fund_creates_utxo(self, memory_backend: MemoryBackend, address: str):
        outpoint = memory_backend.fund(address, 50_000)

        utxos = await memory_backend.get_utxos([address])
        assert len(utxos) == 1
        assert utxos[0].txid == outpoint.txid
        assert utxos[0].value == 50_000
        assert utxos[0].confirmations == 1
        assert memory_backend.balance(address) == 50_000

    @pytest.mark.asyncio
    async def test_fund_many_single_transaction(
        self, memory_backend: MemoryBackend, address: str
    ):
        tx = memory_backend.fund_many([(address, 1_000), (address, 2_000)])
        assert tx.has_witness
        utxos = await memory_backend.get_utxos([address])
        assert sorted(u.value for u in utxos) == [1_000, 2_000]
        assert {u.txid for u in utxos} == {tx.txid}

    @pytest.mark.asyncio
    async def test_unconfirmed_then_mined(self, memory_backend: MemoryBackend, address: str):
        memory_backend.fund(address, 10_000, confirm=False)
        utxos = await memory_backend.get_utxos([address])
        assert utxos[0].confirmations == 0

        memory_backend.mine(2)
        utxos = await memory_backend.get_utxos([address])
        assert utxos[0].confirmations == 2

    @pytest.mark.asyncio
    async def test_get_transaction_round_trip(self, memory_backend: MemoryBackend, address: str):
        outpoint = memory_backend.fund(address, 10_000)
        funding = await memory_backend.get_transaction(outpoint.txid)
        assert funding is not None
        assert funding.decode().txid == outpoint.txid
        assert await memory_backend.get_transaction("00" * 32) is None

    @pytest.mark.asyncio
    async def test_block_height(self, memory_backend: MemoryBackend):
        height = await memory_backend.get_block_height()
        memory_backend.mine(3)
        assert await memory_backend.get_block_height() == height + 3


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_accepts_valid_spend(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0], [TxOutput(value=99_000, scriptpubkey=key.get_scriptpubkey())]
        )

        txid = await memory_backend.broadcast_transaction(tx.hex())

        assert txid == tx.txid
        assert memory_backend.broadcasts == [txid]
        assert not memory_backend.is_unspent(OutPoint(funding.txid, 0))
        assert memory_backend.is_unspent(OutPoint(txid, 0))

    @pytest.mark.asyncio
    async def test_check_acceptance_does_not_submit(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0], [TxOutput(value=99_000, scriptpubkey=key.get_scriptpubkey())]
        )

        await memory_backend.check_acceptance(tx.hex())

        assert memory_backend.broadcasts == []
        assert memory_backend.is_unspent(OutPoint(funding.txid, 0))

    @pytest.mark.asyncio
    async def test_rejects_garbage(self, memory_backend: MemoryBackend):
        with pytest.raises(RejectedByNetwork, match="TX decode failed"):
            await memory_backend.broadcast_transaction("deadbeef")

    @pytest.mark.asyncio
    async def test_rejects_double_spend(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        script = key.get_scriptpubkey()
        first = signed_spend(key, funding, [0], [TxOutput(value=99_000, scriptpubkey=script)])
        second = signed_spend(key, funding, [0], [TxOutput(value=98_000, scriptpubkey=script)])
        await memory_backend.broadcast_transaction(first.hex())

        with pytest.raises(RejectedByNetwork) as exc_info:
            await memory_backend.broadcast_transaction(second.hex())
        assert exc_info.value.reason == "bad-txns-inputs-missingorspent"

    @pytest.mark.asyncio
    async def test_rejects_already_known(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0], [TxOutput(value=99_000, scriptpubkey=key.get_scriptpubkey())]
        )
        await memory_backend.broadcast_transaction(tx.hex())
        with pytest.raises(RejectedByNetwork, match="txn-already-known"):
            await memory_backend.broadcast_transaction(tx.hex())

    @pytest.mark.asyncio
    async def test_rejects_duplicate_inputs(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0, 0], [TxOutput(value=99_000, scriptpubkey=key.get_scriptpubkey())]
        )
        with pytest.raises(RejectedByNetwork, match="bad-txns-inputs-duplicate"):
            await memory_backend.broadcast_transaction(tx.hex())

    @pytest.mark.asyncio
    async def test_rejects_value_creation(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0], [TxOutput(value=100_001, scriptpubkey=key.get_scriptpubkey())]
        )
        with pytest.raises(RejectedByNetwork, match="bad-txns-in-belowout"):
            await memory_backend.broadcast_transaction(tx.hex())

    @pytest.mark.asyncio
    async def test_rejects_low_fee(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0], [TxOutput(value=99_990, scriptpubkey=key.get_scriptpubkey())]
        )
        with pytest.raises(RejectedByNetwork, match="min relay fee not met"):
            await memory_backend.broadcast_transaction(tx.hex())

    @pytest.mark.asyncio
    async def test_rejects_bad_signature(
        self, memory_backend: MemoryBackend, key: HDKey, address: str
    ):
        funding = memory_backend.fund_many([(address, 100_000)])
        tx = signed_spend(
            key, funding, [0], [TxOutput(value=99_000, scriptpubkey=key.get_scriptpubkey())]
        )
        tx.outputs[0].value = 98_000  # invalidates the signature

        with pytest.raises(RejectedByNetwork) as exc_info:
            await memory_backend.broadcast_transaction(tx.hex())
        assert exc_info.value.reason.startswith("mandatory-script-verify-flag-failed")
        assert exc_info.value.txid == tx.txid

    @pytest.mark.asyncio
    async def test_signature_checks_can_be_disabled(self, key: HDKey, address: str):
        backend = MemoryBackend(verify_signatures=False)
        funding = backend.fund_many([(address, 100_000)])
        tx = Transaction(
            inputs=[TxInput(txid=funding.txid, vout=0, witness=[b"\x00"])],
            outputs=[TxOutput(value=99_000, scriptpubkey=key.get_scriptpubkey())],
        )
        assert await backend.broadcast_transaction(tx.hex()) == tx.txid

    def test_rejects_empty_inputs(self, memory_backend: MemoryBackend):
        tx = Transaction(outputs=[TxOutput(value=1_000, scriptpubkey=b"\x00\x14" + bytes(20))])
        with pytest.raises(RejectedByNetwork, match="bad-txns-vin-empty"):
            memory_backend.validate(tx)
