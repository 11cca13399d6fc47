"""
Tests for the fee ledger.
"""

from __future__ import annotations

import pytest

from batchcore.errors import DuplicateInput, FeeImbalance
from batchcore.models import OutputKind
from batchcore.psbt import BatchPsbt, PsbtInput, PsbtOutput
from batchcore.tx import Transaction, TxInput, TxOutput
from batchwallet.wallet.models import UTXOInfo
from coordinator.contribution import FeeRole, UtxoCandidate, build_contribution
from coordinator.ledger import FeeLedger

SCRIPT = b"\x00\x14" + b"\x44" * 20
FEE = 77_777
SEED_FEE = 2_000


def candidate(value: int, n: int) -> UtxoCandidate:
    return UtxoCandidate(
        UTXOInfo(f"{n:064x}", 0, value, "", 1, SCRIPT.hex(), f"m/84'/1'/0'/0/{n}")
    )


def seed() -> BatchPsbt:
    """1,000,000 in; 777,777 to the recipient, change back, 2,000 network fee."""
    funding = candidate(1_000_000, 100)
    return BatchPsbt.empty().extended(
        inputs=[(funding.tx_input(), funding.psbt_input())],
        outputs=[
            (
                TxOutput(777_777, SCRIPT),
                PsbtOutput(kind=OutputKind.RECIPIENT),
            ),
            (
                TxOutput(1_000_000 - 777_777 - SEED_FEE, SCRIPT),
                PsbtOutput(owner="initiator", kind=OutputKind.CHANGE),
            ),
        ],
    )


@pytest.fixture
def batch() -> tuple[BatchPsbt, FeeLedger]:
    ledger = FeeLedger()
    ledger.record_draft("initiator", SEED_FEE)
    psbt = seed()
    for n, name in enumerate(["alice", "bob"], start=1):
        psbt, contribution = build_contribution(
            psbt, name, [candidate(1_000_000, n)], lambda: SCRIPT, FEE, FeeRole.NON_PAYER, 2
        )
        ledger.record(contribution)
    psbt, contribution = build_contribution(
        psbt, "initiator", [candidate(500_000, 50)], lambda: SCRIPT, ledger.reimbursed,
        FeeRole.PAYER, 2,
    )
    ledger.record(contribution)
    return psbt, ledger


class TestFeeLedger:
    def test_balanced_batch_verifies(self, batch: tuple[BatchPsbt, FeeLedger]):
        psbt, ledger = batch
        ledger.verify(psbt)

        assert ledger.network_fee == SEED_FEE
        assert ledger.collected == ledger.reimbursed == 2 * FEE
        assert ledger.contributors == ["alice", "bob"]
        assert psbt.fee() == SEED_FEE

    def test_missing_top_up(self):
        ledger = FeeLedger()
        ledger.record_draft("initiator", SEED_FEE)
        psbt, contribution = build_contribution(
            seed(), "alice", [candidate(1_000_000, 1)], lambda: SCRIPT, FEE, FeeRole.NON_PAYER, 2
        )
        ledger.record(contribution)

        with pytest.raises(FeeImbalance, match="Collected 0 sats"):
            ledger.verify(psbt)

    def test_wrong_network_fee(self, batch: tuple[BatchPsbt, FeeLedger]):
        psbt, ledger = batch
        ledger.record_draft("initiator", 1)
        with pytest.raises(FeeImbalance, match="network fee"):
            ledger.verify(psbt)

    def test_unbalanced_contribution(self, batch: tuple[BatchPsbt, FeeLedger]):
        psbt, ledger = batch
        ledger.contributions[0].outputs[0] = TxOutput(1, SCRIPT)
        with pytest.raises(FeeImbalance, match="alice"):
            ledger.verify(psbt)

    def test_contribution_not_in_batch(self, batch: tuple[BatchPsbt, FeeLedger]):
        _, ledger = batch
        with pytest.raises(FeeImbalance, match="missing from batch"):
            ledger.verify(seed())

    def test_duplicate_outpoint(self):
        funding = Transaction(
            inputs=[TxInput(txid="01" * 32, vout=0)], outputs=[TxOutput(10_000, SCRIPT)]
        )
        tx = Transaction(
            inputs=[TxInput(funding.txid, 0), TxInput(funding.txid, 0)],
            outputs=[TxOutput(9_000, SCRIPT)],
        )
        psbt = BatchPsbt(
            tx=tx,
            inputs=[PsbtInput(non_witness_utxo=funding), PsbtInput(non_witness_utxo=funding)],
            outputs=[PsbtOutput()],
        )
        with pytest.raises(DuplicateInput):
            FeeLedger().verify(psbt)

    def test_draft_fees_accumulate(self):
        ledger = FeeLedger()
        ledger.record_draft("initiator", 100)
        ledger.record_draft("alice", 50)
        ledger.record_draft("initiator", 25)
        assert ledger.draft_fees == {"initiator": 125, "alice": 50}
        assert ledger.network_fee == 175

    def test_top_up_network_fee_is_recorded(self):
        ledger = FeeLedger()
        ledger.record_draft("initiator", SEED_FEE)
        psbt, contribution = build_contribution(
            seed(), "alice", [candidate(1_000_000, 1)], lambda: SCRIPT, FEE, FeeRole.NON_PAYER, 2
        )
        ledger.record(contribution)
        psbt, contribution = build_contribution(
            psbt, "initiator", [candidate(500_000, 50)], lambda: SCRIPT, ledger.reimbursed,
            FeeRole.PAYER, 2, network_fee=1_200,
        )
        ledger.record(contribution)

        ledger.verify(psbt)
        assert ledger.draft_fees == {"initiator": SEED_FEE, "initiator top-up": 1_200}
        assert psbt.fee() == ledger.network_fee == SEED_FEE + 1_200
