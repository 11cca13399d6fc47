"""
Fee ledger: the accounting that must hold before anyone signs.

Two kinds of fee show up in a batch. Network fees are committed by drafts
(the seed, merged fragments, the foreign-input build) and by the initiator's
top-up when the seed fee no longer covers the grown transaction. They are
the only value that leaves the transaction. Participant fees are internal
transfers: every non-payer is credited ``fee`` on its output and the payer
debits the same total from its own, so they net to zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from batchcore.errors import DuplicateInput, FeeImbalance
from batchcore.psbt import BatchPsbt

from coordinator.contribution import Contribution, FeeRole


@dataclass
class FeeLedger:
    draft_fees: dict[str, int] = field(default_factory=dict)
    contributions: list[Contribution] = field(default_factory=list)

    def record_draft(self, label: str, fee: int) -> None:
        self.draft_fees[label] = self.draft_fees.get(label, 0) + fee
        logger.debug(f"Ledger: draft {label} commits {fee:,} sats network fee")

    def record(self, contribution: Contribution) -> None:
        self.contributions.append(contribution)
        if contribution.network_fee:
            self.record_draft(f"{contribution.participant} top-up", contribution.network_fee)

    @property
    def network_fee(self) -> int:
        return sum(self.draft_fees.values())

    @property
    def collected(self) -> int:
        """Fees debited from payers."""
        return sum(c.fee for c in self.contributions if c.role is FeeRole.PAYER)

    @property
    def reimbursed(self) -> int:
        """Fees credited to non-payers."""
        return sum(c.fee for c in self.contributions if c.role is FeeRole.NON_PAYER)

    @property
    def contributors(self) -> list[str]:
        return [c.participant for c in self.contributions if c.role is FeeRole.NON_PAYER]

    def verify(self, psbt: BatchPsbt) -> None:
        """
        Check the finished accumulator against the recorded flows.

        Raises:
            DuplicateInput: an outpoint is spent twice
            FeeImbalance: any accounting identity does not hold
        """
        seen = set()
        for outpoint in psbt.outpoints:
            if outpoint in seen:
                raise DuplicateInput(outpoint)
            seen.add(outpoint)

        for contribution in self.contributions:
            if not contribution.is_balanced():
                raise FeeImbalance(
                    f"{contribution.participant}: outputs {contribution.output_value:,} != "
                    f"inputs {contribution.input_value:,} "
                    f"{'-' if contribution.role is FeeRole.PAYER else '+'} fee {contribution.fee:,}"
                    f" - network fee {contribution.network_fee:,}"
                )
            missing = [op for op in contribution.outpoints if op not in seen]
            if missing:
                raise FeeImbalance(
                    f"{contribution.participant}: contributed inputs missing from batch: "
                    f"{', '.join(str(op) for op in missing)}"
                )

        if self.collected != self.reimbursed:
            raise FeeImbalance(
                f"Collected {self.collected:,} sats from payers but reimbursed "
                f"{self.reimbursed:,} sats to participants"
            )

        total_in = psbt.total_input_value()
        total_out = psbt.total_output_value()
        if total_in != total_out + self.network_fee:
            raise FeeImbalance(
                f"Inputs {total_in:,} != outputs {total_out:,} + network fee {self.network_fee:,}"
            )

        logger.info(
            f"Ledger balanced: {len(psbt.outpoints)} inputs, {len(psbt.tx.outputs)} outputs, "
            f"network fee {self.network_fee:,} sats, {self.reimbursed:,} sats reimbursed "
            f"to {len(self.contributors)} contribution(s)"
        )
