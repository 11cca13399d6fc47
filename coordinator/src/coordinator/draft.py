"""
Wallet-side transaction drafts.

A small builder in the style of a wallet's "create transaction" call: one or
more recipients, an explicit fee rate and locktime, manual or automatic coin
selection from the wallet, and optional foreign inputs owned by other
parties. The fee is estimated from weight before anything is signed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from loguru import logger

from batchcore.constants import P2WPKH_SATISFACTION_WEIGHT, STANDARD_DUST_LIMIT
from batchcore.errors import BatchError, DuplicateInput, InsufficientFunds
from batchcore.models import OutputKind
from batchcore.psbt import BatchPsbt, PsbtInput, PsbtOutput
from batchcore.tx import OutPoint, TxInput, TxOutput, estimate_vsize
from batchwallet.wallet.models import CoinSelection

from coordinator.config import OrderingPolicy
from coordinator.contribution import UtxoCandidate, gather_candidates, order_candidates
from coordinator.protocols import WalletLike

# Change outputs are always P2WPKH
_CHANGE_SCRIPT_PLACEHOLDER = b"\x00\x14" + b"\x00" * 20


@dataclass
class Draft:
    psbt: BatchPsbt
    fee: int
    selection: CoinSelection


@dataclass
class _ForeignInput:
    outpoint: OutPoint
    psbt_input: PsbtInput
    satisfaction_weight: int
    value: int


class TxDraftBuilder:
    """Chainable draft builder bound to one wallet."""

    def __init__(
        self,
        wallet: WalletLike,
        ordering: OrderingPolicy = OrderingPolicy.WALLET,
        dust_threshold: int = STANDARD_DUST_LIMIT,
    ):
        self.wallet = wallet
        self.ordering = ordering
        self.dust_threshold = dust_threshold
        self._recipients: list[tuple[TxOutput, PsbtOutput]] = []
        self._fee_rate: float | None = None
        self._locktime = 0
        self._manual_only = False
        self._manual: list[OutPoint] = []
        self._foreign: list[_ForeignInput] = []

    def add_recipient(
        self, scriptpubkey: bytes, amount: int, owner: str | None = None
    ) -> TxDraftBuilder:
        if amount <= 0:
            raise ValueError("Recipient amount must be positive")
        self._recipients.append(
            (
                TxOutput(value=amount, scriptpubkey=scriptpubkey),
                PsbtOutput(owner=owner, kind=OutputKind.RECIPIENT),
            )
        )
        return self

    def fee_rate(self, sat_per_vb: float) -> TxDraftBuilder:
        if sat_per_vb <= 0:
            raise ValueError("Fee rate must be positive")
        self._fee_rate = sat_per_vb
        return self

    def nlocktime(self, locktime: int) -> TxDraftBuilder:
        self._locktime = locktime
        return self

    def manually_selected_only(self) -> TxDraftBuilder:
        self._manual_only = True
        return self

    def add_utxo(self, outpoint: OutPoint) -> TxDraftBuilder:
        if outpoint in self._manual or any(f.outpoint == outpoint for f in self._foreign):
            raise DuplicateInput(outpoint)
        self._manual.append(outpoint)
        return self

    def add_foreign_utxo(
        self,
        outpoint: OutPoint,
        psbt_input: PsbtInput,
        satisfaction_weight: int = P2WPKH_SATISFACTION_WEIGHT,
    ) -> TxDraftBuilder:
        """
        Spend an output this wallet cannot sign for.

        Raises:
            BatchError: the proof-of-funds does not describe ``outpoint``
            DuplicateInput: ``outpoint`` was already added
        """
        if outpoint in self._manual or any(f.outpoint == outpoint for f in self._foreign):
            raise DuplicateInput(outpoint)
        if (
            psbt_input.non_witness_utxo is not None
            and psbt_input.non_witness_utxo.txid != outpoint.txid
        ):
            raise BatchError(f"Foreign input {outpoint}: funding transaction id mismatch")
        funding = psbt_input.funding_output(outpoint.vout)
        if funding is None:
            raise BatchError(f"Foreign input {outpoint}: missing proof-of-funds")
        self._foreign.append(
            _ForeignInput(outpoint, psbt_input, satisfaction_weight, funding.value)
        )
        return self

    def _fee_for(self, weights: list[int], with_change: bool) -> int:
        scripts = [out.scriptpubkey for out, _ in self._recipients]
        if with_change:
            scripts.append(_CHANGE_SCRIPT_PLACEHOLDER)
        return math.ceil(estimate_vsize(weights, scripts) * (self._fee_rate or 0))

    def finish(self) -> Draft:
        """
        Select coins, compute the fee and produce the unsigned accumulator.

        Raises:
            InsufficientFunds: selected inputs cannot pay recipients plus fee
        """
        if not self._recipients:
            raise ValueError("Draft needs at least one recipient")
        if self._fee_rate is None:
            raise ValueError("Fee rate not set")

        available = order_candidates(gather_candidates(self.wallet), self.ordering)
        by_outpoint = {c.outpoint: c for c in available}

        selected: list[UtxoCandidate] = []
        for outpoint in self._manual:
            candidate = by_outpoint.get(outpoint)
            if candidate is None:
                raise BatchError(f"{self.wallet.name}: UTXO {outpoint} is not in the wallet")
            selected.append(candidate)

        weights = [P2WPKH_SATISFACTION_WEIGHT] * len(selected)
        weights += [f.satisfaction_weight for f in self._foreign]
        total_in = sum(c.value for c in selected) + sum(f.value for f in self._foreign)
        total_out = sum(out.value for out, _ in self._recipients)

        if not self._manual_only:
            taken = {c.outpoint for c in selected} | {f.outpoint for f in self._foreign}
            for candidate in available:
                if total_in >= total_out + self._fee_for(weights, with_change=False):
                    break
                if candidate.outpoint in taken:
                    continue
                selected.append(candidate)
                weights.append(P2WPKH_SATISFACTION_WEIGHT)
                total_in += candidate.value

        fee_without_change = self._fee_for(weights, with_change=False)
        if total_in < total_out + fee_without_change:
            raise InsufficientFunds(
                total_out + fee_without_change, total_in, f"{self.wallet.name} draft"
            )

        outputs = list(self._recipients)
        fee_with_change = self._fee_for(weights, with_change=True)
        change = total_in - total_out - fee_with_change
        if change >= self.dust_threshold:
            fee = fee_with_change
            outputs.append(
                (
                    TxOutput(value=change, scriptpubkey=self.wallet.reveal_next_output_script(1)),
                    PsbtOutput(owner=self.wallet.name, kind=OutputKind.CHANGE),
                )
            )
        else:
            # Sub-dust change is left to the miner
            fee = total_in - total_out
            change = 0

        inputs = [(c.tx_input(), c.psbt_input()) for c in selected]
        inputs += [
            (TxInput(txid=f.outpoint.txid, vout=f.outpoint.vout), f.psbt_input)
            for f in self._foreign
        ]

        psbt = BatchPsbt.empty(locktime=self._locktime).extended(inputs=inputs, outputs=outputs)
        logger.debug(
            f"{self.wallet.name}: drafted {len(inputs)} input(s) / {len(outputs)} output(s), "
            f"fee {fee:,} sats"
        )
        return Draft(
            psbt=psbt,
            fee=fee,
            selection=CoinSelection(
                utxos=[c.utxo for c in selected],
                total_value=total_in,
                change_value=change,
                fee=fee,
                foreign=[f.outpoint for f in self._foreign],
            ),
        )
