"""
Contribution builder.

Turns a bounded slice of one participant's UTXOs into batch inputs (with
proof-of-funds attached) plus the output(s) that settle the participant's
fee obligation:

    payer:      output = sum(inputs) - fee - network_fee
    non-payer:  output = sum(inputs) + fee

Only the initiator's top-up carries a network_fee: the part of the
transaction fee the seed draft did not already pay.

In uniform mode an output of exactly the target amount is emitted first and
the remainder goes to a second, change-like output.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from batchcore.errors import InsufficientFunds
from batchcore.models import OutputKind
from batchcore.psbt import BatchPsbt, PsbtInput, PsbtOutput
from batchcore.tx import OutPoint, Transaction, TxInput, TxOutput
from batchwallet.wallet.models import UTXOInfo

from coordinator.config import OrderingPolicy
from coordinator.protocols import WalletLike


@dataclass
class UtxoCandidate:
    """A spendable UTXO together with its proof-of-funds."""

    utxo: UTXOInfo
    funding_tx: Transaction | None = None

    @property
    def outpoint(self) -> OutPoint:
        return self.utxo.outpoint

    @property
    def value(self) -> int:
        return self.utxo.value

    def tx_input(self) -> TxInput:
        return TxInput(txid=self.utxo.txid, vout=self.utxo.vout)

    def psbt_input(self) -> PsbtInput:
        """Full funding transaction when known, otherwise a witness_utxo."""
        if self.funding_tx is not None:
            return PsbtInput(non_witness_utxo=self.funding_tx)
        return PsbtInput(
            witness_utxo=TxOutput(
                value=self.utxo.value, scriptpubkey=bytes.fromhex(self.utxo.scriptpubkey)
            )
        )


def gather_candidates(wallet: WalletLike) -> list[UtxoCandidate]:
    """Pair each of the wallet's UTXOs with the transaction that created it."""
    candidates = []
    for utxo in wallet.list_unspent():
        funding = wallet.lookup_funding_transaction(utxo.txid)
        if funding is not None:
            if (
                funding.txid != utxo.txid
                or utxo.vout >= len(funding.outputs)
                or funding.outputs[utxo.vout].value != utxo.value
            ):
                logger.warning(
                    f"{wallet.name}: funding tx for {utxo.outpoint} is inconsistent, "
                    "using witness_utxo"
                )
                funding = None
        candidates.append(UtxoCandidate(utxo=utxo, funding_tx=funding))
    return candidates


def order_candidates(
    candidates: Iterable[UtxoCandidate], policy: OrderingPolicy = OrderingPolicy.WALLET
) -> list[UtxoCandidate]:
    items = list(candidates)
    if policy == OrderingPolicy.LARGEST_FIRST:
        return sorted(items, key=lambda c: c.value, reverse=True)
    if policy == OrderingPolicy.SMALLEST_FIRST:
        return sorted(items, key=lambda c: c.value)
    if policy == OrderingPolicy.OUTPOINT:
        return sorted(items, key=lambda c: c.outpoint)
    return items


class FeeRole(str, Enum):
    PAYER = "payer"
    NON_PAYER = "non-payer"

    @property
    def sign(self) -> int:
        return -1 if self is FeeRole.PAYER else 1


@dataclass
class Contribution:
    """What one participant put into the batch and took out of it."""

    participant: str
    utxos: list[UTXOInfo]
    fee: int
    role: FeeRole
    outputs: list[TxOutput] = field(default_factory=list)
    uniform_amount: int | None = None
    network_fee: int = 0

    @property
    def outpoints(self) -> list[OutPoint]:
        return [utxo.outpoint for utxo in self.utxos]

    @property
    def input_value(self) -> int:
        return sum(utxo.value for utxo in self.utxos)

    @property
    def output_value(self) -> int:
        return sum(out.value for out in self.outputs)

    def is_balanced(self) -> bool:
        expected = self.input_value + self.role.sign * self.fee - self.network_fee
        return self.output_value == expected


def is_duplicate_input(existing: Iterable[OutPoint], candidate: OutPoint) -> bool:
    """True if ``candidate`` is already spent by one of ``existing``."""
    return any(outpoint == candidate for outpoint in existing)


def build_contribution(
    psbt: BatchPsbt,
    participant: str,
    candidates: Iterable[UtxoCandidate],
    next_script: Callable[[], bytes],
    fee: int,
    role: FeeRole,
    max_count: int,
    uniform_amount: int | None = None,
    network_fee: int = 0,
) -> tuple[BatchPsbt, Contribution | None]:
    """
    Append one participant's contribution to the accumulator.

    Candidates are taken in the given order, skipping outpoints already in the
    accumulator, until ``max_count`` are selected or (uniform mode) their value
    reaches ``uniform_amount + fee``. A payer may also be charged
    ``network_fee``, which leaves the transaction as miner fee.

    Returns:
        The extended accumulator and the contribution, or the unchanged
        accumulator and None when nothing was selected.

    Raises:
        InsufficientFunds: the selection cannot settle the fee (payer) or
            cannot fund the uniform output
    """
    if max_count < 1:
        raise ValueError("max_count must be at least 1")
    if network_fee and role is not FeeRole.PAYER:
        raise ValueError("Only a payer contributes network fee")
    charge = fee + network_fee if role is FeeRole.PAYER else fee

    existing = list(psbt.outpoints)
    selected: list[UtxoCandidate] = []
    accumulated = 0

    for candidate in candidates:
        if is_duplicate_input(existing, candidate.outpoint):
            logger.debug(f"[{participant}] Skipping UTXO {candidate.outpoint} (already in batch)")
            continue

        logger.debug(f"[{participant}] Adding UTXO {candidate.outpoint} ({candidate.value:,} sats)")
        selected.append(candidate)
        existing.append(candidate.outpoint)
        accumulated += candidate.value

        if uniform_amount is not None and accumulated >= uniform_amount + fee:
            break
        if len(selected) >= max_count:
            break

    if not selected:
        if role is FeeRole.PAYER and charge > 0:
            raise InsufficientFunds(charge, 0, participant)
        logger.debug(f"[{participant}] No eligible UTXOs, nothing contributed")
        return psbt, None

    value = accumulated + role.sign * charge
    if value < 0:
        raise InsufficientFunds(charge, accumulated, participant)
    if uniform_amount is not None and value < uniform_amount:
        raise InsufficientFunds(uniform_amount - role.sign * fee, accumulated, participant)

    change_kind = OutputKind.CHANGE if role is FeeRole.PAYER else OutputKind.CONTRIBUTION
    outputs: list[tuple[TxOutput, PsbtOutput]] = []
    if uniform_amount is not None:
        outputs.append(
            (
                TxOutput(value=uniform_amount, scriptpubkey=next_script()),
                PsbtOutput(owner=participant, kind=OutputKind.UNIFORM),
            )
        )
        value -= uniform_amount
    if value > 0:
        outputs.append(
            (
                TxOutput(value=value, scriptpubkey=next_script()),
                PsbtOutput(owner=participant, kind=change_kind),
            )
        )

    result = psbt.extended(
        inputs=[(c.tx_input(), c.psbt_input()) for c in selected],
        outputs=outputs,
    )
    contribution = Contribution(
        participant=participant,
        utxos=[c.utxo for c in selected],
        fee=fee,
        role=role,
        outputs=[out for out, _ in outputs],
        uniform_amount=uniform_amount,
        network_fee=network_fee,
    )
    logger.info(
        f"[{participant}] Contributed {len(selected)} input(s) worth {accumulated:,} sats "
        f"as {role.value} (fee {fee:,}), {len(outputs)} output(s)"
    )
    return result, contribution


def relay_contribution(
    psbt_hex: str,
    participant: str,
    candidates: Iterable[UtxoCandidate],
    next_script: Callable[[], bytes],
    fee: int,
    role: FeeRole,
    max_count: int,
    uniform_amount: int | None = None,
    network_fee: int = 0,
) -> tuple[str, Contribution | None]:
    """
    Hex-transit variant of :func:`build_contribution`.

    Raises:
        DeserializationError: ``psbt_hex`` is not a valid PSBT
    """
    psbt = BatchPsbt.from_hex(psbt_hex)
    result, contribution = build_contribution(
        psbt,
        participant,
        candidates,
        next_script,
        fee,
        role,
        max_count,
        uniform_amount,
        network_fee,
    )
    return result.to_hex(), contribution
