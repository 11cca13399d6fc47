"""
Coordination strategies.

Each strategy is a function from a BatchContext to a finished, unsigned
accumulator and the ledger describing it. Strategies only differ in how the
accumulator travels between participants and who pays whom; they all start
from the same seed draft and use the same contribution builder.

    sequential      circulate the accumulator, initiator tops up at the end
    merge           participants draft their own transactions, initiator concatenates
    foreign-input   initiator spends every participant UTXO as a foreign input
    hex-relay       sequential, with the accumulator serialized between hops
    pool            participants hand UTXOs and a script to the initiator up front
    uniform-output  sequential, each participant also creates an equal-valued output
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from loguru import logger

from batchcore.constants import P2WPKH_SATISFACTION_WEIGHT
from batchcore.errors import BatchError, InsufficientFunds
from batchcore.psbt import BatchPsbt
from batchcore.tx import estimate_vsize

from coordinator.config import BatchConfig, StrategyKind
from coordinator.contribution import (
    FeeRole,
    UtxoCandidate,
    build_contribution,
    is_duplicate_input,
    gather_candidates,
    order_candidates,
    relay_contribution,
)
from coordinator.draft import TxDraftBuilder
from coordinator.ledger import FeeLedger
from coordinator.protocols import WalletLike

StrategyResult = tuple[BatchPsbt, FeeLedger]


@dataclass
class BatchContext:
    initiator: WalletLike
    participants: list[WalletLike]
    config: BatchConfig
    recipient_script: bytes

    def candidates(self, wallet: WalletLike) -> list[UtxoCandidate]:
        return order_candidates(gather_candidates(wallet), self.config.ordering)


@dataclass
class PoolEntry:
    candidates: list[UtxoCandidate]
    scriptpubkey: bytes


def build_seed(ctx: BatchContext) -> StrategyResult:
    """Initiator's draft: the recipient output funded by its first UTXOs."""
    config = ctx.config
    builder = (
        TxDraftBuilder(ctx.initiator, config.ordering, config.dust_threshold)
        .add_recipient(ctx.recipient_script, config.recipient_amount)
        .fee_rate(config.seed_fee_rate)
        .nlocktime(0)
        .manually_selected_only()
    )
    for candidate in ctx.candidates(ctx.initiator)[: config.seed_utxo_count]:
        builder.add_utxo(candidate.outpoint)

    draft = builder.finish()
    ledger = FeeLedger()
    ledger.record_draft(ctx.initiator.name, draft.fee)
    logger.info(
        f"Seed draft: {config.recipient_amount:,} sats to recipient from "
        f"{draft.selection.input_count} UTXO(s), fee {draft.fee:,} sats"
    )
    return draft.psbt, ledger


def _contribute(
    ctx: BatchContext,
    wallet: WalletLike,
    psbt: BatchPsbt,
    ledger: FeeLedger,
    uniform_amount: int | None = None,
) -> BatchPsbt:
    try:
        psbt, contribution = build_contribution(
            psbt,
            wallet.name,
            ctx.candidates(wallet),
            wallet.reveal_next_output_script,
            ctx.config.fee_per_participant,
            FeeRole.NON_PAYER,
            ctx.config.max_utxos_per_participant,
            uniform_amount,
        )
    except InsufficientFunds as e:
        logger.warning(f"Skipping {wallet.name}: {e}")
        return psbt
    if contribution is not None:
        ledger.record(contribution)
    return psbt


def _relay(ctx: BatchContext, wallet: WalletLike, psbt_hex: str, ledger: FeeLedger) -> str:
    try:
        psbt_hex, contribution = relay_contribution(
            psbt_hex,
            wallet.name,
            ctx.candidates(wallet),
            wallet.reveal_next_output_script,
            ctx.config.fee_per_participant,
            FeeRole.NON_PAYER,
            ctx.config.max_utxos_per_participant,
        )
    except InsufficientFunds as e:
        logger.warning(f"Skipping {wallet.name}: {e}")
        return psbt_hex
    if contribution is not None:
        ledger.record(contribution)
    return psbt_hex


def _top_up_network_fee(ctx: BatchContext, psbt: BatchPsbt, ledger: FeeLedger) -> int:
    """Network fee the drafts still owe once the top-up itself is in the batch."""
    existing = psbt.outpoints
    available = [
        c for c in ctx.candidates(ctx.initiator) if not is_duplicate_input(existing, c.outpoint)
    ]
    input_count = len(psbt.tx.inputs) + max(1, min(len(available), ctx.config.topup_max_utxos))
    scripts = [out.scriptpubkey for out in psbt.tx.outputs]
    scripts.append(b"\x00\x14" + bytes(20))
    vsize = estimate_vsize([P2WPKH_SATISFACTION_WEIGHT] * input_count, scripts)
    required = math.ceil(ctx.config.min_relay_fee_rate * vsize)
    return max(0, required - ledger.network_fee)


def _top_up(ctx: BatchContext, psbt: BatchPsbt, ledger: FeeLedger) -> BatchPsbt:
    """
    Initiator pays every reimbursement recorded so far, plus whatever network
    fee the grown transaction needs beyond the seed's. Failure is fatal.
    """
    total = ledger.reimbursed
    extra = _top_up_network_fee(ctx, psbt, ledger)
    if total == 0 and extra == 0:
        logger.info("No participant contributed, no top-up needed")
        return psbt

    logger.info(
        f"Initiator top-up: paying {total:,} sats of participant fees "
        f"and {extra:,} sats of network fee"
    )
    psbt, contribution = build_contribution(
        psbt,
        ctx.initiator.name,
        ctx.candidates(ctx.initiator),
        lambda: ctx.initiator.reveal_next_output_script(1),
        total,
        FeeRole.PAYER,
        ctx.config.topup_max_utxos,
        network_fee=extra,
    )
    if contribution is not None:
        ledger.record(contribution)
    return psbt


def _visits(ctx: BatchContext) -> Iterable[WalletLike]:
    for round_number in range(ctx.config.rounds):
        if ctx.config.rounds > 1:
            logger.debug(f"Circulation round {round_number + 1}/{ctx.config.rounds}")
        yield from ctx.participants


def sequential(ctx: BatchContext) -> StrategyResult:
    psbt, ledger = build_seed(ctx)
    for wallet in _visits(ctx):
        psbt = _contribute(ctx, wallet, psbt, ledger)
    return _top_up(ctx, psbt, ledger), ledger


def merge_fragments(base: BatchPsbt, fragments: Iterable[BatchPsbt]) -> BatchPsbt:
    """
    Concatenate fragment inputs and outputs onto ``base``, metadata included.

    Raises:
        DuplicateInput: two fragments spend the same outpoint
        BatchError: a fragment has a different locktime
    """
    result = base
    for fragment in fragments:
        if fragment.tx.locktime != base.tx.locktime:
            raise BatchError(
                f"Fragment locktime {fragment.tx.locktime} != batch locktime {base.tx.locktime}"
            )
        result = result.extended(
            inputs=zip(fragment.tx.inputs, fragment.inputs),
            outputs=zip(fragment.tx.outputs, fragment.outputs),
        )
    return result


def merge(ctx: BatchContext) -> StrategyResult:
    psbt, ledger = build_seed(ctx)
    config = ctx.config

    fragments = []
    for wallet in ctx.participants:
        builder = (
            TxDraftBuilder(wallet, config.ordering, config.dust_threshold)
            .add_recipient(wallet.reveal_next_output_script(), config.merge_amount, wallet.name)
            .fee_rate(config.seed_fee_rate)
            .nlocktime(0)
            .manually_selected_only()
        )
        for candidate in ctx.candidates(wallet)[: config.max_utxos_per_participant]:
            builder.add_utxo(candidate.outpoint)
        try:
            draft = builder.finish()
        except InsufficientFunds as e:
            logger.warning(f"Skipping {wallet.name}: {e}")
            continue
        ledger.record_draft(wallet.name, draft.fee)
        fragments.append(draft.psbt)
        logger.debug(f"{wallet.name}: fragment with {len(draft.psbt.tx.inputs)} input(s)")

    logger.info(f"Merging {len(fragments)} fragment(s) into the seed")
    return merge_fragments(psbt, fragments), ledger


def foreign_input(ctx: BatchContext) -> StrategyResult:
    """
    Initiator builds one transaction spending every participant UTXO.

    Participants receive nothing back: all surplus goes to the initiator's
    change. Only useful when participants fund the initiator on purpose.
    """
    config = ctx.config
    builder = (
        TxDraftBuilder(ctx.initiator, config.ordering, config.dust_threshold)
        .add_recipient(ctx.recipient_script, config.recipient_amount)
        .fee_rate(config.seed_fee_rate)
        .nlocktime(0)
    )
    count = 0
    for wallet in ctx.participants:
        for candidate in ctx.candidates(wallet):
            builder.add_foreign_utxo(
                candidate.outpoint, candidate.psbt_input(), P2WPKH_SATISFACTION_WEIGHT
            )
            count += 1
    logger.info(f"Embedding {count} foreign UTXO(s) from {len(ctx.participants)} participant(s)")

    draft = builder.finish()
    ledger = FeeLedger()
    ledger.record_draft(ctx.initiator.name, draft.fee)
    return draft.psbt, ledger


def hex_relay(ctx: BatchContext) -> StrategyResult:
    seed, ledger = build_seed(ctx)
    psbt_hex = seed.to_hex()
    for wallet in _visits(ctx):
        logger.debug(f"Relaying {len(psbt_hex) // 2} byte PSBT to {wallet.name}")
        psbt_hex = _relay(ctx, wallet, psbt_hex, ledger)

    total = ledger.reimbursed
    extra = _top_up_network_fee(ctx, BatchPsbt.from_hex(psbt_hex), ledger)
    if total > 0 or extra > 0:
        logger.info(
            f"Initiator top-up: paying {total:,} sats of participant fees "
            f"and {extra:,} sats of network fee"
        )
        psbt_hex, contribution = relay_contribution(
            psbt_hex,
            ctx.initiator.name,
            ctx.candidates(ctx.initiator),
            lambda: ctx.initiator.reveal_next_output_script(1),
            total,
            FeeRole.PAYER,
            ctx.config.topup_max_utxos,
            network_fee=extra,
        )
        if contribution is not None:
            ledger.record(contribution)
    return BatchPsbt.from_hex(psbt_hex), ledger


def collect_pool(ctx: BatchContext) -> dict[str, PoolEntry]:
    """Discovery phase of the pool strategy; the accumulator is not touched."""
    pool = {}
    for wallet in ctx.participants:
        pool[wallet.name] = PoolEntry(
            candidates=ctx.candidates(wallet),
            scriptpubkey=wallet.reveal_next_output_script(),
        )
    return pool


def apply_pool(
    psbt: BatchPsbt,
    ledger: FeeLedger,
    pool: dict[str, PoolEntry],
    fee: int,
    max_count: int,
) -> BatchPsbt:
    """Append one capped contribution per pool entry, in participant name order."""
    for name in sorted(pool):
        entry = pool[name]
        try:
            psbt, contribution = build_contribution(
                psbt,
                name,
                entry.candidates,
                lambda entry=entry: entry.scriptpubkey,
                fee,
                FeeRole.NON_PAYER,
                max_count,
            )
        except InsufficientFunds as e:
            logger.warning(f"Skipping pool entry {name}: {e}")
            continue
        if contribution is not None:
            ledger.record(contribution)
    return psbt


def pool(ctx: BatchContext) -> StrategyResult:
    psbt, ledger = build_seed(ctx)
    entries = collect_pool(ctx)
    logger.info(f"Pool collected {sum(len(e.candidates) for e in entries.values())} UTXO(s)")
    psbt = apply_pool(
        psbt,
        ledger,
        entries,
        ctx.config.fee_per_participant,
        ctx.config.max_utxos_per_participant,
    )
    return _top_up(ctx, psbt, ledger), ledger


def uniform_output(ctx: BatchContext) -> StrategyResult:
    psbt, ledger = build_seed(ctx)
    for wallet in _visits(ctx):
        psbt = _contribute(ctx, wallet, psbt, ledger, uniform_amount=ctx.config.target_amount)
    return _top_up(ctx, psbt, ledger), ledger


STRATEGIES: dict[StrategyKind, Callable[[BatchContext], StrategyResult]] = {
    StrategyKind.SEQUENTIAL: sequential,
    StrategyKind.MERGE: merge,
    StrategyKind.FOREIGN_INPUT: foreign_input,
    StrategyKind.HEX_RELAY: hex_relay,
    StrategyKind.POOL: pool,
    StrategyKind.UNIFORM_OUTPUT: uniform_output,
}


def run_strategy(kind: StrategyKind, ctx: BatchContext) -> StrategyResult:
    logger.info(f"Running {kind.value} strategy with {len(ctx.participants)} participant(s)")
    return STRATEGIES[kind](ctx)
