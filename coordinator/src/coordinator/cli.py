"""
Command-line interface for the batch coordinator.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Annotated

import httpx
import typer
from loguru import logger

from batchcore.address import address_to_scriptpubkey
from batchcore.errors import BatchError, DeserializationError, RejectedByNetwork
from batchcore.models import NetworkType
from batchcore.psbt import BatchPsbt
from batchwallet.backends.bitcoin_core import BitcoinCoreBackend, RPCError
from batchwallet.wallet.service import WalletService

from coordinator.config import BatchConfig, OrderingPolicy, StrategyKind
from coordinator.engine import BatchCoordinator
from coordinator.simulation import DEFAULT_JITTER, MAX_PARTICIPANTS, run_simulation

app = typer.Typer(
    name="batch-coordinator",
    help="Batch coordinator - Assemble collaborative batch transactions",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def print_balances(before: dict[str, int], after: dict[str, int]) -> None:
    print(f"\n{'Wallet':<12} {'Before':>15} {'After':>15} {'Delta':>12}")
    print("-" * 57)
    for name, start in before.items():
        end = after.get(name, 0)
        print(f"{name:<12} {start:>15,} {end:>15,} {end - start:>+12,}")


@app.command()
def simulate(
    strategy: Annotated[
        StrategyKind, typer.Option("--strategy", "-s", help="Coordination strategy")
    ] = StrategyKind.SEQUENTIAL,
    participants: Annotated[
        int,
        typer.Option(
            "--participants", "-n", min=1, max=MAX_PARTICIPANTS, help="Number of participants"
        ),
    ] = 5,
    amount: Annotated[
        int, typer.Option("--amount", "-a", help="Recipient amount in sats")
    ] = 777_777,
    fee: Annotated[
        int, typer.Option("--fee", help="Fee credited to each participant in sats")
    ] = 77_777,
    fee_rate: Annotated[
        float, typer.Option("--fee-rate", help="Seed draft fee rate in sat/vB")
    ] = 20.0,
    max_utxos: Annotated[
        int, typer.Option("--max-utxos", help="UTXOs taken from each participant")
    ] = 2,
    uniform_amount: Annotated[
        int | None,
        typer.Option("--uniform-amount", help="Uniform output value (defaults to --amount)"),
    ] = None,
    rounds: Annotated[int, typer.Option("--rounds", help="Circulation rounds")] = 1,
    ordering: Annotated[
        OrderingPolicy, typer.Option("--ordering", help="UTXO ordering policy")
    ] = OrderingPolicy.WALLET,
    seed: Annotated[int | None, typer.Option("--seed", help="Funding jitter RNG seed")] = None,
    jitter: Annotated[
        float, typer.Option("--jitter", help="Relative funding jitter (0.15 = +/-15%)")
    ] = DEFAULT_JITTER,
    log_level: Annotated[str, typer.Option("--log-level", "-l", help="Log level")] = "INFO",
) -> None:
    """Run one batch on an in-memory chain with freshly funded wallets."""
    setup_logging(log_level)

    try:
        config = BatchConfig(
            strategy=strategy,
            network=NetworkType.REGTEST,
            recipient_amount=amount,
            fee_per_participant=fee,
            seed_fee_rate=fee_rate,
            max_utxos_per_participant=max_utxos,
            uniform_amount=uniform_amount,
            rounds=rounds,
            ordering=ordering,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    try:
        result, before, after = asyncio.run(
            run_simulation(config, participants, seed=seed, jitter=jitter)
        )
    except BatchError as e:
        logger.error(f"Simulation failed: {e}")
        raise typer.Exit(1)

    print(f"\nBatch txid: {result.txid}")
    print(
        f"Inputs: {len(result.transaction.inputs)}  Outputs: {len(result.transaction.outputs)}  "
        f"Size: {result.transaction.vsize} vB"
    )
    print(f"Network fee: {result.fee:,} sats ({result.fee_rate:.2f} sat/vB)")
    print(f"Participant fees reimbursed: {result.ledger.reimbursed:,} sats")
    print_balances(before, after)


@app.command()
def run(
    recipient: Annotated[str, typer.Option("--recipient", "-r", help="Recipient address")],
    initiator_mnemonic: Annotated[
        str,
        typer.Option(
            "--initiator-mnemonic", envvar="INITIATOR_MNEMONIC", help="Initiator mnemonic phrase"
        ),
    ],
    participant_mnemonics: Annotated[
        list[str] | None,
        typer.Option(
            "--participant-mnemonic",
            "-P",
            help="Participant mnemonic phrase (repeat for each participant)",
        ),
    ] = None,
    strategy: Annotated[
        StrategyKind, typer.Option("--strategy", "-s", help="Coordination strategy")
    ] = StrategyKind.SEQUENTIAL,
    amount: Annotated[
        int, typer.Option("--amount", "-a", help="Recipient amount in sats")
    ] = 777_777,
    fee: Annotated[
        int, typer.Option("--fee", help="Fee credited to each participant in sats")
    ] = 77_777,
    fee_rate: Annotated[
        float, typer.Option("--fee-rate", help="Seed draft fee rate in sat/vB")
    ] = 20.0,
    max_utxos: Annotated[
        int, typer.Option("--max-utxos", help="UTXOs taken from each participant")
    ] = 2,
    uniform_amount: Annotated[
        int | None,
        typer.Option("--uniform-amount", help="Uniform output value (defaults to --amount)"),
    ] = None,
    rounds: Annotated[int, typer.Option("--rounds", help="Circulation rounds")] = 1,
    ordering: Annotated[
        OrderingPolicy, typer.Option("--ordering", help="UTXO ordering policy")
    ] = OrderingPolicy.WALLET,
    network: Annotated[NetworkType, typer.Option("--network", help="Bitcoin network")] = (
        NetworkType.SIGNET
    ),
    rpc_url: Annotated[
        str,
        typer.Option(
            "--rpc-url",
            envvar="BITCOIN_RPC_URL",
            help="Bitcoin full node RPC URL",
        ),
    ] = "http://127.0.0.1:38332",
    rpc_user: Annotated[
        str,
        typer.Option("--rpc-user", envvar="BITCOIN_RPC_USER", help="Bitcoin full node RPC user"),
    ] = "",
    rpc_password: Annotated[
        str,
        typer.Option(
            "--rpc-password", envvar="BITCOIN_RPC_PASSWORD", help="Bitcoin full node RPC password"
        ),
    ] = "",
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Assemble and sign but do not broadcast")
    ] = False,
    log_level: Annotated[str, typer.Option("--log-level", "-l", help="Log level")] = "INFO",
) -> None:
    """Run one batch against a Bitcoin Core node."""
    setup_logging(log_level)

    try:
        recipient_script = address_to_scriptpubkey(recipient)
    except ValueError as e:
        logger.error(f"Invalid recipient address: {e}")
        raise typer.Exit(1)

    try:
        config = BatchConfig(
            strategy=strategy,
            network=network,
            recipient_amount=amount,
            fee_per_participant=fee,
            seed_fee_rate=fee_rate,
            max_utxos_per_participant=max_utxos,
            uniform_amount=uniform_amount,
            rounds=rounds,
            ordering=ordering,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    asyncio.run(
        _run_batch(
            config,
            recipient_script,
            initiator_mnemonic,
            participant_mnemonics or [],
            rpc_url,
            rpc_user,
            rpc_password,
            dry_run,
        )
    )


async def _run_batch(
    config: BatchConfig,
    recipient_script: bytes,
    initiator_mnemonic: str,
    participant_mnemonics: list[str],
    rpc_url: str,
    rpc_user: str,
    rpc_password: str,
    dry_run: bool,
) -> None:
    """Run a batch with wallets backed by one node."""
    backend = BitcoinCoreBackend(rpc_url=rpc_url, rpc_user=rpc_user, rpc_password=rpc_password)
    initiator = WalletService(initiator_mnemonic, backend, network=config.network, name="initiator")
    participants = [
        WalletService(mnemonic, backend, network=config.network, name=f"participant-{i}")
        for i, mnemonic in enumerate(participant_mnemonics, start=1)
    ]
    coordinator = BatchCoordinator(initiator, participants, backend, config)

    try:
        if dry_run:
            await coordinator.discover()
            psbt = coordinator.sign(coordinator.assemble(recipient_script))
            tx = coordinator.finalize(psbt)
            await backend.check_acceptance(tx.hex())
            logger.info(f"Dry run: node would accept {tx.txid}, not broadcasting")
            print(tx.hex())
            return

        result = await coordinator.run(recipient_script)
        print(result.txid)
    except RejectedByNetwork as e:
        logger.error(f"Node rejected the batch: {e.reason}")
        if coordinator.signed_tx is not None:
            logger.info(f"Signed transaction kept for resubmission: {coordinator.signed_tx.hex()}")
        raise typer.Exit(1)
    except BatchError as e:
        logger.error(f"Batch failed: {e}")
        raise typer.Exit(1)
    except RPCError as e:
        logger.error(f"Node RPC error: {e}")
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        logger.error(f"Cannot reach node at {rpc_url}: {e}")
        raise typer.Exit(1)
    finally:
        await backend.close()


@app.command()
def decode(
    psbt: Annotated[str, typer.Argument(help="PSBT in hex or base64")],
    network: Annotated[NetworkType, typer.Option("--network", help="Bitcoin network")] = (
        NetworkType.SIGNET
    ),
) -> None:
    """Print a JSON summary of a batch PSBT."""
    try:
        try:
            decoded = BatchPsbt.from_hex(psbt)
        except DeserializationError:
            decoded = BatchPsbt.from_base64(psbt)
    except DeserializationError as e:
        logger.error(f"Cannot decode PSBT: {e}")
        raise typer.Exit(1)

    print(decoded.summary(network).model_dump_json(indent=2))


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
