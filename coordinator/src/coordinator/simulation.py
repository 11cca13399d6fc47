"""
Self-contained batch simulation on the in-memory chain.

Creates deterministic wallets (initiator, receiver and N participants), funds
them from the simulated faucet, runs one batch with the configured strategy
and reports balances before and after.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from loguru import logger

from batchcore.models import NetworkType
from batchwallet.backends.memory import MemoryBackend
from batchwallet.wallet.bip32 import mnemonic_from_entropy
from batchwallet.wallet.service import WalletService

from coordinator.config import BatchConfig
from coordinator.engine import BatchCoordinator, BatchResult

INITIATOR_SEED_BYTE = 0x00
RECEIVER_SEED_BYTE = 0xFF
MAX_PARTICIPANTS = 20

# (amount per UTXO, number of UTXOs)
PARTICIPANT_FUNDING = (1_000_000, 10)
INITIATOR_FUNDING = (10_000_000, 4)
DEFAULT_JITTER = 0.15


def make_wallet(
    seed_byte: int, backend: MemoryBackend, network: NetworkType | str, name: str
) -> WalletService:
    """Wallet whose mnemonic is derived from 16 repetitions of ``seed_byte``."""
    mnemonic = mnemonic_from_entropy(bytes([seed_byte]) * 16)
    return WalletService(mnemonic, backend, network=network, name=name)


def participant_name(index: int) -> str:
    return f"node-{index:02d}"


@dataclass
class Simulation:
    backend: MemoryBackend
    initiator: WalletService
    receiver: WalletService
    participants: list[WalletService] = field(default_factory=list)

    @property
    def wallets(self) -> list[WalletService]:
        return [self.initiator, self.receiver, *self.participants]

    async def balances(self) -> dict[str, int]:
        result = {}
        for wallet in self.wallets:
            await wallet.sync()
            result[wallet.name] = wallet.get_balance()
        return result


def fund_wallet(
    backend: MemoryBackend,
    wallet: WalletService,
    amount: int,
    count: int,
    rng: random.Random,
    jitter: float = DEFAULT_JITTER,
) -> None:
    """Pay ``count`` outputs of ``amount`` +/- ``jitter`` to fresh receive addresses."""
    payments = []
    for _ in range(count):
        variation = rng.uniform(-jitter, jitter) if jitter else 0.0
        payments.append((wallet.reveal_next_address(), round(amount * (1 + variation))))
    backend.fund_many(payments)


def create_simulation(
    participant_count: int = 5,
    network: NetworkType | str = NetworkType.SIGNET,
    seed: int | None = None,
    jitter: float = DEFAULT_JITTER,
    backend: MemoryBackend | None = None,
) -> Simulation:
    if not 1 <= participant_count <= MAX_PARTICIPANTS:
        raise ValueError(f"Participant count must be between 1 and {MAX_PARTICIPANTS}")

    backend = backend or MemoryBackend(network=network)
    rng = random.Random(seed)

    initiator = make_wallet(INITIATOR_SEED_BYTE, backend, network, "initiator")
    receiver = make_wallet(RECEIVER_SEED_BYTE, backend, network, "receiver")
    participants = [
        make_wallet(index, backend, network, participant_name(index))
        for index in range(1, participant_count + 1)
    ]

    for wallet in participants:
        fund_wallet(backend, wallet, *PARTICIPANT_FUNDING, rng=rng, jitter=jitter)
    fund_wallet(backend, initiator, *INITIATOR_FUNDING, rng=rng, jitter=0.0)
    backend.mine(3)

    logger.info(f"Simulation ready: {participant_count} participant(s) funded")
    return Simulation(
        backend=backend, initiator=initiator, receiver=receiver, participants=participants
    )


async def run_simulation(
    config: BatchConfig,
    participant_count: int = 5,
    seed: int | None = None,
    jitter: float = DEFAULT_JITTER,
) -> tuple[BatchResult, dict[str, int], dict[str, int]]:
    """Run one batch end to end; returns (result, balances before, balances after)."""
    sim = create_simulation(participant_count, config.network, seed=seed, jitter=jitter)
    before = await sim.balances()

    coordinator = BatchCoordinator(sim.initiator, sim.participants, sim.backend, config)
    result = await coordinator.run(sim.receiver.reveal_next_output_script())

    sim.backend.mine(1)
    after = await sim.balances()
    return result, before, after
