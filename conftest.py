"""
Shared fixtures: a simulated chain and deterministic funded wallets.
"""

from __future__ import annotations

import pytest

from batchcore.models import NetworkType
from batchwallet.backends.memory import MemoryBackend
from batchwallet.wallet.service import WalletService
from coordinator.simulation import Simulation, create_simulation


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend(network=NetworkType.REGTEST)


@pytest.fixture
def regtest_wallet(sample_mnemonic: str, memory_backend: MemoryBackend) -> WalletService:
    return WalletService(sample_mnemonic, memory_backend, network="regtest", name="alice")


@pytest.fixture
def simulation() -> Simulation:
    """Initiator, receiver and five participants funded without jitter."""
    return create_simulation(participant_count=5, network=NetworkType.REGTEST, jitter=0.0)


async def sync_all(sim: Simulation) -> None:
    for wallet in sim.wallets:
        await wallet.sync()


@pytest.fixture
def sync_wallets():
    """Coroutine syncing every wallet of a simulation."""
    return sync_all
