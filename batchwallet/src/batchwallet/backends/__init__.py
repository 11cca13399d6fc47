"""
Blockchain backend implementations.

Available backends:
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (no wallet, uses scantxoutset)
- MemoryBackend: In-process simulated chain for dry runs and tests
"""

from batchwallet.backends.base import UTXO, BlockchainBackend, FundingTransaction
from batchwallet.backends.bitcoin_core import BitcoinCoreBackend
from batchwallet.backends.memory import MemoryBackend

__all__ = [
    "BitcoinCoreBackend",
    "BlockchainBackend",
    "MemoryBackend",
    "FundingTransaction",
    "UTXO",
]
