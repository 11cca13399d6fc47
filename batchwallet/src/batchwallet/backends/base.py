"""
Chain access interface used by wallets and the coordinator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from batchcore.tx import Transaction


@dataclass
class UTXO:
    """An unspent output paying one of the queried addresses."""

    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    scriptpubkey: str
    height: int | None = None


@dataclass
class FundingTransaction:
    """A transaction as served by the chain, used as proof-of-funds."""

    txid: str
    hex: str
    confirmations: int
    block_height: int | None = None

    def decode(self) -> Transaction:
        """
        Raises:
            DeserializationError: the node served something unparsable
        """
        return Transaction.from_hex(self.hex)


class BlockchainBackend(ABC):
    """
    Read and broadcast access to one chain.
    Implementations never hold keys; wallets derive and sign locally.
    """

    @abstractmethod
    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        """Unspent outputs paying any of ``addresses``"""

    @abstractmethod
    async def get_transaction(self, txid: str) -> FundingTransaction | None:
        """Full transaction by txid, None when unknown"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Current tip height"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """
        Submit a signed transaction and return its txid.

        Raises:
            RejectedByNetwork: the node refused the transaction
        """

    async def check_acceptance(self, tx_hex: str) -> None:
        """
        Ask whether ``tx_hex`` would be accepted without submitting it.

        Raises:
            RejectedByNetwork: the transaction would be refused
        """

    async def close(self) -> None:
        """Release connections"""
