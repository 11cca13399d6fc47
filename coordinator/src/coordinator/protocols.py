"""
Collaborator interfaces the coordinator depends on.

Any object with these methods can take part in a batch: the bundled
``WalletService`` and chain backends satisfy them, and tests substitute
mocks.
"""

from __future__ import annotations

from typing import Protocol

from batchcore.psbt import BatchPsbt
from batchcore.tx import Transaction
from batchwallet.wallet.models import UTXOInfo


class WalletLike(Protocol):
    """A participant's wallet."""

    name: str

    async def sync(self) -> list[UTXOInfo]: ...

    def list_unspent(self) -> list[UTXOInfo]: ...

    def reveal_next_output_script(self, change: int = 0) -> bytes: ...

    def lookup_funding_transaction(self, txid: str) -> Transaction | None: ...

    def sign(self, psbt: BatchPsbt) -> BatchPsbt:
        """Sign owned inputs; raises SigningError if one cannot be satisfied."""
        ...


class BroadcastBackend(Protocol):
    """Submits a finished transaction to the network."""

    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Returns the txid; raises RejectedByNetwork with the node's reason."""
        ...
