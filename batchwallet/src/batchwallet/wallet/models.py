"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from batchcore.tx import OutPoint


@dataclass
class UTXOInfo:
    """An unspent output owned by the wallet, with its derivation path."""

    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    scriptpubkey: str
    path: str
    height: int | None = None

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)

    @property
    def chain(self) -> int:
        """0 for receive, 1 for change"""
        return int(self.path.split("/")[-2])

    @property
    def index(self) -> int:
        return int(self.path.split("/")[-1])

    @property
    def is_change(self) -> bool:
        return self.chain == 1


@dataclass
class CoinSelection:
    """Inputs a draft spends and what is left over."""

    utxos: list[UTXOInfo]
    total_value: int
    change_value: int
    fee: int
    foreign: list[OutPoint] = field(default_factory=list)

    @property
    def input_count(self) -> int:
        return len(self.utxos) + len(self.foreign)
