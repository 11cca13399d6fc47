"""
Batch coordinator: runs one batch from discovery to broadcast.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from batchcore.psbt import BatchPsbt
from batchcore.tx import Transaction

from coordinator.config import BatchConfig
from coordinator.ledger import FeeLedger
from coordinator.protocols import BroadcastBackend, WalletLike
from coordinator.strategies import BatchContext, run_strategy


class BatchState(str, Enum):
    """Batch lifecycle states."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    ASSEMBLING = "assembling"
    SIGNING = "signing"
    FINALIZING = "finalizing"
    BROADCASTING = "broadcasting"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class BatchResult:
    txid: str
    psbt: BatchPsbt
    transaction: Transaction
    ledger: FeeLedger

    @property
    def fee(self) -> int:
        return self.ledger.network_fee

    @property
    def fee_rate(self) -> float:
        return self.fee / self.transaction.vsize


class BatchCoordinator:
    """
    Drives the initiator's side of a batch.

    Assembly and signing are strictly sequential; only wallet discovery runs
    concurrently. The signed transaction is kept after a failed broadcast so
    the caller can resubmit it.
    """

    def __init__(
        self,
        initiator: WalletLike,
        participants: list[WalletLike],
        backend: BroadcastBackend,
        config: BatchConfig | None = None,
    ):
        names = [initiator.name] + [p.name for p in participants]
        if len(set(names)) != len(names):
            raise ValueError(f"Participant names must be unique: {names}")

        self.initiator = initiator
        self.participants = participants
        self.backend = backend
        self.config = config or BatchConfig()

        self.state = BatchState.IDLE
        self.psbt: BatchPsbt | None = None
        self.ledger: FeeLedger | None = None
        self.signed_tx: Transaction | None = None
        self.txid: str | None = None

    @property
    def wallets(self) -> list[WalletLike]:
        return [self.initiator, *self.participants]

    async def discover(self) -> None:
        """Sync every wallet with the chain."""
        self.state = BatchState.DISCOVERING
        logger.info(f"Syncing {len(self.wallets)} wallet(s)...")
        await asyncio.gather(*(wallet.sync() for wallet in self.wallets))

    def assemble(self, recipient_script: bytes) -> BatchPsbt:
        """
        Build the unsigned batch with the configured strategy and verify its ledger.

        Raises:
            InsufficientFunds, DuplicateInput, FeeImbalance, DeserializationError
        """
        psbt, _ = self._assemble(recipient_script)
        return psbt

    def _assemble(self, recipient_script: bytes) -> tuple[BatchPsbt, FeeLedger]:
        self.state = BatchState.ASSEMBLING
        ctx = BatchContext(
            initiator=self.initiator,
            participants=self.participants,
            config=self.config,
            recipient_script=recipient_script,
        )
        psbt, ledger = run_strategy(self.config.strategy, ctx)
        ledger.verify(psbt)
        self.psbt = psbt
        self.ledger = ledger
        return psbt, ledger

    def sign(self, psbt: BatchPsbt) -> BatchPsbt:
        """Every participant signs, then the initiator."""
        self.state = BatchState.SIGNING
        for wallet in [*self.participants, self.initiator]:
            psbt = wallet.sign(psbt)
        self.psbt = psbt
        return psbt

    def finalize(self, psbt: BatchPsbt) -> Transaction:
        """
        Extract the network transaction.

        Raises:
            SigningError: an input is still unsigned
        """
        self.state = BatchState.FINALIZING
        tx = psbt.extract_tx()
        fee = psbt.fee()
        fee_rate = fee / tx.vsize
        if fee_rate < self.config.min_relay_fee_rate:
            logger.warning(
                f"Fee rate {fee_rate:.2f} sat/vB is below the minimum relay rate "
                f"{self.config.min_relay_fee_rate} sat/vB; the network may reject it"
            )
        logger.info(
            f"Final transaction {tx.txid}: {len(tx.inputs)} inputs, {len(tx.outputs)} outputs, "
            f"{tx.vsize} vB, fee {fee:,} sats ({fee_rate:.2f} sat/vB)"
        )
        self.signed_tx = tx
        return tx

    async def broadcast(self, tx: Transaction | None = None) -> str:
        """
        Submit the signed transaction. Never retries.

        Raises:
            RejectedByNetwork: the backend refused it; ``signed_tx`` stays set
        """
        tx = tx or self.signed_tx
        if tx is None:
            raise ValueError("No signed transaction to broadcast")
        self.state = BatchState.BROADCASTING
        txid = await self.backend.broadcast_transaction(tx.hex())
        self.txid = txid
        return txid

    async def run(self, recipient_script: bytes) -> BatchResult:
        """Discover, assemble, sign, finalize and broadcast one batch."""
        try:
            logger.info(f"Phase 1: Discovering participants ({self.config.strategy.value})...")
            await self.discover()

            logger.info("Phase 2: Assembling batch...")
            psbt, ledger = self._assemble(recipient_script)

            logger.info("Phase 3: Collecting signatures...")
            psbt = self.sign(psbt)

            logger.info("Phase 4: Finalizing...")
            tx = self.finalize(psbt)

            logger.info("Phase 5: Broadcasting transaction...")
            txid = await self.broadcast(tx)

            self.state = BatchState.COMPLETE
            logger.info(f"Batch COMPLETE! txid: {txid}")
            return BatchResult(txid=txid, psbt=psbt, transaction=tx, ledger=ledger)

        except Exception as e:
            logger.error(f"Batch failed in {self.state.value}: {e}")
            self.state = BatchState.FAILED
            raise
