"""
In-process simulated chain.

Keeps a UTXO set, a transaction index and a block height in memory and applies
the subset of mempool policy a batch transaction has to pass: inputs exist and
are unspent, no input is spent twice, value is conserved, the fee meets the
minimum relay rate and every P2WPKH witness carries a valid signature.

Used for dry runs of whole batches and as the chain in tests.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from loguru import logger

from batchcore.address import address_to_scriptpubkey, is_p2wpkh
from batchcore.constants import MIN_RELAY_FEE_RATE
from batchcore.errors import DeserializationError, RejectedByNetwork
from batchcore.models import NetworkType
from batchcore.tx import OutPoint, Transaction, TxInput, TxOutput
from batchwallet.backends.base import UTXO, BlockchainBackend, FundingTransaction
from batchwallet.wallet.signing import verify_p2wpkh_input


@dataclass
class _Coin:
    output: TxOutput
    address: str
    height: int | None


class MemoryBackend(BlockchainBackend):
    """Simulated chain with mempool acceptance checks."""

    def __init__(
        self,
        network: NetworkType | str = NetworkType.REGTEST,
        min_relay_fee_rate: float = MIN_RELAY_FEE_RATE,
        verify_signatures: bool = True,
        start_height: int = 200,
    ):
        self.network = NetworkType(network)
        self.min_relay_fee_rate = min_relay_fee_rate
        self.verify_signatures = verify_signatures
        self.height = start_height
        self.transactions: dict[str, Transaction] = {}
        self.tx_heights: dict[str, int | None] = {}
        self.coins: dict[OutPoint, _Coin] = {}
        self.broadcasts: list[str] = []
        self._address_by_script: dict[bytes, str] = {}
        self._faucet_nonce = 0

    # ------------------------------------------------------------------
    # Test/simulation helpers
    # ------------------------------------------------------------------

    def fund_many(self, payments: list[tuple[str, int]], confirm: bool = True) -> Transaction:
        """Create coins out of thin air: one transaction paying every (address, amount)."""
        self._faucet_nonce += 1
        faucet_txid = hashlib.sha256(b"faucet" + self._faucet_nonce.to_bytes(8, "big")).hexdigest()
        outputs = []
        for address, amount in payments:
            script = address_to_scriptpubkey(address)
            self._address_by_script[script] = address
            outputs.append(TxOutput(value=amount, scriptpubkey=script))

        # Faucet inputs carry a dummy witness so the funding tx is a real segwit tx
        tx = Transaction(
            inputs=[TxInput(txid=faucet_txid, vout=0, witness=[b"\x00"])],
            outputs=outputs,
        )
        self._accept(tx, confirm)
        logger.debug(f"Faucet tx {tx.txid[:16]}... paid {len(payments)} outputs")
        return tx

    def fund(self, address: str, amount: int, confirm: bool = True) -> OutPoint:
        tx = self.fund_many([(address, amount)], confirm=confirm)
        return OutPoint(tx.txid, 0)

    def mine(self, blocks: int = 1) -> int:
        """Advance the tip, confirming everything in the mempool."""
        self.height += blocks
        for txid, height in self.tx_heights.items():
            if height is None:
                self.tx_heights[txid] = self.height - blocks + 1
        for coin in self.coins.values():
            if coin.height is None:
                coin.height = self.height - blocks + 1
        return self.height

    def is_unspent(self, outpoint: OutPoint) -> bool:
        return outpoint in self.coins

    def balance(self, address: str) -> int:
        return sum(coin.output.value for coin in self.coins.values() if coin.address == address)

    def _accept(self, tx: Transaction, confirm: bool) -> None:
        height = self.height if confirm else None
        txid = tx.txid
        for txin in tx.inputs:
            self.coins.pop(txin.outpoint, None)
        for vout, out in enumerate(tx.outputs):
            address = self._address_by_script.get(out.scriptpubkey, "")
            self.coins[OutPoint(txid, vout)] = _Coin(output=out, address=address, height=height)
        self.transactions[txid] = tx
        self.tx_heights[txid] = height

    def _confirmations(self, height: int | None) -> int:
        return 0 if height is None else self.height - height + 1

    # ------------------------------------------------------------------
    # BlockchainBackend
    # ------------------------------------------------------------------

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        wanted: dict[bytes, str] = {}
        for address in addresses:
            script = address_to_scriptpubkey(address)
            self._address_by_script[script] = address
            wanted[script] = address

        utxos = []
        for outpoint, coin in self.coins.items():
            address = wanted.get(coin.output.scriptpubkey)
            if address is None:
                continue
            utxos.append(
                UTXO(
                    txid=outpoint.txid,
                    vout=outpoint.vout,
                    value=coin.output.value,
                    address=address,
                    confirmations=self._confirmations(coin.height),
                    scriptpubkey=coin.output.scriptpubkey.hex(),
                    height=coin.height,
                )
            )
        return utxos

    async def get_transaction(self, txid: str) -> FundingTransaction | None:
        tx = self.transactions.get(txid)
        if tx is None:
            return None
        height = self.tx_heights.get(txid)
        return FundingTransaction(
            txid=txid,
            hex=tx.hex(),
            confirmations=self._confirmations(height),
            block_height=height,
        )

    async def get_block_height(self) -> int:
        return self.height

    async def check_acceptance(self, tx_hex: str) -> None:
        self.validate(self._decode(tx_hex))

    async def broadcast_transaction(self, tx_hex: str) -> str:
        tx = self._decode(tx_hex)
        self.validate(tx)
        self._accept(tx, confirm=False)
        self.broadcasts.append(tx.txid)
        logger.info(f"Accepted transaction {tx.txid} into simulated mempool")
        return tx.txid

    @staticmethod
    def _decode(tx_hex: str) -> Transaction:
        try:
            return Transaction.from_hex(tx_hex)
        except DeserializationError as e:
            raise RejectedByNetwork(f"TX decode failed: {e}") from e

    def validate(self, tx: Transaction) -> None:
        """
        Apply mempool policy to ``tx``.

        Raises:
            RejectedByNetwork: with a node-style reject reason
        """
        txid = tx.txid
        if not tx.inputs:
            raise RejectedByNetwork("bad-txns-vin-empty", txid)
        if not tx.outputs:
            raise RejectedByNetwork("bad-txns-vout-empty", txid)
        if txid in self.transactions:
            raise RejectedByNetwork("txn-already-known", txid)

        outpoints = [txin.outpoint for txin in tx.inputs]
        if len(set(outpoints)) != len(outpoints):
            raise RejectedByNetwork("bad-txns-inputs-duplicate", txid)

        spent: list[TxOutput] = []
        for outpoint in outpoints:
            coin = self.coins.get(outpoint)
            if coin is None:
                raise RejectedByNetwork("bad-txns-inputs-missingorspent", txid)
            spent.append(coin.output)

        total_in = sum(out.value for out in spent)
        total_out = tx.total_output_value()
        if total_in < total_out:
            raise RejectedByNetwork("bad-txns-in-belowout", txid)

        fee = total_in - total_out
        if fee < self.min_relay_fee_rate * tx.vsize:
            raise RejectedByNetwork(
                f"min relay fee not met, {fee} < {self.min_relay_fee_rate * tx.vsize:.0f}", txid
            )

        if not self.verify_signatures:
            return
        for index, coin_out in enumerate(spent):
            if not is_p2wpkh(coin_out.scriptpubkey):
                raise RejectedByNetwork(
                    "non-mandatory-script-verify-flag (unsupported script)", txid
                )
            if not verify_p2wpkh_input(tx, index, coin_out.scriptpubkey, coin_out.value):
                raise RejectedByNetwork(
                    f"mandatory-script-verify-flag-failed (input {index})", txid
                )
