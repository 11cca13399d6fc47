"""
Batch participant wallet service.
"""

from __future__ import annotations

from loguru import logger

from batchcore.errors import DeserializationError, SigningError
from batchcore.models import NetworkType
from batchcore.psbt import BatchPsbt
from batchcore.tx import Transaction
from batchwallet.backends.base import BlockchainBackend
from batchwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from batchwallet.wallet.models import UTXOInfo
from batchwallet.wallet.signing import (
    create_p2wpkh_script_code,
    create_witness_stack,
    sign_p2wpkh_input,
)


class WalletService:
    """
    Single-account BIP84 hierarchical deterministic wallet.

    Derivation path: m/84'/{coin}'/{account}'/{change}/{index}
    - change: 0 (external/receive), 1 (internal/change)
    - index: address index

    Fresh output scripts are handed out through a per-chain cursor that only
    moves forward, so two contributions never share a script.
    """

    def __init__(
        self,
        mnemonic: str,
        backend: BlockchainBackend,
        network: NetworkType | str = NetworkType.MAINNET,
        gap_limit: int = 20,
        name: str = "wallet",
        account: int = 0,
        passphrase: str = "",
    ):
        self.backend = backend
        self.network = NetworkType(network)
        self.gap_limit = gap_limit
        self.name = name

        self.master_key = HDKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))

        coin_type = 0 if self.network == NetworkType.MAINNET else 1
        self.root_path = f"m/84'/{coin_type}'/{account}'"
        account_key = self.master_key.derive(self.root_path)
        self._chain_keys = {change: account_key.derive_child(change) for change in (0, 1)}

        self._keys: dict[tuple[int, int], HDKey] = {}
        self.address_cache: dict[str, tuple[int, int]] = {}
        self.script_cache: dict[bytes, tuple[int, int]] = {}
        self.utxo_cache: list[UTXOInfo] = []
        self.tx_cache: dict[str, Transaction] = {}
        self.next_index: dict[int, int] = {0: 0, 1: 0}

        logger.debug(f"Initialized wallet {name} at {self.root_path}")

    # ------------------------------------------------------------------
    # Keys and addresses
    # ------------------------------------------------------------------

    def get_key(self, change: int, index: int) -> HDKey:
        key = self._keys.get((change, index))
        if key is None:
            key = self._chain_keys[change].derive_child(index)
            self._keys[(change, index)] = key
        return key

    def get_address(self, change: int, index: int) -> str:
        """Get address for given chain/index, remembering it for signing."""
        key = self.get_key(change, index)
        address = key.get_address(self.network)
        self.address_cache[address] = (change, index)
        self.script_cache[key.get_scriptpubkey()] = (change, index)
        return address

    def get_path(self, change: int, index: int) -> str:
        return f"{self.root_path}/{change}/{index}"

    def reveal_next_address(self, change: int = 0) -> str:
        """Hand out the next never-revealed address of a chain."""
        index = self.next_index[change]
        self.next_index[change] = index + 1
        address = self.get_address(change, index)
        logger.debug(f"{self.name}: revealed {self.get_path(change, index)}")
        return address

    def reveal_next_output_script(self, change: int = 0) -> bytes:
        address = self.reveal_next_address(change)
        change, index = self.address_cache[address]
        return self.get_key(change, index).get_scriptpubkey()

    # ------------------------------------------------------------------
    # Chain state
    # ------------------------------------------------------------------

    async def sync(self) -> list[UTXOInfo]:
        """
        Sync the wallet with the blockchain.

        Scans both chains up to the gap limit, advances the reveal cursors past
        every used address and caches the funding transaction of each UTXO.
        """
        utxos: list[UTXOInfo] = []

        for change in (0, 1):
            consecutive_empty = 0
            index = 0
            highest_used = -1

            while consecutive_empty < self.gap_limit:
                addresses = [self.get_address(change, index + i) for i in range(self.gap_limit)]
                backend_utxos = await self.backend.get_utxos(addresses)

                utxos_by_address: dict[str, list] = {addr: [] for addr in addresses}
                for utxo in backend_utxos:
                    if utxo.address in utxos_by_address:
                        utxos_by_address[utxo.address].append(utxo)

                for i, address in enumerate(addresses):
                    addr_utxos = utxos_by_address[address]
                    if addr_utxos:
                        consecutive_empty = 0
                        highest_used = index + i
                        for utxo in addr_utxos:
                            utxos.append(
                                UTXOInfo(
                                    txid=utxo.txid,
                                    vout=utxo.vout,
                                    value=utxo.value,
                                    address=address,
                                    confirmations=utxo.confirmations,
                                    scriptpubkey=utxo.scriptpubkey,
                                    path=self.get_path(change, index + i),
                                    height=utxo.height,
                                )
                            )
                    else:
                        consecutive_empty += 1

                    if consecutive_empty >= self.gap_limit:
                        break

                index += self.gap_limit

            self.next_index[change] = max(self.next_index[change], highest_used + 1)

        for txid in sorted({u.txid for u in utxos} - set(self.tx_cache)):
            funding = await self.backend.get_transaction(txid)
            if funding is None or not funding.hex:
                logger.warning(f"{self.name}: funding transaction {txid} unavailable")
                continue
            try:
                self.tx_cache[txid] = funding.decode()
            except DeserializationError as e:
                logger.warning(f"{self.name}: cannot parse funding transaction {txid}: {e}")

        self.utxo_cache = utxos
        logger.info(
            f"{self.name}: synced {len(utxos)} UTXOs, balance {self.get_balance():,} sats"
        )
        return utxos

    def list_unspent(self) -> list[UTXOInfo]:
        return list(self.utxo_cache)

    def get_balance(self) -> int:
        return sum(utxo.value for utxo in self.utxo_cache)

    def lookup_funding_transaction(self, txid: str) -> Transaction | None:
        return self.tx_cache.get(txid)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, psbt: BatchPsbt) -> BatchPsbt:
        """
        Sign and finalize every input this wallet owns.

        Inputs that are already finalized or belong to someone else are left
        untouched, so signing the same PSBT twice changes nothing.

        Raises:
            SigningError: an owned input lacks usable proof-of-funds
        """
        result = psbt.copy()
        owned = {utxo.outpoint: utxo for utxo in self.utxo_cache}
        signed = 0

        for index, (txin, meta) in enumerate(zip(result.tx.inputs, result.inputs)):
            if meta.is_finalized:
                continue

            funding = meta.funding_output(txin.vout)
            if funding is None:
                if txin.outpoint in owned:
                    raise SigningError(
                        f"{self.name}: input {index} ({txin.outpoint}) has no proof-of-funds"
                    )
                continue

            if meta.non_witness_utxo is not None and meta.non_witness_utxo.txid != txin.txid:
                raise SigningError(f"{self.name}: input {index} funding transaction mismatch")

            path = self.script_cache.get(funding.scriptpubkey)
            if path is None:
                if txin.outpoint in owned:
                    raise SigningError(
                        f"{self.name}: input {index} ({txin.outpoint}) proof does not match "
                        "the wallet's script"
                    )
                continue

            key = self.get_key(*path)
            pubkey = key.get_public_key_bytes()
            signature = sign_p2wpkh_input(
                result.tx, index, create_p2wpkh_script_code(pubkey), funding.value, key.private_key
            )
            meta.partial_sigs[pubkey] = signature
            meta.final_script_witness = create_witness_stack(signature, pubkey)
            signed += 1

        logger.debug(f"{self.name}: signed {signed} input(s)")
        return result

    async def close(self) -> None:
        """Close backend connection"""
        await self.backend.close()
