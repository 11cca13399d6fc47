"""
Bitcoin Core JSON-RPC backend.

Only chain RPCs are used (scantxoutset, getrawtransaction, sendrawtransaction,
testmempoolaccept); the node needs no wallet loaded and never sees keys.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from batchcore.constants import SATS_PER_BTC
from batchcore.errors import RejectedByNetwork
from batchwallet.backends.base import UTXO, BlockchainBackend, FundingTransaction

DEFAULT_RPC_TIMEOUT = 30.0

# scantxoutset walks the whole UTXO set
SCAN_RPC_TIMEOUT = 300.0
SCAN_CHUNK_SIZE = 100
SCAN_MAX_ATTEMPTS = 10
SCAN_RETRY_DELAY = 2.0

# RPC_INVALID_PARAMETER, returned while another scan holds the slot
RPC_SCAN_IN_PROGRESS = -8


class RPCError(ValueError):
    """Error object returned by the node."""

    def __init__(self, code: int | str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


class BitcoinCoreBackend(BlockchainBackend):
    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:38332",
        rpc_user: str = "",
        rpc_password: str = "",
        scan_timeout: float = SCAN_RPC_TIMEOUT,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.scan_timeout = scan_timeout
        auth = (rpc_user, rpc_password) if rpc_user else None
        self.client = httpx.AsyncClient(timeout=DEFAULT_RPC_TIMEOUT, auth=auth)
        self._request_id = 0

    async def _rpc_call(
        self, method: str, params: list | None = None, timeout: float | None = None
    ) -> Any:
        """
        Raises:
            RPCError: the node answered with an error object
            httpx.HTTPError: transport failure or timeout
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": f"batch-{self._request_id}",
            "method": method,
            "params": params or [],
        }
        try:
            response = await self.client.post(
                self.rpc_url, json=payload, timeout=timeout or DEFAULT_RPC_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.error(f"RPC {method} failed: {e}")
            raise

        # RPC errors come back as HTTP 500 with a JSON body
        if response.status_code != 500:
            response.raise_for_status()
        data = response.json()
        error = data.get("error")
        if error:
            raise RPCError(error.get("code", "unknown"), error.get("message", str(error)))
        return data.get("result")

    async def _scan(self, addresses: list[str]) -> list[dict[str, Any]]:
        descriptors = [f"addr({address})" for address in addresses]
        for attempt in range(1, SCAN_MAX_ATTEMPTS + 1):
            try:
                result = await self._rpc_call(
                    "scantxoutset", ["start", descriptors], timeout=self.scan_timeout
                )
            except RPCError as e:
                if e.code != RPC_SCAN_IN_PROGRESS or attempt == SCAN_MAX_ATTEMPTS:
                    raise
                logger.debug(f"Node busy with another scan, retry {attempt}/{SCAN_MAX_ATTEMPTS}")
                await asyncio.sleep(SCAN_RETRY_DELAY * attempt)
                continue
            return (result or {}).get("unspents", [])
        return []

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        if not addresses:
            return []

        tip = await self.get_block_height()
        utxos: list[UTXO] = []
        for start in range(0, len(addresses), SCAN_CHUNK_SIZE):
            chunk = addresses[start : start + SCAN_CHUNK_SIZE]
            unspents = await self._scan(chunk)
            for entry in unspents:
                height = entry.get("height") or None
                # "addr(ADDRESS)#checksum"
                desc = entry.get("desc", "").split("#")[0]
                address = desc[5:-1] if desc.startswith("addr(") else ""
                utxos.append(
                    UTXO(
                        txid=entry["txid"],
                        vout=entry["vout"],
                        value=round(entry["amount"] * SATS_PER_BTC),
                        address=address,
                        confirmations=tip - height + 1 if height else 0,
                        scriptpubkey=entry.get("scriptPubKey", ""),
                        height=height,
                    )
                )
            logger.debug(f"Scanned {len(chunk)} addresses: {len(unspents)} UTXO(s)")
        return utxos

    async def get_transaction(self, txid: str) -> FundingTransaction | None:
        try:
            data = await self._rpc_call("getrawtransaction", [txid, True])
        except RPCError as e:
            logger.warning(f"Transaction {txid} unavailable: {e.message}")
            return None
        if not data:
            return None

        block_height = None
        if "blockhash" in data:
            header = await self._rpc_call("getblockheader", [data["blockhash"]])
            block_height = header.get("height")
        return FundingTransaction(
            txid=txid,
            hex=data.get("hex", ""),
            confirmations=data.get("confirmations", 0),
            block_height=block_height,
        )

    async def get_block_height(self) -> int:
        info = await self._rpc_call("getblockchaininfo")
        return info.get("blocks", 0)

    async def check_acceptance(self, tx_hex: str) -> None:
        [verdict] = await self._rpc_call("testmempoolaccept", [[tx_hex]])
        if not verdict.get("allowed", False):
            raise RejectedByNetwork(verdict.get("reject-reason", "rejected"), verdict.get("txid"))

    async def broadcast_transaction(self, tx_hex: str) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [tx_hex])
        except RPCError as e:
            logger.error(f"Node rejected transaction: {e.message}")
            raise RejectedByNetwork(e.message) from e
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def close(self) -> None:
        await self.client.aclose()
