"""Esplora REST query provider (Blockstream.info, mempool.space).

Free API, no authentication required.
Docs: https://github.com/Blockstream/esplora/blob/master/API.md
"""

import logging
from typing import Any, Optional

import httpx

from chainabstraction.errors import BroadcastError, NodeQueryError, TransactionNotFoundError
from chainabstraction.models import UTXO, Transaction, TxInput, TxOutput
from chainabstraction.networks import NetworkParams, bitcoin
from chainabstraction.providers.base import ChainQueryProvider, is_transient_rejection

logger = logging.getLogger(__name__)


class EsploraProvider(ChainQueryProvider):
    """Node queries through an Esplora HTTP API.

    Rate limits on the public instances are roughly 10 requests/second.
    """

    def __init__(
        self,
        network: NetworkParams = bitcoin,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Esplora provider.

        Args:
            network: Chain parameters
            base_url: API root, defaults to the network explorer URL
            timeout: HTTP timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        super().__init__()
        self.network = network
        self.base_url = (base_url or network.explorer_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def _get(self, path: str, txid: Optional[str] = None) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.base_url}{path}"

        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Esplora request failed for {path}: {e}")
            raise NodeQueryError(f"Esplora request failed for {path}: {e}") from e

        if response.status_code == 404 and txid is not None:
            raise TransactionNotFoundError(txid)
        if response.status_code >= 400:
            logger.error(f"Esplora API error {response.status_code} for {path}: {response.text}")
            raise NodeQueryError(f"Esplora API error {response.status_code} for {path}")
        return response

    async def get_unspent_transactions(self, address: str) -> list[UTXO]:
        response = await self._get(f"/address/{address}/utxo")
        tip = None

        utxos = []
        for item in response.json():
            confirmations = 0
            block_height = item.get("status", {}).get("block_height")
            if block_height:
                if tip is None:
                    tip = await self.get_block_height()
                confirmations = tip - block_height + 1

            utxos.append(
                UTXO(
                    tx_hash=item["txid"],
                    output_index=item["vout"],
                    value=item["value"],
                    address=address,
                    confirmations=confirmations,
                )
            )
        return utxos

    async def get_transaction_hex(self, txid: str) -> str:
        response = await self._get(f"/tx/{txid}/hex", txid=txid)
        return response.text.strip()

    async def is_used_address(self, address: str) -> bool:
        response = await self._get(f"/address/{address}")
        data = response.json()
        funded = data.get("chain_stats", {}).get("funded_txo_count", 0)
        funded += data.get("mempool_stats", {}).get("funded_txo_count", 0)
        return funded > 0

    async def broadcast_transaction(self, raw_hex: str) -> str:
        """POST raw hex to /tx.

        Raises:
            BroadcastError: transient for fee/mempool rejections, rate limits,
                server errors and transport failures
        """
        client = await self._get_client()

        try:
            response = await client.post(f"{self.base_url}/tx", content=raw_hex)
        except httpx.HTTPError as e:
            logger.error(f"Broadcast transport failure: {e}")
            raise BroadcastError(f"Broadcast failed: {e}", transient=True) from e

        if response.status_code >= 400:
            reason = response.text.strip()
            transient = (
                response.status_code == 429
                or response.status_code >= 500
                or is_transient_rejection(reason)
            )
            logger.warning(f"Broadcast rejected ({response.status_code}): {reason}")
            raise BroadcastError(f"Broadcast rejected: {reason}", transient=transient, reason=reason)

        txid = response.text.strip()
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def get_transaction_by_hash(self, txid: str) -> Transaction:
        response = await self._get(f"/tx/{txid}", txid=txid)
        tip = await self.get_block_height()
        return self._parse_transaction(response.json(), tip)

    async def get_address_transactions(self, address: str) -> list[Transaction]:
        response = await self._get(f"/address/{address}/txs")
        txs = response.json()
        if not txs:
            return []

        tip = await self.get_block_height()
        return [self._parse_transaction(tx, tip) for tx in txs]

    async def get_block_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        try:
            return int(response.text)
        except ValueError as e:
            raise NodeQueryError(f"Unexpected block height response: {response.text!r}") from e

    def _parse_transaction(self, tx: dict[str, Any], current_height: int) -> Transaction:
        """Parse an Esplora transaction JSON object."""
        block_height = tx.get("status", {}).get("block_height")
        confirmations = current_height - block_height + 1 if block_height else 0

        inputs = [
            TxInput(
                prev_txid=vin.get("txid", "00" * 32),
                prev_index=vin.get("vout", 0xFFFFFFFF),
                script_sig=bytes.fromhex(vin.get("scriptsig", "")),
                sequence=vin.get("sequence", 0xFFFFFFFF),
            )
            for vin in tx.get("vin", [])
        ]
        outputs = [
            TxOutput(
                value=vout.get("value", 0),
                script=bytes.fromhex(vout.get("scriptpubkey", "")),
                address=vout.get("scriptpubkey_address"),
            )
            for vout in tx.get("vout", [])
        ]

        return Transaction(
            txid=tx["txid"],
            inputs=inputs,
            outputs=outputs,
            version=tx.get("version", 1),
            lock_time=tx.get("locktime", 0),
            block_height=block_height,
            confirmations=confirmations,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
