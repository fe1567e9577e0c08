"""JSON-RPC query provider for address-indexed nodes (Bitcore / insight).

Requires a node started with -addressindex -txindex.
"""

import logging
from typing import Any, Optional

import httpx

from chainabstraction.bitcoin.transaction import decode_transaction
from chainabstraction.errors import BroadcastError, NodeQueryError, TransactionNotFoundError
from chainabstraction.models import UTXO, Transaction
from chainabstraction.networks import NetworkParams, bitcoin
from chainabstraction.providers.base import ChainQueryProvider, is_transient_rejection

logger = logging.getLogger(__name__)

# bitcoind RPC error codes
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_DESERIALIZATION_ERROR = -22
RPC_VERIFY_ERROR = -25
RPC_VERIFY_REJECTED = -26
RPC_VERIFY_ALREADY_IN_CHAIN = -27


class RPCError(NodeQueryError):
    """Error object returned by the node."""

    def __init__(self, method: str, code: int, message: str):
        super().__init__(f"RPC {method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


class BitcoreRPCProvider(ChainQueryProvider):
    """Node queries over JSON-RPC with HTTP basic auth."""

    def __init__(
        self,
        rpc_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        network: NetworkParams = bitcoin,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.rpc_url = rpc_url
        self.network = network
        self.timeout = timeout
        self._auth = (username, password or "") if username else None
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, auth=self._auth, transport=self._transport
            )
        return self._client

    async def _rpc(self, method: str, *params: Any) -> Any:
        """Make a JSON-RPC call and return its result.

        Raises:
            RPCError: If the node returns an error object
            NodeQueryError: On transport failure or malformed response
        """
        client = await self._get_client()
        self._request_id += 1

        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": list(params),
        }

        try:
            response = await client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"RPC {method} transport error: {e}")
            raise NodeQueryError(f"RPC {method} transport error: {e}") from e

        # bitcoind answers errors with HTTP 500 and a JSON error body
        try:
            data = response.json()
        except ValueError:
            raise NodeQueryError(f"RPC {method} returned HTTP {response.status_code}")

        error = data.get("error")
        if error:
            raise RPCError(method, error.get("code", 0), error.get("message", ""))
        return data.get("result")

    async def get_unspent_transactions(self, address: str) -> list[UTXO]:
        result = await self._rpc("getaddressutxos", {"addresses": [address]})
        height = None

        utxos = []
        for item in result or []:
            confirmations = 0
            if item.get("height"):
                if height is None:
                    height = await self.get_block_height()
                confirmations = height - item["height"] + 1

            utxos.append(
                UTXO(
                    tx_hash=item["txid"],
                    output_index=item["outputIndex"],
                    value=item["satoshis"],
                    address=item.get("address", address),
                    confirmations=confirmations,
                )
            )
        return utxos

    async def get_transaction_hex(self, txid: str) -> str:
        try:
            return await self._rpc("getrawtransaction", txid, 0)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise TransactionNotFoundError(txid) from e
            raise

    async def is_used_address(self, address: str) -> bool:
        result = await self._rpc("getaddressbalance", {"addresses": [address]})
        return result.get("received", 0) > 0

    async def get_balance(self, addresses: list[str]) -> int:
        result = await self._rpc("getaddressbalance", {"addresses": addresses})
        return result.get("balance", 0)

    async def broadcast_transaction(self, raw_hex: str) -> str:
        try:
            txid = await self._rpc("sendrawtransaction", raw_hex)
        except RPCError as e:
            transient = e.code == RPC_VERIFY_REJECTED and is_transient_rejection(e.message)
            logger.warning(f"Broadcast rejected ({e.code}): {e.message}")
            raise BroadcastError(f"Broadcast rejected: {e.message}", transient=transient, reason=e.message) from e
        except NodeQueryError as e:
            raise BroadcastError(f"Broadcast failed: {e}", transient=True) from e

        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def get_transaction_by_hash(self, txid: str) -> Transaction:
        try:
            result = await self._rpc("getrawtransaction", txid, 1)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise TransactionNotFoundError(txid) from e
            raise

        tx = decode_transaction(result["hex"], self.network)
        tx.confirmations = result.get("confirmations", 0)
        tx.block_height = result.get("height")
        return tx

    async def get_address_transactions(self, address: str) -> list[Transaction]:
        txids = await self._rpc("getaddresstxids", {"addresses": [address]})
        return [await self.get_transaction_by_hash(txid) for txid in txids or []]

    async def get_block_height(self) -> int:
        return await self._rpc("getblockcount")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
