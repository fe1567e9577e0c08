"""Dry-run query provider for testing (in-memory chain, no network)."""

import logging
import time

from chainabstraction.bitcoin.script import LOCKTIME_THRESHOLD, create_output_script
from chainabstraction.bitcoin.transaction import SEQUENCE_FINAL, build_transaction, decode_transaction
from chainabstraction.crypto import sha256
from chainabstraction.errors import BroadcastError, TransactionNotFoundError
from chainabstraction.models import UTXO, Transaction, TxInput, TxOutput
from chainabstraction.networks import NetworkParams, bitcoin
from chainabstraction.providers.base import ChainQueryProvider

logger = logging.getLogger(__name__)


class DryRunQueryProvider(ChainQueryProvider):
    """Simulated node holding transactions in memory.

    Broadcast transactions are decoded, their inputs marked spent and
    their outputs credited. Transactions stay in the mempool
    (0 confirmations) until mine() is called.

    Attributes:
        broadcasts: Raw hex of every accepted broadcast, in order
        median_time: Chain time used for timestamp lock times
    """

    def __init__(self, network: NetworkParams = bitcoin, block_height: int = 1):
        super().__init__()
        self.network = network
        self.block_height = block_height
        self.median_time = int(time.time())
        self.broadcasts: list[str] = []
        self._transactions: dict[str, Transaction] = {}
        self._spent: set[tuple[str, int]] = set()
        self._funding_counter = 0

    # =========================================================================
    # Test helpers
    # =========================================================================

    def fund_address(self, address: str, value: int, confirmed: bool = True) -> UTXO:
        """Create a transaction paying value to address out of thin air."""
        self._funding_counter += 1
        marker = sha256(f"dryrun:{self._funding_counter}".encode())
        funding = build_transaction(
            [TxInput(prev_txid="00" * 32, prev_index=0xFFFFFFFF, script_sig=marker)],
            [TxOutput(value=value, script=create_output_script(address, self.network), address=address)],
        )
        if confirmed:
            funding.block_height = self.block_height
        self._transactions[funding.txid] = funding

        logger.debug(f"Funded {address} with {value} in {funding.txid}")
        return UTXO(tx_hash=funding.txid, output_index=0, value=value, address=address)

    def mine(self, blocks: int = 1) -> int:
        """Advance the chain, confirming every mempool transaction."""
        self.block_height += blocks
        for tx in self._transactions.values():
            if tx.block_height is None:
                tx.block_height = self.block_height - blocks + 1
        return self.block_height

    def _with_confirmations(self, tx: Transaction) -> Transaction:
        if tx.block_height is not None:
            tx.confirmations = self.block_height - tx.block_height + 1
        return tx

    def _is_final(self, tx: Transaction) -> bool:
        if tx.lock_time == 0 or all(i.sequence == SEQUENCE_FINAL for i in tx.inputs):
            return True
        if tx.lock_time < LOCKTIME_THRESHOLD:
            return tx.lock_time <= self.block_height
        return tx.lock_time <= self.median_time

    def _pays(self, tx: Transaction, address: str) -> bool:
        return any(o.address == address for o in tx.outputs)

    # =========================================================================
    # Node queries
    # =========================================================================

    async def get_unspent_transactions(self, address: str) -> list[UTXO]:
        utxos = []
        for tx in self._transactions.values():
            for index, output in enumerate(tx.outputs):
                if output.address == address and (tx.txid, index) not in self._spent:
                    utxos.append(
                        UTXO(
                            tx_hash=tx.txid,
                            output_index=index,
                            value=output.value,
                            address=address,
                            confirmations=self._with_confirmations(tx).confirmations,
                        )
                    )
        return utxos

    async def get_transaction_hex(self, txid: str) -> str:
        return (await self.get_transaction_by_hash(txid)).raw_hex

    async def is_used_address(self, address: str) -> bool:
        return any(self._pays(tx, address) for tx in self._transactions.values())

    async def broadcast_transaction(self, raw_hex: str) -> str:
        try:
            tx = decode_transaction(raw_hex, self.network)
        except ValueError as e:
            raise BroadcastError(f"TX decode failed: {e}", reason="TX decode failed")

        if tx.txid in self._transactions:
            raise BroadcastError("Transaction already in block chain", reason="txn-already-known")

        input_value = 0
        for tx_input in tx.inputs:
            prev = self._transactions.get(tx_input.prev_txid)
            outpoint = (tx_input.prev_txid, tx_input.prev_index)
            if prev is None or tx_input.prev_index >= len(prev.outputs) or outpoint in self._spent:
                raise BroadcastError(
                    f"Input {tx_input.prev_txid}:{tx_input.prev_index} missing or spent",
                    reason="bad-txns-inputs-missingorspent",
                )
            input_value += prev.outputs[tx_input.prev_index].value

        if sum(o.value for o in tx.outputs) > input_value:
            raise BroadcastError("Outputs exceed inputs", reason="bad-txns-in-belowout")

        if not self._is_final(tx):
            raise BroadcastError("Transaction is not final", transient=True, reason="non-final")

        for tx_input in tx.inputs:
            self._spent.add((tx_input.prev_txid, tx_input.prev_index))
        self._transactions[tx.txid] = tx
        self.broadcasts.append(raw_hex)

        logger.info(f"Dry-run broadcast {tx.txid}")
        return tx.txid

    async def get_transaction_by_hash(self, txid: str) -> Transaction:
        tx = self._transactions.get(txid)
        if tx is None:
            raise TransactionNotFoundError(txid)
        return self._with_confirmations(tx)

    async def get_address_transactions(self, address: str) -> list[Transaction]:
        result = []
        for tx in self._transactions.values():
            spends_from = any(
                tx_input.prev_txid in self._transactions
                and tx_input.prev_index < len(self._transactions[tx_input.prev_txid].outputs)
                and self._transactions[tx_input.prev_txid].outputs[tx_input.prev_index].address == address
                for tx_input in tx.inputs
            )
            if spends_from or self._pays(tx, address):
                result.append(self._with_confirmations(tx))
        return result

    async def get_block_height(self) -> int:
        return self.block_height
