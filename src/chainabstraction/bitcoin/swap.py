"""Bitcoin atomic swap provider (P2SH hash time-locked contracts).

Flow:
1. Initiator funds the swap address (initiate_swap)
2. Counterparty finds and verifies the funding output
3. Recipient claims with the secret (claim_swap), revealing it on chain
4. After expiration the refund key may recover the funds (refund_swap)

Node queries and signatures are resolved through providers registered
before this one.
"""

import logging
import time
from typing import Callable, Optional

from chainabstraction.bitcoin.script import (
    LOCKTIME_THRESHOLD,
    build_claim_script_sig,
    build_refund_script_sig,
    create_output_script,
    create_swap_script,
    extract_secret,
    match_swap_output,
    push_data,
)
from chainabstraction.bitcoin.transaction import (
    SEQUENCE_FINAL,
    SEQUENCE_LOCKTIME,
    build_transaction,
    encode_varint,
)
from chainabstraction.bitcoin.utxo import (
    BYTES_PER_OUTPUT,
    DEFAULT_FEE_PER_BYTE,
    DUST_THRESHOLD,
    TX_OVERHEAD_BYTES,
)
from chainabstraction.cancellation import CancellationToken, check_cancelled
from chainabstraction.crypto import sha256, verify_secret
from chainabstraction.errors import InsufficientFundsError, VerificationFailure
from chainabstraction.models import SwapParams, SwapScript, Transaction, TxInput, TxOutput
from chainabstraction.networks import NetworkParams, bitcoin
from chainabstraction.providers.base import Provider

logger = logging.getLogger(__name__)

SWAP_OPERATIONS = (
    "create_swap_script",
    "initiate_swap",
    "find_initiate_swap_transaction",
    "verify_initiate_swap_transaction",
    "claim_swap",
    "find_claim_swap_transaction",
    "refund_swap",
    "get_swap_secret",
)

# Upper bounds used for fee sizing of the spending scriptSig
MAX_SIGNATURE_SIZE = 73
PUBKEY_SIZE = 33


def spend_fee(redeem_script: bytes, fee_per_byte: int, claim: bool) -> int:
    """Fee for a one-input, one-output swap spend."""
    script_sig_size = (1 + MAX_SIGNATURE_SIZE) + (1 + PUBKEY_SIZE) + 1 + len(push_data(redeem_script))
    if claim:
        script_sig_size += 1 + 32
    input_size = 32 + 4 + len(encode_varint(script_sig_size)) + script_sig_size + 4
    return (TX_OVERHEAD_BYTES + input_size + BYTES_PER_OUTPUT) * fee_per_byte


class BitcoinSwapProvider(Provider):
    """HTLC swap lifecycle for Bitcoin-like chains.

    Example:
        client.add_provider(BitcoinSwapProvider(network=networks.bitcoin_testnet))
        txid = await client.initiate_swap(10000, params)
        assert await client.verify_initiate_swap_transaction(txid, 10000, params)
    """

    OPERATIONS = SWAP_OPERATIONS
    REQUIRES = (
        "send_transaction",
        "sign_p2sh_transaction",
        "get_address_public_key",
        "get_transaction_by_hash",
        "get_address_transactions",
        "get_block_height",
        "broadcast_transaction",
    )

    def __init__(self, network: NetworkParams = bitcoin, fee_per_byte: int = DEFAULT_FEE_PER_BYTE):
        super().__init__()
        self.network = network
        self.fee_per_byte = fee_per_byte

    async def create_swap_script(self, params: SwapParams) -> SwapScript:
        """Build the redeem script and P2SH address for params.

        Raises:
            ConfigurationError: On invalid addresses, hash or expiration
        """
        swap = create_swap_script(params, self.network)
        logger.debug(f"Swap address {swap.address} for expiration {params.expiration}")
        return swap

    async def initiate_swap(
        self,
        value: int,
        params: SwapParams,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Fund the swap address with value.

        Returns:
            Funding transaction ID
        """
        check_cancelled(cancel_token)
        swap = await self.create_swap_script(params)

        txid = await self.get_method("send_transaction")(
            swap.address.address, value, self.fee_per_byte, cancel_token=cancel_token
        )
        logger.info(f"Swap initiated: {value} to {swap.address} in {txid}")
        return txid

    async def find_initiate_swap_transaction(self, value: int, params: SwapParams) -> Optional[Transaction]:
        """Find a transaction paying value to the swap address."""
        swap = await self.create_swap_script(params)
        transactions = await self.get_method("get_address_transactions")(swap.address.address)

        for tx in transactions:
            if tx.find_output(swap.output_script, value) is not None:
                logger.debug(f"Found swap funding transaction {tx.txid}")
                return tx
        return None

    async def verify_initiate_swap_transaction(self, txid: str, value: int, params: SwapParams) -> bool:
        """Check that txid has an output paying exactly value to the swap script.

        Raises:
            TransactionNotFoundError: If txid cannot be fetched
        """
        tx = await self.get_method("get_transaction_by_hash")(txid)

        for output in tx.outputs:
            if output.value == value and match_swap_output(output.script, params, self.network):
                return True

        logger.info(f"Transaction {txid} does not fund the swap with {value}")
        return False

    async def _spend_swap(
        self,
        txid: str,
        swap: SwapScript,
        destination: str,
        build_script_sig: Callable[[bytes, bytes], bytes],
        claim: bool,
        lock_time: int = 0,
        sequence: int = SEQUENCE_FINAL,
    ) -> str:
        funding = await self.get_method("get_transaction_by_hash")(txid)
        output_index = funding.find_output(swap.output_script)
        if output_index is None:
            raise VerificationFailure(f"Transaction {txid} has no output paying {swap.address}")

        value = funding.outputs[output_index].value
        fee = spend_fee(swap.redeem_script, self.fee_per_byte, claim)
        if value - fee < DUST_THRESHOLD:
            raise InsufficientFundsError(required=fee + DUST_THRESHOLD, available=value)

        outputs = [
            TxOutput(
                value=value - fee,
                script=create_output_script(destination, self.network),
                address=destination,
            )
        ]

        signature = await self.get_method("sign_p2sh_transaction")(
            txid, output_index, swap.redeem_script, destination, outputs,
            lock_time=lock_time, sequence=sequence,
        )
        public_key = bytes.fromhex(await self.get_method("get_address_public_key")(destination))

        tx_input = TxInput(
            prev_txid=txid,
            prev_index=output_index,
            script_sig=build_script_sig(signature, public_key),
            sequence=sequence,
        )
        tx = build_transaction([tx_input], outputs, lock_time=lock_time)

        return await self.get_method("broadcast_transaction")(tx.raw_hex)

    async def claim_swap(
        self,
        txid: str,
        params: SwapParams,
        secret: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Claim the swap output to the recipient address with the secret.

        Raises:
            VerificationFailure: If secret does not hash to params.secret_hash
                (checked before any network call)
        """
        if not verify_secret(secret, params.secret_hash):
            raise VerificationFailure("Secret does not match the swap secret hash")

        check_cancelled(cancel_token)
        swap = await self.create_swap_script(params)
        secret_bytes = bytes.fromhex(secret)

        claim_txid = await self._spend_swap(
            txid,
            swap,
            params.recipient_address,
            lambda sig, pubkey: build_claim_script_sig(sig, pubkey, secret_bytes, swap.redeem_script),
            claim=True,
        )
        logger.info(f"Swap {txid} claimed in {claim_txid}")
        return claim_txid

    async def find_claim_swap_transaction(self, txid: str, params: SwapParams) -> Optional[Transaction]:
        """Find the transaction spending the swap output with the secret."""
        swap = await self.create_swap_script(params)
        transactions = await self.get_method("get_address_transactions")(swap.address.address)

        for tx in transactions:
            for tx_input in tx.inputs:
                if tx_input.prev_txid != txid:
                    continue
                secret = extract_secret(tx_input.script_sig, swap.redeem_script)
                if secret is not None and sha256(secret).hex() == params.secret_hash.lower():
                    return tx
        return None

    async def get_swap_secret(self, claim_txid: str, params: SwapParams) -> str:
        """Secret revealed by a claim transaction.

        Raises:
            VerificationFailure: If the transaction reveals no matching secret
        """
        swap = await self.create_swap_script(params)
        tx = await self.get_method("get_transaction_by_hash")(claim_txid)

        for tx_input in tx.inputs:
            secret = extract_secret(tx_input.script_sig, swap.redeem_script)
            if secret is not None and sha256(secret).hex() == params.secret_hash.lower():
                return secret.hex()

        raise VerificationFailure(f"Transaction {claim_txid} does not reveal the swap secret")

    async def _is_expired(self, expiration: int) -> bool:
        if expiration < LOCKTIME_THRESHOLD:
            return await self.get_method("get_block_height")() >= expiration
        return int(time.time()) >= expiration

    async def refund_swap(
        self,
        txid: str,
        params: SwapParams,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Return the swap output to the refund address after expiration.

        Raises:
            VerificationFailure: If the swap has not expired yet
        """
        check_cancelled(cancel_token)
        swap = await self.create_swap_script(params)

        if not await self._is_expired(params.expiration):
            raise VerificationFailure(f"Swap does not expire until {params.expiration}")

        check_cancelled(cancel_token)
        refund_txid = await self._spend_swap(
            txid,
            swap,
            params.refund_address,
            lambda sig, pubkey: build_refund_script_sig(sig, pubkey, swap.redeem_script),
            claim=False,
            lock_time=params.expiration,
            sequence=SEQUENCE_LOCKTIME,
        )
        logger.info(f"Swap {txid} refunded in {refund_txid}")
        return refund_txid
