"""Tests for the HTLC swap lifecycle on the in-memory chain."""

from unittest.mock import AsyncMock

import pytest

from chainabstraction.bitcoin.script import create_swap_script, encode_address
from chainabstraction.bitcoin.swap import spend_fee
from chainabstraction.bitcoin.transaction import SEQUENCE_LOCKTIME
from chainabstraction.cancellation import CancellationToken
from chainabstraction.crypto import random_secret, secret_hash
from chainabstraction.errors import (
    BroadcastError,
    ConfigurationError,
    OperationCancelledError,
    TransactionNotFoundError,
    VerificationFailure,
)
from chainabstraction.models import SwapParams


@pytest.fixture
def secret():
    return random_secret()


@pytest.fixture
def params(chain, wallet_address, secret):
    """Swap paying wallet index 5, refundable to wallet index 6 after block 110."""
    return SwapParams(
        recipient_address=wallet_address(5),
        refund_address=wallet_address(6),
        secret_hash=secret_hash(secret),
        expiration=chain.block_height + 10,
    )


@pytest.fixture
def funded(chain, wallet_address):
    return chain.fund_address(wallet_address(0), 50000)


class TestSwapLifecycle:
    """End-to-end initiate, find, verify, claim."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, client, chain, funded, params, secret):
        txid = await client.initiate_swap(10000, params)

        found = await client.find_initiate_swap_transaction(10000, params)
        assert found is not None
        assert found.txid == txid

        assert await client.verify_initiate_swap_transaction(txid, 10000, params) is True

        claim_txid = await client.claim_swap(txid, params, secret)

        claim = await client.find_claim_swap_transaction(txid, params)
        assert claim is not None
        assert claim.txid == claim_txid
        assert claim.spends(txid, 0) is not None
        assert await client.get_swap_secret(claim_txid, params) == secret

    @pytest.mark.asyncio
    async def test_claim_pays_recipient(self, client, chain, funded, params, secret):
        txid = await client.initiate_swap(10000, params)
        claim_txid = await client.claim_swap(txid, params, secret)

        claim = await chain.get_transaction_by_hash(claim_txid)
        swap = create_swap_script(params, chain.network)
        assert len(claim.outputs) == 1
        assert claim.outputs[0].address == params.recipient_address
        assert claim.outputs[0].value == 10000 - spend_fee(swap.redeem_script, 3, claim=True)

    @pytest.mark.asyncio
    async def test_not_found_before_initiation(self, client, params):
        assert await client.find_initiate_swap_transaction(10000, params) is None
        assert await client.find_claim_swap_transaction("ab" * 32, params) is None

    @pytest.mark.asyncio
    async def test_create_swap_script_invalid(self, client, params):
        bad = SwapParams(params.recipient_address, params.refund_address, "00", params.expiration)
        with pytest.raises(ConfigurationError):
            await client.create_swap_script(bad)

    @pytest.mark.asyncio
    async def test_initiate_cancelled(self, client, chain, funded, params):
        token = CancellationToken()
        token.cancel("test")

        with pytest.raises(OperationCancelledError):
            await client.initiate_swap(10000, params, cancel_token=token)

        assert chain.broadcasts == []


class TestVerification:
    """Verification returns negatives instead of raising."""

    @pytest.mark.asyncio
    async def test_wrong_value(self, client, funded, params):
        txid = await client.initiate_swap(10000, params)

        assert await client.verify_initiate_swap_transaction(txid, 9999, params) is False
        assert await client.find_initiate_swap_transaction(9999, params) is None

    @pytest.mark.asyncio
    async def test_wrong_script(self, client, chain, params):
        other = SwapParams(
            params.recipient_address, params.refund_address, params.secret_hash, params.expiration + 1
        )
        other_swap = create_swap_script(other, chain.network)
        utxo = chain.fund_address(other_swap.address.address, 10000)

        assert await client.verify_initiate_swap_transaction(utxo.tx_hash, 10000, params) is False

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client, params):
        with pytest.raises(TransactionNotFoundError):
            await client.verify_initiate_swap_transaction("cd" * 32, 10000, params)


class TestClaim:
    """Claim preconditions."""

    @pytest.mark.asyncio
    async def test_wrong_secret_checked_before_network(self, client, chain, funded, params):
        txid = await client.initiate_swap(10000, params)
        chain.get_transaction_by_hash = AsyncMock()
        chain.broadcast_transaction = AsyncMock()

        with pytest.raises(VerificationFailure):
            await client.claim_swap(txid, params, "11" * 32)

        chain.get_transaction_by_hash.assert_not_called()
        chain.broadcast_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_secret(self, client, params):
        with pytest.raises(VerificationFailure):
            await client.claim_swap("ab" * 32, params, "not hex")

    @pytest.mark.asyncio
    async def test_claim_non_swap_transaction(self, client, chain, params, secret, wallet_address):
        utxo = chain.fund_address(wallet_address(3), 10000)

        with pytest.raises(VerificationFailure):
            await client.claim_swap(utxo.tx_hash, params, secret)

    @pytest.mark.asyncio
    async def test_secret_not_revealed(self, client, chain, funded, params):
        txid = await client.initiate_swap(10000, params)

        with pytest.raises(VerificationFailure):
            await client.get_swap_secret(txid, params)


class TestRefund:
    """Refund after expiration."""

    @pytest.mark.asyncio
    async def test_refund_before_expiration(self, client, chain, funded, params):
        txid = await client.initiate_swap(10000, params)
        broadcasts = len(chain.broadcasts)

        with pytest.raises(VerificationFailure):
            await client.refund_swap(txid, params)

        assert len(chain.broadcasts) == broadcasts

    @pytest.mark.asyncio
    async def test_refund_after_block_expiration(self, client, chain, funded, params):
        txid = await client.initiate_swap(10000, params)
        chain.mine(10)

        refund_txid = await client.refund_swap(txid, params)

        refund = await chain.get_transaction_by_hash(refund_txid)
        assert refund.lock_time == params.expiration
        assert refund.inputs[0].sequence == SEQUENCE_LOCKTIME
        assert refund.outputs[0].address == params.refund_address
        assert await client.find_claim_swap_transaction(txid, params) is None

    @pytest.mark.asyncio
    async def test_refund_after_timestamp_expiration(self, client, chain, funded, wallet_address, secret):
        params = SwapParams(
            recipient_address=wallet_address(5),
            refund_address=wallet_address(6),
            secret_hash=secret_hash(secret),
            expiration=chain.median_time - 60,
        )
        txid = await client.initiate_swap(10000, params)

        refund_txid = await client.refund_swap(txid, params)

        assert (await chain.get_transaction_by_hash(refund_txid)).lock_time == params.expiration

    @pytest.mark.asyncio
    async def test_refund_after_claim_rejected(self, client, chain, funded, params, secret):
        txid = await client.initiate_swap(10000, params)
        await client.claim_swap(txid, params, secret)
        chain.mine(10)

        with pytest.raises(BroadcastError) as exc_info:
            await client.refund_swap(txid, params)

        assert exc_info.value.transient is False


class TestSwapAddressPurity:
    """Swap addresses depend on the network version bytes."""

    def test_foreign_recipient(self, network):
        params = SwapParams(
            recipient_address=encode_address(0x00, bytes(20)),
            refund_address=encode_address(network.pub_key_hash_version, bytes(20)),
            secret_hash="00" * 32,
            expiration=1468194353,
        )
        with pytest.raises(ConfigurationError):
            create_swap_script(params, network)
