"""Tests for the hardware-signing wallet provider and device sessions."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chainabstraction.bitcoin.ledger import BitcoinLedgerProvider
from chainabstraction.bitcoin.script import create_output_script, encode_address
from chainabstraction.bitcoin.transaction import decode_transaction
from chainabstraction.errors import (
    ConfigurationError,
    DeviceBusyError,
    DeviceCommunicationError,
    InsufficientFundsError,
    NoUnusedAddressFound,
)
from chainabstraction.models import UTXO, TxOutput
from chainabstraction.signing.session import DeviceSession
from chainabstraction.signing.simulated import SimulatedSigningDevice


@pytest.fixture
def external_address(network):
    return encode_address(network.pub_key_hash_version, bytes(20))


class TestAddresses:
    """Tests for address derivation and discovery."""

    def test_base_path(self, ledger, device, network):
        assert ledger.base_path == "44'/1'/0'/0/"
        assert BitcoinLedgerProvider(device, network=network, segwit=True).base_path == "49'/1'/0'/0/"

    @pytest.mark.asyncio
    async def test_get_addresses(self, client, ledger, wallet_address):
        addresses = await ledger.get_addresses(0, 3)

        assert [a.address for a in addresses] == [wallet_address(i) for i in range(3)]
        assert [a.index for a in addresses] == [0, 1, 2]
        assert addresses[2].derivation_path == "44'/1'/0'/0/2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["44'/1'/0'/0/5'", "44'/1'/0'/0/1/2", "44'/1'/0'/1/3", "m/0"])
    async def test_non_receive_path_has_no_index(self, client, ledger, path):
        address = await ledger.get_address_from_derivation_path(path)

        assert address.index is None
        assert address.derivation_path == path

    @pytest.mark.asyncio
    async def test_addresses_cached(self, client, ledger, device):
        await ledger.get_addresses(0, 3)
        await ledger.get_addresses(0, 3)

        assert device.calls.count("get_wallet_public_key") == 3

    @pytest.mark.asyncio
    async def test_unused_address_skips_funded(self, client, chain, wallet_address):
        chain.fund_address(wallet_address(0), 1000)
        chain.fund_address(wallet_address(1), 1000)

        address = await client.get_unused_address()

        assert address.index == 2
        assert address.address == wallet_address(2)

    @pytest.mark.asyncio
    async def test_unused_address_start_index(self, client):
        address = await client.get_unused_address(5)
        assert address.index == 5

    @pytest.mark.asyncio
    async def test_no_unused_address(self, client, chain, wallet_address):
        for index in range(10):
            chain.fund_address(wallet_address(index), 1000)

        with pytest.raises(NoUnusedAddressFound) as exc_info:
            await client.get_unused_address()

        assert exc_info.value.scanned == 10

    @pytest.mark.asyncio
    async def test_derivation_path_from_address(self, client, ledger, wallet_address):
        assert await ledger.get_derivation_path_from_address(wallet_address(4)) == "44'/1'/0'/0/4"

    @pytest.mark.asyncio
    async def test_foreign_address_not_found(self, client, ledger, external_address):
        with pytest.raises(ConfigurationError):
            await ledger.get_derivation_path_from_address(external_address)

    @pytest.mark.asyncio
    async def test_sign_message(self, client, ledger, device, wallet_address):
        signature = await ledger.sign_message("test", wallet_address(0))

        assert signature == await device.sign_message("44'/1'/0'/0/0", b"test".hex())


class TestOutputs:
    """Tests for output assembly."""

    def test_without_change(self, ledger):
        outputs = ledger.assemble_outputs(b"\x01", 10000, b"\x02", 0)
        assert [(o.value, o.script) for o in outputs] == [(10000, b"\x01")]

    def test_with_change(self, ledger):
        outputs = ledger.assemble_outputs(b"\x01", 10000, b"\x02", 4322)
        assert [(o.value, o.script) for o in outputs] == [(10000, b"\x01"), (4322, b"\x02")]

    def test_change_without_script(self, ledger):
        with pytest.raises(ConfigurationError):
            ledger.assemble_outputs(b"\x01", 10000, None, 100)


class TestSignedTransactions:
    """Tests for device-signed spends."""

    @pytest.mark.asyncio
    async def test_insufficient_before_device(self, client, ledger, device, chain, wallet_address, external_address):
        utxo = chain.fund_address(wallet_address(0), 10000)
        utxo.derivation_path = "44'/1'/0'/0/0"
        outputs = [TxOutput(10000, create_output_script(external_address, ledger.network))]

        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.create_signed_transaction([utxo], outputs, None, 3)

        assert exc_info.value.required == 10000 + 576
        assert exc_info.value.available == 10000
        assert "sign_transaction" not in device.calls

    @pytest.mark.asyncio
    async def test_missing_derivation_path(self, client, ledger, chain, wallet_address, external_address):
        utxo = chain.fund_address(wallet_address(0), 20000)
        outputs = [TxOutput(10000, create_output_script(external_address, ledger.network))]

        with pytest.raises(ConfigurationError):
            await ledger.create_signed_transaction([utxo], outputs, None, 3)

    @pytest.mark.asyncio
    async def test_send_with_change(self, client, chain, wallet_address, external_address):
        funding = chain.fund_address(wallet_address(0), 15000)

        txid = await client.send_transaction(external_address, 10000, 3)

        tx = await chain.get_transaction_by_hash(txid)
        assert [(o.address, o.value) for o in tx.outputs] == [
            (external_address, 10000),
            (wallet_address(1), 15000 - 10000 - 678),
        ]
        assert tx.inputs[0].prev_txid == funding.tx_hash
        assert await chain.get_unspent_transactions(wallet_address(0)) == []

    @pytest.mark.asyncio
    async def test_send_without_change(self, client, chain, wallet_address, external_address):
        chain.fund_address(wallet_address(0), 10576)

        txid = await client.send_transaction(external_address, 10000, 3)

        tx = await chain.get_transaction_by_hash(txid)
        assert [(o.address, o.value) for o in tx.outputs] == [(external_address, 10000)]

    @pytest.mark.asyncio
    async def test_send_dust_change_goes_to_fee(self, client, chain, wallet_address, external_address):
        chain.fund_address(wallet_address(0), 10680)

        txid = await client.send_transaction(external_address, 10000, 3)

        tx = await chain.get_transaction_by_hash(txid)
        assert [(o.address, o.value) for o in tx.outputs] == [(external_address, 10000)]

    @pytest.mark.asyncio
    async def test_send_insufficient(self, client, chain, wallet_address, external_address):
        chain.fund_address(wallet_address(0), 5000)

        with pytest.raises(InsufficientFundsError):
            await client.send_transaction(external_address, 10000, 3)

        assert chain.broadcasts == []

    @pytest.mark.asyncio
    async def test_signed_transaction_decodes(self, client, ledger, chain, wallet_address, external_address):
        chain.fund_address(wallet_address(0), 30000)
        selection = await ledger.get_utxos_for_amount(10000, 3)
        outputs = ledger.assemble_outputs(
            create_output_script(external_address, ledger.network), 10000,
            create_output_script(wallet_address(1), ledger.network), selection.change_amount,
        )

        raw = await ledger.create_signed_transaction(selection.utxos, outputs, "44'/1'/0'/0/1", 3)

        tx = decode_transaction(raw)
        assert len(tx.inputs) == 1
        assert tx.inputs[0].script_sig
        assert sum(o.value for o in tx.outputs) + selection.fee == 30000


class TestDeviceSession:
    """Tests for exclusive device access."""

    @pytest.mark.asyncio
    async def test_calls_are_serialized(self, network):
        device = SimulatedSigningDevice(network=network)
        session = DeviceSession(device, timeout=5.0)
        events = []

        original = device.sign_message

        async def slow_sign(path, message_hex):
            events.append(f"start:{path}")
            await asyncio.sleep(0.05)
            events.append(f"end:{path}")
            return await original(path, message_hex)

        device.sign_message = slow_sign

        await asyncio.gather(
            session.call("sign_message", "a", "00"),
            session.call("sign_message", "b", "00"),
        )

        assert events in [
            ["start:a", "end:a", "start:b", "end:b"],
            ["start:b", "end:b", "start:a", "end:a"],
        ]

    @pytest.mark.asyncio
    async def test_busy_timeout(self, device):
        session = DeviceSession(device, timeout=0.05)

        async with session.exclusive("hold"):
            assert session.busy
            with pytest.raises(DeviceBusyError):
                await session.call("sign_message", "44'/1'/0'/0/0", "00")

        assert not session.busy

    @pytest.mark.asyncio
    async def test_transport_errors_wrapped(self, device):
        device.sign_message = AsyncMock(side_effect=OSError("usb unplugged"))
        session = DeviceSession(device)

        with pytest.raises(DeviceCommunicationError):
            await session.call("sign_message", "44'/1'/0'/0/0", "00")

        assert not session.busy

    @pytest.mark.asyncio
    async def test_disconnected_device(self, client, device):
        device.connected = False

        with pytest.raises(DeviceCommunicationError):
            await client.get_unused_address()
