"""Bitcoin wallet provider backed by a hardware signing device.

Derivation path: 44'/coin_type'/0'/0/index (49' when segwit)

Addresses and signatures come from the device; UTXOs and broadcast come
from the node query provider registered before this one.
"""

import logging
from typing import Optional, Union

from chainabstraction.bitcoin.script import create_output_script
from chainabstraction.bitcoin.transaction import SEQUENCE_FINAL
from chainabstraction.bitcoin.utxo import (
    DEFAULT_FEE_PER_BYTE,
    DEFAULT_GAP_LIMIT,
    DEFAULT_MAX_ADDRESSES,
    UtxoSelection,
    calculate_fee,
    select_utxos,
)
from chainabstraction.cancellation import CancellationToken, check_cancelled
from chainabstraction.errors import (
    ConfigurationError,
    InsufficientFundsError,
    NoUnusedAddressFound,
)
from chainabstraction.models import UTXO, Address, TxOutput
from chainabstraction.networks import NetworkParams, bitcoin
from chainabstraction.providers.base import Provider
from chainabstraction.signing.device import DeviceInput, SigningDevice
from chainabstraction.signing.session import DeviceSession

logger = logging.getLogger(__name__)


class BitcoinLedgerProvider(Provider):
    """Wallet operations delegated to a signing device.

    Example:
        provider = BitcoinLedgerProvider(device, network=networks.bitcoin_testnet)
        client.add_provider(provider)
        address = await client.get_unused_address()
    """

    OPERATIONS = (
        "get_address_from_derivation_path",
        "get_addresses",
        "get_unused_address",
        "get_derivation_path_from_address",
        "get_address_public_key",
        "sign_message",
        "calculate_fee",
        "generate_output_script",
        "get_utxos_for_amount",
        "assemble_outputs",
        "create_signed_transaction",
        "send_transaction",
        "sign_p2sh_transaction",
    )
    REQUIRES = (
        "get_unspent_transactions",
        "get_transaction_hex",
        "is_used_address",
        "broadcast_transaction",
    )

    def __init__(
        self,
        device: Union[SigningDevice, DeviceSession],
        network: NetworkParams = bitcoin,
        segwit: bool = False,
        fee_per_byte: int = DEFAULT_FEE_PER_BYTE,
        gap_limit: int = DEFAULT_GAP_LIMIT,
        max_addresses: int = DEFAULT_MAX_ADDRESSES,
        unused_address_scan_limit: int = 20,
        device_lock_timeout: Optional[float] = 60.0,
    ):
        """Initialize the provider.

        Args:
            device: Signing device, or a session already wrapping one
            network: Chain parameters
            segwit: Use BIP49 (P2SH-wrapped segwit) derivation
            fee_per_byte: Default fee rate in satoshis per byte
            gap_limit: Consecutive empty addresses ending a UTXO scan
            max_addresses: Hard bound on addresses scanned for UTXOs or lookups
            unused_address_scan_limit: Addresses checked by get_unused_address
            device_lock_timeout: Seconds to wait for the device lock
        """
        super().__init__()
        if isinstance(device, DeviceSession):
            self.session = device
        else:
            self.session = DeviceSession(device, timeout=device_lock_timeout)
        self.network = network
        self.segwit = segwit
        self.fee_per_byte = fee_per_byte
        self.gap_limit = gap_limit
        self.max_addresses = max_addresses
        self.unused_address_scan_limit = unused_address_scan_limit
        self.base_path = f"{49 if segwit else 44}'/{network.coin_type}'/0'/0/"
        # Derivation is deterministic, so addresses are safe to keep
        self._addresses: dict[str, Address] = {}

    # =========================================================================
    # Addresses
    # =========================================================================

    def get_derivation_path_from_index(self, index: int) -> str:
        return f"{self.base_path}{index}"

    async def get_address_from_derivation_path(self, path: str) -> Address:
        """Derive the address at a path (via the device)."""
        if path in self._addresses:
            return self._addresses[path]

        info = await self.session.call("get_wallet_public_key", path, False, self.segwit)
        # Only plain receive paths carry an index
        index = None
        suffix = path[len(self.base_path):] if path.startswith(self.base_path) else ""
        if suffix.isdigit():
            index = int(suffix)

        address = Address(
            address=info.address,
            derivation_path=path,
            index=index,
            public_key=info.public_key,
        )
        self._addresses[path] = address
        return address

    async def get_address_at_index(self, index: int) -> Address:
        return await self.get_address_from_derivation_path(self.get_derivation_path_from_index(index))

    async def get_addresses(self, start_index: int = 0, count: int = 1) -> list[Address]:
        """Derive count consecutive addresses from start_index."""
        return [await self.get_address_at_index(i) for i in range(start_index, start_index + count)]

    async def get_unused_address(
        self,
        start_index: int = 0,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Address:
        """First address from start_index that never received funds.

        Raises:
            NoUnusedAddressFound: If the scan limit is reached
            OperationCancelledError: If cancel_token is cancelled
        """
        is_used_address = self.get_method("is_used_address")

        for index in range(start_index, start_index + self.unused_address_scan_limit):
            check_cancelled(cancel_token)
            address = await self.get_address_at_index(index)
            if not await is_used_address(address.address):
                logger.debug(f"Unused address at index {index}: {address.address}")
                return address

        logger.warning(
            f"No unused address in {self.unused_address_scan_limit} addresses from {start_index}"
        )
        raise NoUnusedAddressFound(start_index, self.unused_address_scan_limit)

    async def get_derivation_path_from_address(self, address: Union[str, Address]) -> str:
        """Find the derivation path of a wallet address.

        Raises:
            ConfigurationError: If the address is not derived by this wallet
                within max_addresses
        """
        if isinstance(address, Address):
            if address.derivation_path:
                return address.derivation_path
            address = address.address

        for known in self._addresses.values():
            if known.address == address:
                return known.derivation_path

        for index in range(self.max_addresses):
            candidate = await self.get_address_at_index(index)
            if candidate.address == address:
                return candidate.derivation_path

        raise ConfigurationError(
            f"Address {address} not found in the first {self.max_addresses} wallet addresses"
        )

    async def get_address_public_key(self, address: Union[str, Address]) -> str:
        """Compressed public key hex of a wallet address."""
        path = await self.get_derivation_path_from_address(address)
        return (await self.get_address_from_derivation_path(path)).public_key

    async def sign_message(self, message: str, address: Union[str, Address]) -> str:
        """Sign a message with the key of a wallet address.

        Returns:
            Signature hex
        """
        path = await self.get_derivation_path_from_address(address)
        return await self.session.call("sign_message", path, message.encode().hex())

    # =========================================================================
    # Transactions
    # =========================================================================

    def calculate_fee(self, num_inputs: int, num_outputs: int, fee_per_byte: Optional[int] = None) -> int:
        return calculate_fee(num_inputs, num_outputs, self.fee_per_byte if fee_per_byte is None else fee_per_byte)

    def generate_output_script(self, address: str) -> bytes:
        return create_output_script(address, self.network)

    async def get_utxos_for_amount(
        self,
        amount: int,
        fee_per_byte: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> UtxoSelection:
        """Select wallet UTXOs covering amount plus fee."""
        return await select_utxos(
            amount,
            self.fee_per_byte if fee_per_byte is None else fee_per_byte,
            get_address=self.get_address_at_index,
            get_utxos=self.get_method("get_unspent_transactions"),
            gap_limit=self.gap_limit,
            max_addresses=self.max_addresses,
            cancel_token=cancel_token,
        )

    def assemble_outputs(
        self,
        recipient_script: bytes,
        send_amount: int,
        change_script: Optional[bytes] = None,
        change_amount: int = 0,
    ) -> list[TxOutput]:
        """Ordered outputs: payment first, change only when change_amount > 0."""
        outputs = [TxOutput(value=send_amount, script=recipient_script)]
        if change_amount > 0:
            if change_script is None:
                raise ConfigurationError("Change amount given without a change script")
            outputs.append(TxOutput(value=change_amount, script=change_script))
        return outputs

    async def _device_inputs(self, utxos: list[UTXO]) -> list[DeviceInput]:
        get_transaction_hex = self.get_method("get_transaction_hex")
        inputs = []
        for utxo in utxos:
            tx_hex = await get_transaction_hex(utxo.tx_hash)
            split = await self.session.call("split_transaction", tx_hex, self.segwit)
            inputs.append(DeviceInput(transaction=split, output_index=utxo.output_index))
        return inputs

    async def create_signed_transaction(
        self,
        utxos: list[UTXO],
        outputs: list[TxOutput],
        change_path: Optional[str] = None,
        fee_per_byte: Optional[int] = None,
        lock_time: int = 0,
    ) -> str:
        """Have the device sign a transaction spending wallet UTXOs.

        Returns:
            Raw signed transaction hex

        Raises:
            InsufficientFundsError: If the UTXOs do not cover outputs plus fee
            ConfigurationError: If a UTXO has no derivation path
        """
        fee = self.calculate_fee(len(utxos), len(outputs), fee_per_byte)
        total_cost = sum(o.value for o in outputs) + fee
        total_amount = sum(u.value for u in utxos)

        if total_amount < total_cost:
            raise InsufficientFundsError(required=total_cost, available=total_amount)

        paths = []
        for utxo in utxos:
            if not utxo.derivation_path:
                raise ConfigurationError(f"UTXO {utxo.tx_hash}:{utxo.output_index} has no derivation path")
            paths.append(utxo.derivation_path)

        inputs = await self._device_inputs(utxos)
        serialized = await self.session.call("serialize_transaction_outputs", outputs)

        logger.info(
            f"Signing transaction: {len(utxos)} inputs, {len(outputs)} outputs, fee={fee}"
        )
        return await self.session.call(
            "sign_transaction", inputs, paths, change_path, serialized.hex(), lock_time
        )

    async def send_transaction(
        self,
        to: str,
        value: int,
        fee_per_byte: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Select, sign and broadcast a payment.

        Returns:
            Transaction ID
        """
        fee_per_byte = self.fee_per_byte if fee_per_byte is None else fee_per_byte
        recipient_script = self.generate_output_script(to)

        selection = await self.get_utxos_for_amount(value, fee_per_byte, cancel_token)

        change_script = None
        change_path = None
        if selection.has_change:
            change = await self.get_unused_address(cancel_token=cancel_token)
            change_script = self.generate_output_script(change.address)
            change_path = change.derivation_path

        outputs = self.assemble_outputs(
            recipient_script, value, change_script, selection.change_amount
        )

        check_cancelled(cancel_token)
        raw_tx = await self.create_signed_transaction(selection.utxos, outputs, change_path, fee_per_byte)

        txid = await self.get_method("broadcast_transaction")(raw_tx)
        logger.info(f"Sent {value} to {to}: {txid}")
        return txid

    async def sign_p2sh_transaction(
        self,
        prev_txid: str,
        output_index: int,
        redeem_script: bytes,
        address: Union[str, Address],
        outputs: list[TxOutput],
        lock_time: int = 0,
        sequence: int = SEQUENCE_FINAL,
    ) -> bytes:
        """Sign a single P2SH input with the key of a wallet address.

        Returns:
            DER signature with sighash byte
        """
        path = await self.get_derivation_path_from_address(address)
        tx_hex = await self.get_method("get_transaction_hex")(prev_txid)
        split = await self.session.call("split_transaction", tx_hex, self.segwit)

        device_input = DeviceInput(
            transaction=split,
            output_index=output_index,
            redeem_script=redeem_script.hex(),
            sequence=sequence,
        )
        serialized = await self.session.call("serialize_transaction_outputs", outputs)
        signatures = await self.session.call(
            "sign_p2sh_transaction", [device_input], [path], serialized.hex(), lock_time
        )
        return bytes.fromhex(signatures[0])

    async def close(self) -> None:
        """Release the signing device."""
        await self.session.close()
