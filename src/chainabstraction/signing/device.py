"""Signing device interface.

The client never handles private keys. Every signature comes from an
external device (e.g. a Ledger running the Bitcoin app) through this
interface:

1. Derive addresses/public keys by BIP32 path
2. Parse previous transactions into the device input format
3. Serialize outputs
4. Sign the whole transaction in one call, returning the raw signed hex
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from chainabstraction.bitcoin.transaction import SEQUENCE_FINAL, serialize_outputs
from chainabstraction.models import TxOutput

logger = logging.getLogger(__name__)


@dataclass
class WalletPublicKey:
    """Public key information returned by the device for a path."""

    address: str
    public_key: str  # Compressed pubkey hex
    chain_code: Optional[str] = None


@dataclass
class DeviceInput:
    """Previous transaction output spent by a device-signed transaction.

    Attributes:
        transaction: Device-specific parsed previous transaction
            (result of split_transaction)
        output_index: Index of the spent output
        redeem_script: Redeem script hex for P2SH inputs
        sequence: Input sequence number
    """

    transaction: Any
    output_index: int
    redeem_script: Optional[str] = None
    sequence: int = SEQUENCE_FINAL


class SigningDevice(ABC):
    """Abstract hardware signing device.

    Implementations must never expose private keys. Calls on one device
    handle must not overlap; wrap the device in a DeviceSession.
    """

    @abstractmethod
    async def get_wallet_public_key(self, path: str, display: bool = False, segwit: bool = False) -> WalletPublicKey:
        """Get address and public key for a derivation path.

        Args:
            path: BIP32 path without the 'm/' prefix, e.g. "44'/0'/0'/0/3"
            display: Ask the device to show the address for confirmation
            segwit: Return a P2SH-wrapped segwit address
        """
        pass

    @abstractmethod
    async def sign_message(self, path: str, message_hex: str) -> str:
        """Sign a message with the key at path.

        Returns:
            Signature as hex
        """
        pass

    @abstractmethod
    async def split_transaction(self, transaction_hex: str, segwit: bool = False) -> Any:
        """Parse a raw transaction into the device input format."""
        pass

    async def serialize_transaction_outputs(self, outputs: list[TxOutput]) -> bytes:
        """Serialize outputs in the device wire format (count + outputs)."""
        return serialize_outputs(outputs)

    @abstractmethod
    async def sign_transaction(
        self,
        inputs: list[DeviceInput],
        paths: list[str],
        change_path: Optional[str],
        serialized_outputs: str,
        lock_time: int = 0,
    ) -> str:
        """Sign a transaction spending P2PKH inputs.

        Args:
            inputs: Spent outputs
            paths: Derivation path of the key for each input
            change_path: Path of the change output key (device hides it from display)
            serialized_outputs: Hex from serialize_transaction_outputs
            lock_time: Transaction lock time

        Returns:
            Raw signed transaction hex
        """
        pass

    @abstractmethod
    async def sign_p2sh_transaction(
        self,
        inputs: list[DeviceInput],
        paths: list[str],
        serialized_outputs: str,
        lock_time: int = 0,
    ) -> list[str]:
        """Sign P2SH inputs (redeem_script set on each input).

        Returns:
            One DER signature hex (with sighash byte) per input
        """
        pass

    async def close(self) -> None:
        """Release the transport."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
