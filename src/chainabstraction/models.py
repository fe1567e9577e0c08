"""Core data types shared by providers."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


@dataclass
class Address:
    """Chain address, optionally owned by the local key hierarchy.

    derivation_path is only set for addresses derived from the signing device.
    """

    address: str
    derivation_path: Optional[str] = None
    index: Optional[int] = None
    public_key: Optional[str] = None  # Compressed pubkey hex

    def __str__(self) -> str:
        return self.address


@dataclass
class UTXO:
    """Unspent transaction output."""

    tx_hash: str
    output_index: int
    value: int  # In smallest units (satoshis)
    address: Optional[str] = None
    derivation_path: Optional[str] = None
    confirmations: int = 0


@dataclass
class TxInput:
    """Transaction input spending a previous output."""

    prev_txid: str
    prev_index: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF


@dataclass
class TxOutput:
    """Transaction output."""

    value: int
    script: bytes
    address: Optional[str] = None


@dataclass
class Transaction:
    """Transaction as observed on chain or produced by a provider."""

    txid: str
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    raw_hex: Optional[str] = None
    version: int = 1
    lock_time: int = 0
    block_height: Optional[int] = None
    confirmations: int = 0

    def find_output(self, script: bytes, value: Optional[int] = None) -> Optional[int]:
        """Return index of the first output paying script (and value, if given)."""
        for index, output in enumerate(self.outputs):
            if output.script == script and (value is None or output.value == value):
                return index
        return None

    def spends(self, txid: str, index: Optional[int] = None) -> Optional[TxInput]:
        """Return the input spending txid[:index], if any."""
        for tx_input in self.inputs:
            if tx_input.prev_txid == txid and (index is None or tx_input.prev_index == index):
                return tx_input
        return None


@dataclass(frozen=True)
class SwapParams:
    """Parameters binding one HTLC swap attempt.

    Attributes:
        recipient_address: Address that can claim with the secret
        refund_address: Address that can refund after expiration
        secret_hash: SHA256 of the secret (hex, 64 chars)
        expiration: Absolute unix timestamp, or block height when below
            the lock-time threshold (500,000,000)
    """

    recipient_address: str
    refund_address: str
    secret_hash: str
    expiration: int

    def to_dict(self) -> dict:
        return {
            "recipient_address": self.recipient_address,
            "refund_address": self.refund_address,
            "secret_hash": self.secret_hash,
            "expiration": self.expiration,
        }


@dataclass
class SwapScript:
    """HTLC redeem script with its derived P2SH address."""

    redeem_script: bytes
    address: Address
    output_script: bytes  # scriptPubKey paying the P2SH address


class SwapState(str, Enum):
    """Swap lifecycle states. Transitions are driven by the caller."""

    CREATED = "created"
    INITIATED = "initiated"     # Funding transaction broadcast
    OBSERVED = "observed"       # Funding transaction seen on chain
    VERIFIED = "verified"       # Funding output matches the swap params
    CLAIMED = "claimed"         # Spent through the secret branch
    REFUNDED = "refunded"       # Spent through the timelock branch
