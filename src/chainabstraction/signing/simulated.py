"""Simulated signing device for development and tests (no real keys).

Public keys are derived deterministically from a seed and the path.
Signatures are deterministic placeholders: they are well formed enough to
be carried in a scriptSig but are not valid ECDSA signatures.
"""

import logging
from typing import Optional

from chainabstraction.bitcoin.script import push_data, pubkey_to_address
from chainabstraction.bitcoin.transaction import (
    SIGHASH_ALL,
    decode_outputs,
    decode_transaction,
    serialize_transaction,
    signature_preimage,
)
from chainabstraction.crypto import sha256
from chainabstraction.errors import DeviceCommunicationError
from chainabstraction.models import Transaction, TxInput
from chainabstraction.networks import NetworkParams, bitcoin
from chainabstraction.signing.device import DeviceInput, SigningDevice, WalletPublicKey

logger = logging.getLogger(__name__)


class SimulatedSigningDevice(SigningDevice):
    """Deterministic fake device.

    Attributes:
        calls: Names of device methods invoked, in order
    """

    def __init__(self, network: NetworkParams = bitcoin, seed: str = "simulated"):
        self.network = network
        self.seed = seed
        self.calls: list[str] = []
        self.connected = True

    def _check(self, method: str) -> None:
        self.calls.append(method)
        if not self.connected:
            raise DeviceCommunicationError("Simulated device disconnected")

    def public_key_for_path(self, path: str) -> bytes:
        return b"\x02" + sha256(f"{self.seed}:{path}".encode())

    def _signature(self, path: str, payload: bytes) -> bytes:
        digest = sha256(f"{self.seed}:{path}".encode() + payload)
        return bytes([0x30, 0x44]) + digest + sha256(digest) + bytes([SIGHASH_ALL])

    async def get_wallet_public_key(self, path: str, display: bool = False, segwit: bool = False) -> WalletPublicKey:
        self._check("get_wallet_public_key")
        public_key = self.public_key_for_path(path)
        return WalletPublicKey(
            address=pubkey_to_address(public_key, self.network),
            public_key=public_key.hex(),
        )

    async def sign_message(self, path: str, message_hex: str) -> str:
        self._check("sign_message")
        return self._signature(path, bytes.fromhex(message_hex)).hex()

    async def split_transaction(self, transaction_hex: str, segwit: bool = False) -> Transaction:
        self._check("split_transaction")
        return decode_transaction(transaction_hex, self.network)

    async def sign_transaction(
        self,
        inputs: list[DeviceInput],
        paths: list[str],
        change_path: Optional[str],
        serialized_outputs: str,
        lock_time: int = 0,
    ) -> str:
        self._check("sign_transaction")
        outputs = decode_outputs(serialized_outputs, self.network)
        tx_inputs = [
            TxInput(prev_txid=i.transaction.txid, prev_index=i.output_index, sequence=i.sequence)
            for i in inputs
        ]

        for index, (tx_input, path) in enumerate(zip(tx_inputs, paths)):
            prev_script = inputs[index].transaction.outputs[tx_input.prev_index].script
            preimage = signature_preimage(tx_inputs, outputs, index, prev_script, lock_time=lock_time)
            tx_input.script_sig = (
                push_data(self._signature(path, preimage))
                + push_data(self.public_key_for_path(path))
            )

        raw = serialize_transaction(tx_inputs, outputs, lock_time=lock_time)
        logger.debug(f"Simulated device signed {len(tx_inputs)} inputs")
        return raw.hex()

    async def sign_p2sh_transaction(
        self,
        inputs: list[DeviceInput],
        paths: list[str],
        serialized_outputs: str,
        lock_time: int = 0,
    ) -> list[str]:
        self._check("sign_p2sh_transaction")
        outputs = decode_outputs(serialized_outputs, self.network)
        tx_inputs = [
            TxInput(prev_txid=i.transaction.txid, prev_index=i.output_index, sequence=i.sequence)
            for i in inputs
        ]

        signatures = []
        for index, path in enumerate(paths):
            script_code = bytes.fromhex(inputs[index].redeem_script or "")
            preimage = signature_preimage(tx_inputs, outputs, index, script_code, lock_time=lock_time)
            signatures.append(self._signature(path, preimage).hex())
        return signatures
