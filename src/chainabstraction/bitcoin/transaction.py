"""Legacy (non-witness) Bitcoin transaction serialization.

Raw format:
    version (4 LE) | vin count (varint) | inputs | vout count (varint) | outputs | lock_time (4 LE)
Input:
    prev txid (32, reversed) | prev index (4 LE) | scriptSig (varint + bytes) | sequence (4 LE)
Output:
    value (8 LE) | scriptPubKey (varint + bytes)
"""

import struct
from typing import Optional

from chainabstraction.bitcoin.script import output_script_to_address
from chainabstraction.crypto import double_sha256
from chainabstraction.models import Transaction, TxInput, TxOutput
from chainabstraction.networks import NetworkParams

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME = 0xFFFFFFFE  # Enables nLockTime without RBF
SIGHASH_ALL = 0x01


def encode_varint(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return bytes([n])
    elif n <= 0xffff:
        return b'\xfd' + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack('<I', n)
    return b'\xff' + struct.pack('<Q', n)


def decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Decode CompactSize at pos. Returns (value, new position)."""
    prefix = data[pos]
    if prefix < 0xfd:
        return prefix, pos + 1
    elif prefix == 0xfd:
        return struct.unpack('<H', data[pos + 1:pos + 3])[0], pos + 3
    elif prefix == 0xfe:
        return struct.unpack('<I', data[pos + 1:pos + 5])[0], pos + 5
    return struct.unpack('<Q', data[pos + 1:pos + 9])[0], pos + 9


def serialize_input(tx_input: TxInput) -> bytes:
    return (
        bytes.fromhex(tx_input.prev_txid)[::-1]
        + struct.pack('<I', tx_input.prev_index)
        + encode_varint(len(tx_input.script_sig))
        + tx_input.script_sig
        + struct.pack('<I', tx_input.sequence)
    )


def serialize_output(output: TxOutput) -> bytes:
    return struct.pack('<q', output.value) + encode_varint(len(output.script)) + output.script


def serialize_outputs(outputs: list[TxOutput]) -> bytes:
    """Output count followed by serialized outputs (device wire format)."""
    return encode_varint(len(outputs)) + b"".join(serialize_output(o) for o in outputs)


def serialize_transaction(
    inputs: list[TxInput],
    outputs: list[TxOutput],
    version: int = 1,
    lock_time: int = 0,
) -> bytes:
    """Serialize a legacy transaction."""
    return (
        struct.pack('<i', version)
        + encode_varint(len(inputs))
        + b"".join(serialize_input(i) for i in inputs)
        + serialize_outputs(outputs)
        + struct.pack('<I', lock_time)
    )


def compute_txid(raw: bytes) -> str:
    """Transaction id: double SHA256 of the raw bytes, byte-reversed hex."""
    return double_sha256(raw)[::-1].hex()


def build_transaction(
    inputs: list[TxInput],
    outputs: list[TxOutput],
    version: int = 1,
    lock_time: int = 0,
) -> Transaction:
    """Serialize inputs/outputs and wrap them as a Transaction with its txid."""
    raw = serialize_transaction(inputs, outputs, version, lock_time)
    return Transaction(
        txid=compute_txid(raw),
        inputs=list(inputs),
        outputs=list(outputs),
        raw_hex=raw.hex(),
        version=version,
        lock_time=lock_time,
    )


def signature_preimage(
    inputs: list[TxInput],
    outputs: list[TxOutput],
    input_index: int,
    script_code: bytes,
    version: int = 1,
    lock_time: int = 0,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Legacy SIGHASH_ALL preimage for one input.

    The signed input carries script_code, all others an empty scriptSig.
    """
    stripped = [
        TxInput(
            prev_txid=i.prev_txid,
            prev_index=i.prev_index,
            script_sig=script_code if n == input_index else b"",
            sequence=i.sequence,
        )
        for n, i in enumerate(inputs)
    ]
    return serialize_transaction(stripped, outputs, version, lock_time) + struct.pack('<I', sighash_type)


def decode_transaction(raw_hex: str, network: Optional[NetworkParams] = None) -> Transaction:
    """Parse a raw legacy transaction.

    Args:
        raw_hex: Hex-encoded raw transaction
        network: When given, output addresses are filled in for standard scripts

    Raises:
        ValueError: If the data is truncated or malformed
    """
    try:
        raw = bytes.fromhex(raw_hex)
        pos = 0
        version = struct.unpack('<i', raw[pos:pos + 4])[0]
        pos += 4

        count, pos = decode_varint(raw, pos)
        inputs = []
        for _ in range(count):
            prev_txid = raw[pos:pos + 32][::-1].hex()
            pos += 32
            prev_index = struct.unpack('<I', raw[pos:pos + 4])[0]
            pos += 4
            length, pos = decode_varint(raw, pos)
            script_sig = raw[pos:pos + length]
            pos += length
            sequence = struct.unpack('<I', raw[pos:pos + 4])[0]
            pos += 4
            inputs.append(TxInput(prev_txid, prev_index, script_sig, sequence))

        outputs, pos = _decode_outputs(raw, pos, network)

        lock_time = struct.unpack('<I', raw[pos:pos + 4])[0]
        pos += 4
    except (struct.error, IndexError) as e:
        raise ValueError(f"Truncated transaction: {e}")

    if pos != len(raw):
        raise ValueError(f"Trailing data after transaction ({len(raw) - pos} bytes)")

    return Transaction(
        txid=compute_txid(raw),
        inputs=inputs,
        outputs=outputs,
        raw_hex=raw_hex,
        version=version,
        lock_time=lock_time,
    )


def _decode_outputs(raw: bytes, pos: int, network: Optional[NetworkParams] = None) -> tuple[list[TxOutput], int]:
    count, pos = decode_varint(raw, pos)
    outputs = []
    for _ in range(count):
        value = struct.unpack('<q', raw[pos:pos + 8])[0]
        pos += 8
        length, pos = decode_varint(raw, pos)
        script = raw[pos:pos + length]
        pos += length
        address = output_script_to_address(script, network) if network else None
        outputs.append(TxOutput(value=value, script=script, address=address))
    return outputs, pos


def decode_outputs(serialized_outputs_hex: str, network: Optional[NetworkParams] = None) -> list[TxOutput]:
    """Parse serialize_outputs() data back into outputs.

    Raises:
        ValueError: If the data is truncated or has trailing bytes
    """
    raw = bytes.fromhex(serialized_outputs_hex)
    try:
        outputs, pos = _decode_outputs(raw, 0, network)
    except (struct.error, IndexError) as e:
        raise ValueError(f"Truncated outputs: {e}")
    if pos != len(raw):
        raise ValueError("Trailing data after outputs")
    return outputs
