"""Bitcoin script construction and HTLC swap scripts.

HTLC redeem script (legacy P2SH):
    OP_IF
        OP_SIZE 32 OP_EQUALVERIFY
        OP_SHA256 <secret_hash> OP_EQUALVERIFY
        OP_DUP OP_HASH160 <recipient_pubkey_hash>
    OP_ELSE
        <expiration> OP_CHECKLOCKTIMEVERIFY OP_DROP
        OP_DUP OP_HASH160 <refund_pubkey_hash>
    OP_ENDIF
    OP_EQUALVERIFY OP_CHECKSIG

To claim (with secret):
    <signature> <pubkey> <secret> OP_1 <redeem_script>

To refund (after expiration):
    <signature> <pubkey> OP_0 <redeem_script>
"""

import logging
import struct
from typing import Optional

from bip_utils import Base58ChecksumError, Base58Decoder, Base58Encoder

from chainabstraction.crypto import hash160
from chainabstraction.errors import ConfigurationError
from chainabstraction.models import Address, SwapParams, SwapScript
from chainabstraction.networks import NetworkParams

logger = logging.getLogger(__name__)


# Bitcoin Script opcodes
OP_0 = 0x00
OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_1 = 0x51
OP_TRUE = 0x51
OP_16 = 0x60
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_SIZE = 0x82
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1

SECRET_SIZE = 32
PUBKEY_HASH_SIZE = 20

# Lock times below this value are block heights, above are unix timestamps
LOCKTIME_THRESHOLD = 500_000_000


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([OP_PUSHDATA1, length]) + data
    elif length <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack('<H', length) + data
    else:
        return bytes([OP_PUSHDATA4]) + struct.pack('<I', length) + data


def encode_script_number(n: int) -> bytes:
    """Minimal little-endian script number encoding with sign bit."""
    if n == 0:
        return b""
    negative = n < 0
    abs_n = abs(n)
    result = []
    while abs_n:
        result.append(abs_n & 0xff)
        abs_n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def push_int(n: int) -> bytes:
    """Push integer to script (for timelock)."""
    if n == 0:
        return bytes([OP_0])
    elif n == -1:
        return bytes([OP_1NEGATE])
    elif 1 <= n <= 16:
        return bytes([OP_1 + n - 1])  # OP_1 through OP_16
    return push_data(encode_script_number(n))


def parse_script(script: bytes) -> list:
    """Decode a script into opcodes (int) and pushed data (bytes).

    Small integer opcodes (OP_0, OP_1..OP_16) are returned as ints.

    Raises:
        ValueError: If a push runs past the end of the script
    """
    items = []
    pos = 0
    while pos < len(script):
        opcode = script[pos]
        pos += 1
        if 0 < opcode < OP_PUSHDATA1:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            length = script[pos]
            pos += 1
        elif opcode == OP_PUSHDATA2:
            length = struct.unpack('<H', script[pos:pos + 2])[0]
            pos += 2
        elif opcode == OP_PUSHDATA4:
            length = struct.unpack('<I', script[pos:pos + 4])[0]
            pos += 4
        else:
            items.append(opcode)
            continue

        if pos + length > len(script):
            raise ValueError("Push data exceeds script length")
        items.append(script[pos:pos + length])
        pos += length
    return items


# =============================================================================
# Addresses
# =============================================================================

def decode_address(address: str) -> tuple[int, bytes]:
    """Decode a base58check address into (version byte, hash).

    Raises:
        ConfigurationError: If the address is not valid base58check
    """
    try:
        payload = Base58Decoder.CheckDecode(address)
    except (Base58ChecksumError, ValueError) as e:
        raise ConfigurationError(f"Not a valid address: {address} ({e})")

    if len(payload) != 1 + PUBKEY_HASH_SIZE:
        raise ConfigurationError(f"Not a valid address: {address} (bad length)")

    return payload[0], payload[1:]


def encode_address(version: int, hash_bytes: bytes) -> str:
    """Encode a version byte and 20-byte hash as base58check."""
    return Base58Encoder.CheckEncode(bytes([version]) + hash_bytes)


def address_type(address: str, network: NetworkParams) -> str:
    """Return 'p2pkh' or 'p2sh' for an address on the given network.

    Raises:
        ConfigurationError: If the version byte matches neither type
    """
    version, _ = decode_address(address)
    if version == network.pub_key_hash_version:
        return "p2pkh"
    if version == network.script_hash_version:
        return "p2sh"
    raise ConfigurationError(
        f"Unsupported address type for {network.name}: {address} (version 0x{version:02x})"
    )


def address_to_pubkey_hash(address: str, network: NetworkParams) -> bytes:
    """Return the HASH160 of a P2PKH address.

    Raises:
        ConfigurationError: If the address is not P2PKH on this network
    """
    version, pubkey_hash = decode_address(address)
    if version != network.pub_key_hash_version:
        raise ConfigurationError(
            f"Expected a pay-to-pubkey-hash address on {network.name}, got {address}"
        )
    return pubkey_hash


def pubkey_to_address(public_key: bytes, network: NetworkParams) -> str:
    """P2PKH address for a public key."""
    return encode_address(network.pub_key_hash_version, hash160(public_key))


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160]) + push_data(pubkey_hash) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <hash> OP_EQUAL"""
    return bytes([OP_HASH160]) + push_data(script_hash) + bytes([OP_EQUAL])


def create_output_script(address: str, network: NetworkParams) -> bytes:
    """Build the scriptPubKey paying an address.

    Raises:
        ConfigurationError: For addresses that are neither P2PKH nor P2SH
    """
    version, hash_bytes = decode_address(address)
    if version == network.pub_key_hash_version:
        return p2pkh_script(hash_bytes)
    if version == network.script_hash_version:
        return p2sh_script(hash_bytes)
    raise ConfigurationError(
        f"Unsupported address type for {network.name}: {address} (version 0x{version:02x})"
    )


def output_script_to_address(script: bytes, network: NetworkParams) -> Optional[str]:
    """Reverse of create_output_script for standard P2PKH/P2SH scripts."""
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, PUBKEY_HASH_SIZE])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return encode_address(network.pub_key_hash_version, script[3:23])
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, PUBKEY_HASH_SIZE]) and script[22] == OP_EQUAL:
        return encode_address(network.script_hash_version, script[2:22])
    return None


# =============================================================================
# Swap scripts
# =============================================================================

def build_swap_script(
    recipient_pubkey_hash: bytes,
    refund_pubkey_hash: bytes,
    secret_hash: bytes,
    expiration: int,
) -> bytes:
    """Create HTLC redeem script.

    Args:
        recipient_pubkey_hash: HASH160 of the claim key (20 bytes)
        refund_pubkey_hash: HASH160 of the refund key (20 bytes)
        secret_hash: SHA256 of the secret (32 bytes)
        expiration: Absolute lock time (block height or unix timestamp)

    Returns:
        Redeem script bytes

    Raises:
        ConfigurationError: On wrong field sizes or non-positive expiration
    """
    if len(recipient_pubkey_hash) != PUBKEY_HASH_SIZE or len(refund_pubkey_hash) != PUBKEY_HASH_SIZE:
        raise ConfigurationError("Pubkey hashes must be 20 bytes")
    if len(secret_hash) != SECRET_SIZE:
        raise ConfigurationError("Secret hash must be 32 bytes")
    if expiration <= 0 or expiration > 0xFFFFFFFF:
        raise ConfigurationError(f"Invalid expiration: {expiration}")

    script = bytes([OP_IF])
    script += bytes([OP_SIZE]) + push_int(SECRET_SIZE) + bytes([OP_EQUALVERIFY])
    script += bytes([OP_SHA256]) + push_data(secret_hash) + bytes([OP_EQUALVERIFY])
    script += bytes([OP_DUP, OP_HASH160]) + push_data(recipient_pubkey_hash)
    script += bytes([OP_ELSE])
    script += push_int(expiration) + bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
    script += bytes([OP_DUP, OP_HASH160]) + push_data(refund_pubkey_hash)
    script += bytes([OP_ENDIF])
    script += bytes([OP_EQUALVERIFY, OP_CHECKSIG])

    return script


def build_swap_script_from_params(params: SwapParams, network: NetworkParams) -> bytes:
    """Build the redeem script for SwapParams on a network."""
    try:
        secret_hash = bytes.fromhex(params.secret_hash)
    except (ValueError, TypeError):
        raise ConfigurationError(f"Secret hash is not hex: {params.secret_hash!r}")

    return build_swap_script(
        address_to_pubkey_hash(params.recipient_address, network),
        address_to_pubkey_hash(params.refund_address, network),
        secret_hash,
        params.expiration,
    )


def derive_swap_address(script: bytes, network: NetworkParams) -> Address:
    """P2SH address of a redeem script."""
    return Address(address=encode_address(network.script_hash_version, hash160(script)))


def create_swap_script(params: SwapParams, network: NetworkParams) -> SwapScript:
    """Build redeem script, P2SH address and output script for a swap."""
    redeem_script = build_swap_script_from_params(params, network)
    script_hash = hash160(redeem_script)
    return SwapScript(
        redeem_script=redeem_script,
        address=Address(address=encode_address(network.script_hash_version, script_hash)),
        output_script=p2sh_script(script_hash),
    )


def match_swap_output(output_script: bytes, params: SwapParams, network: NetworkParams) -> bool:
    """Check that an on-chain output script pays the expected swap script.

    Never raises: invalid params simply do not match.
    """
    try:
        expected = create_swap_script(params, network).output_script
    except ConfigurationError as e:
        logger.debug(f"Swap params do not produce a script: {e}")
        return False
    return bytes(output_script) == expected


# =============================================================================
# Spending scripts
# =============================================================================

def build_claim_script_sig(signature: bytes, public_key: bytes, secret: bytes, redeem_script: bytes) -> bytes:
    """<sig> <pubkey> <secret> OP_1 <redeem_script>"""
    return (
        push_data(signature)
        + push_data(public_key)
        + push_data(secret)
        + bytes([OP_1])
        + push_data(redeem_script)
    )


def build_refund_script_sig(signature: bytes, public_key: bytes, redeem_script: bytes) -> bytes:
    """<sig> <pubkey> OP_0 <redeem_script>"""
    return (
        push_data(signature)
        + push_data(public_key)
        + bytes([OP_0])
        + push_data(redeem_script)
    )


def extract_secret(script_sig: bytes, redeem_script: Optional[bytes] = None) -> Optional[bytes]:
    """Extract the secret from a claim scriptSig.

    Returns:
        Secret bytes, or None if the scriptSig is not a claim (of redeem_script)
    """
    try:
        items = parse_script(script_sig)
    except (ValueError, IndexError):
        return None

    if len(items) != 5 or items[3] != OP_1:
        return None
    if redeem_script is not None and items[4] != redeem_script:
        return None

    secret = items[2]
    if not isinstance(secret, bytes) or len(secret) != SECRET_SIZE:
        return None
    return secret
