"""Hashing and secret helpers.

Uses bip_utils for HASH160 (RIPEMD160 is not always exposed by hashlib)
and hashlib for SHA256.
"""

import hashlib
import secrets

from bip_utils.utils.crypto import Hash160


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    """SHA256(SHA256(data)), used for txids and base58 checksums."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return Hash160.QuickDigest(data)


def random_secret() -> str:
    """Generate a random 32-byte secret as hex."""
    return secrets.token_bytes(32).hex()


def secret_hash(secret_hex: str) -> str:
    """SHA256 of a hex secret, as hex."""
    return sha256(bytes.fromhex(secret_hex)).hex()


def verify_secret(secret_hex: str, secret_hash_hex: str) -> bool:
    """Verify that SHA256(secret) == secret_hash.

    Returns:
        True if valid, False for mismatched or malformed input
    """
    try:
        secret = bytes.fromhex(secret_hex)
        expected = bytes.fromhex(secret_hash_hex)
    except (ValueError, TypeError):
        return False
    return sha256(secret) == expected
