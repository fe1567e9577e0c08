"""Network parameters for supported UTXO chains.

Each network is described by:
- BIP44 coin type
- Base58 version byte for pay-to-pubkey-hash addresses
- Base58 version byte for pay-to-script-hash addresses
- Block explorer base URL
"""

from dataclasses import dataclass

from chainabstraction.errors import ConfigurationError


@dataclass(frozen=True)
class NetworkParams:
    """Static constants for one chain."""

    name: str
    coin_type: int
    pub_key_hash_version: int
    script_hash_version: int
    explorer_url: str
    testnet: bool = False


bitcoin = NetworkParams(
    name="bitcoin",
    coin_type=0,
    pub_key_hash_version=0x00,  # '1' prefix
    script_hash_version=0x05,   # '3' prefix
    explorer_url="https://blockstream.info/api",
)

bitcoin_testnet = NetworkParams(
    name="bitcoin_testnet",
    coin_type=1,
    pub_key_hash_version=0x6f,  # 'm' or 'n' prefix
    script_hash_version=0xc4,   # '2' prefix
    explorer_url="https://blockstream.info/testnet/api",
    testnet=True,
)

litecoin = NetworkParams(
    name="litecoin",
    coin_type=2,
    pub_key_hash_version=0x30,  # 'L' prefix
    script_hash_version=0x32,   # 'M' prefix
    explorer_url="https://litecoinspace.org/api",
)

litecoin_testnet = NetworkParams(
    name="litecoin_testnet",
    coin_type=1,
    pub_key_hash_version=0x6f,
    script_hash_version=0x3a,   # 'Q' prefix
    explorer_url="https://litecoinspace.org/testnet/api",
    testnet=True,
)

dogecoin = NetworkParams(
    name="dogecoin",
    coin_type=3,
    pub_key_hash_version=0x1e,  # 'D' prefix
    script_hash_version=0x16,   # '9' or 'A' prefix
    explorer_url="https://dogechain.info/api/v1",
)

NETWORKS: dict[str, NetworkParams] = {
    n.name: n
    for n in (bitcoin, bitcoin_testnet, litecoin, litecoin_testnet, dogecoin)
}


def get_network(name: str) -> NetworkParams:
    """Look up network parameters by name.

    Raises:
        ConfigurationError: If the network is not supported
    """
    try:
        return NETWORKS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported network '{name}'. Expected one of {sorted(NETWORKS)}"
        )


def get_supported_networks() -> list[str]:
    """Get list of supported network names."""
    return sorted(NETWORKS)
