"""Factory composing a Bitcoin swap client from settings."""

import logging
from typing import Optional

from chainabstraction.bitcoin.ledger import BitcoinLedgerProvider
from chainabstraction.bitcoin.swap import SWAP_OPERATIONS, BitcoinSwapProvider
from chainabstraction.client import Client
from chainabstraction.config import Settings, get_settings
from chainabstraction.errors import ConfigurationError
from chainabstraction.providers.base import ChainQueryProvider
from chainabstraction.providers.dryrun import DryRunQueryProvider
from chainabstraction.providers.esplora import EsploraProvider
from chainabstraction.providers.rpc import BitcoreRPCProvider
from chainabstraction.signing.device import SigningDevice

logger = logging.getLogger(__name__)

WALLET_OPERATIONS = (
    "get_unused_address",
    "sign_message",
    "send_transaction",
    "sign_p2sh_transaction",
    "get_address_public_key",
)


def create_query_provider(settings: Settings) -> ChainQueryProvider:
    """Create the node query provider selected by settings.query_provider.

    - dryrun (default): In-memory chain for testing
    - esplora: Esplora REST API
    - rpc: Address-indexed node JSON-RPC
    """
    network = settings.network_params
    provider_name = settings.query_provider.lower()

    if provider_name == "esplora":
        return EsploraProvider(network=network, base_url=settings.esplora_url, timeout=settings.http_timeout)
    if provider_name == "rpc":
        return BitcoreRPCProvider(
            settings.rpc_url,
            username=settings.rpc_user,
            password=settings.rpc_password,
            network=network,
            timeout=settings.http_timeout,
        )
    if provider_name == "dryrun":
        return DryRunQueryProvider(network=network)

    raise ConfigurationError(f"Unknown query provider: {settings.query_provider}")


def create_bitcoin_client(
    device: SigningDevice,
    settings: Optional[Settings] = None,
    query_provider: Optional[ChainQueryProvider] = None,
) -> Client:
    """Compose query -> ledger -> swap providers into a validated client.

    Args:
        device: Signing device holding the wallet keys
        settings: Settings (defaults to get_settings())
        query_provider: Overrides the provider selected by settings

    Raises:
        ConfigurationError: On unknown network or query provider
        MethodNotImplementedError: If a required operation is missing
    """
    settings = settings or get_settings()
    network = settings.network_params

    client = Client()
    client.add_provider(query_provider or create_query_provider(settings))
    client.add_provider(
        BitcoinLedgerProvider(
            device,
            network=network,
            segwit=settings.segwit,
            fee_per_byte=settings.fee_per_byte,
            gap_limit=settings.address_gap_limit,
            max_addresses=settings.max_address_scan,
            unused_address_scan_limit=settings.unused_address_scan_limit,
            device_lock_timeout=settings.device_lock_timeout,
        )
    )
    client.add_provider(BitcoinSwapProvider(network=network, fee_per_byte=settings.fee_per_byte))

    client.validate(ChainQueryProvider.OPERATIONS + WALLET_OPERATIONS + SWAP_OPERATIONS)
    logger.info(f"Created {network.name} client: {client}")
    return client
