"""Node query providers."""

from chainabstraction.providers.base import ChainQueryProvider, Provider
from chainabstraction.providers.dryrun import DryRunQueryProvider
from chainabstraction.providers.esplora import EsploraProvider
from chainabstraction.providers.rpc import BitcoreRPCProvider

__all__ = [
    "Provider",
    "ChainQueryProvider",
    "DryRunQueryProvider",
    "EsploraProvider",
    "BitcoreRPCProvider",
]
