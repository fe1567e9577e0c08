"""Pytest configuration and fixtures."""

import os

import pytest

# Set test environment
os.environ["CHAIN_NETWORK"] = "bitcoin_testnet"
os.environ["CHAIN_QUERY_PROVIDER"] = "dryrun"
os.environ["CHAIN_LOG_LEVEL"] = "DEBUG"

from chainabstraction.bitcoin.ledger import BitcoinLedgerProvider
from chainabstraction.bitcoin.script import pubkey_to_address
from chainabstraction.bitcoin.swap import BitcoinSwapProvider
from chainabstraction.client import Client
from chainabstraction.config import get_settings
from chainabstraction.networks import bitcoin_testnet
from chainabstraction.providers.dryrun import DryRunQueryProvider
from chainabstraction.signing.simulated import SimulatedSigningDevice


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached per process; tests may change the environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def network():
    return bitcoin_testnet


@pytest.fixture
def device(network):
    return SimulatedSigningDevice(network=network)


@pytest.fixture
def chain(network):
    """In-memory chain at height 100."""
    return DryRunQueryProvider(network=network, block_height=100)


@pytest.fixture
def ledger(device, network):
    return BitcoinLedgerProvider(
        device,
        network=network,
        gap_limit=3,
        max_addresses=20,
        unused_address_scan_limit=10,
    )


@pytest.fixture
def swap_provider(network):
    return BitcoinSwapProvider(network=network)


@pytest.fixture
def client(chain, ledger, swap_provider):
    return Client([chain, ledger, swap_provider])


@pytest.fixture
def wallet_address(device, network):
    """Address the simulated device derives at a receive index."""

    def _address(index: int) -> str:
        path = f"44'/{network.coin_type}'/0'/0/{index}"
        return pubkey_to_address(device.public_key_for_path(path), network)

    return _address
