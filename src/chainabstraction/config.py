"""Client configuration using pydantic-settings."""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chainabstraction.networks import NetworkParams, get_network

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Client settings loaded from environment variables (CHAIN_ prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="CHAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Network
    # ======================
    network: str = Field(default="bitcoin_testnet", description="Network name (see networks.NETWORKS)")

    # ======================
    # Node queries
    # ======================
    query_provider: str = Field(default="dryrun", description="Query provider: esplora, rpc or dryrun")
    esplora_url: Optional[str] = Field(
        default=None, description="Esplora API root (defaults to the network explorer)"
    )
    rpc_url: str = Field(default="http://127.0.0.1:18332", description="Address-indexed node RPC URL")
    rpc_user: Optional[str] = Field(default=None, description="RPC username")
    rpc_password: Optional[str] = Field(default=None, description="RPC password")
    http_timeout: float = Field(default=30.0, description="HTTP timeout in seconds")

    # ======================
    # Wallet
    # ======================
    fee_per_byte: int = Field(default=3, description="Fee rate in satoshis per byte")
    segwit: bool = Field(default=False, description="Use BIP49 derivation paths")
    address_gap_limit: int = Field(default=10, description="Empty addresses ending a UTXO scan")
    max_address_scan: int = Field(default=1000, description="Hard bound on scanned addresses")
    unused_address_scan_limit: int = Field(default=20, description="Addresses checked for an unused one")
    device_lock_timeout: float = Field(default=60.0, description="Seconds to wait for the signing device")

    # ======================
    # Logging
    # ======================
    log_level: str = Field(default="INFO", description="Root log level")

    @property
    def network_params(self) -> NetworkParams:
        return get_network(self.network)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        data = self.model_dump()
        if data.get("rpc_password"):
            data["rpc_password"] = "***"
        return data


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the log level and format from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
