"""Chain client composing capability providers.

Resolution policy: last-registered-wins. The most recently added provider
implementing an operation handles it. A provider resolving an operation on
its own behalf only sees providers registered before it, so it can never
resolve to itself.

Lifecycle:
1. Setup: add_provider() in order (lowest level first)
2. validate() or first resolution builds the dispatch table
3. Operations: resolution is read-only, add_provider() is rejected
"""

import logging
from typing import Any, Callable, Iterable, Optional

from chainabstraction.cancellation import CancellationToken
from chainabstraction.crypto import sha256
from chainabstraction.errors import ConfigurationError, MethodNotImplementedError
from chainabstraction.models import Address, SwapParams, SwapScript, Transaction
from chainabstraction.providers.base import Provider

logger = logging.getLogger(__name__)


class Client:
    """One logical chain client built from an ordered list of providers.

    Usage:
        client = Client()
        client.add_provider(EsploraProvider(network=networks.bitcoin))
        client.add_provider(BitcoinLedgerProvider(device, network=networks.bitcoin))
        client.add_provider(BitcoinSwapProvider(network=networks.bitcoin))
        client.validate(SWAP_OPERATIONS)

        txid = await client.initiate_swap(10000, params)
        height = await client.get_block_height()  # forwarded to EsploraProvider
    """

    def __init__(self, providers: Optional[Iterable[Provider]] = None):
        self._providers: list[Provider] = []
        self._positions: dict[int, int] = {}
        # operation -> provider positions implementing it, ascending
        self._dispatch: Optional[dict[str, tuple[int, ...]]] = None

        for provider in providers or ():
            self.add_provider(provider)

    @property
    def providers(self) -> tuple[Provider, ...]:
        return tuple(self._providers)

    @property
    def is_built(self) -> bool:
        return self._dispatch is not None

    def add_provider(self, provider: Provider) -> "Client":
        """Append a provider. Only allowed before the dispatch table is built.

        Raises:
            ConfigurationError: If operations have already been resolved or
                the provider is already registered
        """
        if self._dispatch is not None:
            raise ConfigurationError(
                f"Cannot add {provider.name}: client setup is complete"
            )
        if id(provider) in self._positions:
            raise ConfigurationError(f"{provider.name} is already registered")

        provider.set_client(self)
        self._positions[id(provider)] = len(self._providers)
        self._providers.append(provider)
        logger.debug(f"Added provider {provider.name} ({len(provider.operations)} operations)")
        return self

    def build(self) -> dict[str, tuple[int, ...]]:
        """Build the static dispatch table (idempotent).

        Raises:
            ConfigurationError: If a provider requires an operation that no
                provider registered before it implements; the client stays
                in setup so the missing provider can still be added
        """
        if self._dispatch is None:
            table: dict[str, list[int]] = {}
            for position, provider in enumerate(self._providers):
                for operation in provider.operations:
                    table.setdefault(operation, []).append(position)

            for position, provider in enumerate(self._providers):
                for operation in provider.REQUIRES:
                    if not any(p < position for p in table.get(operation, ())):
                        raise ConfigurationError(
                            f"{provider.name} requires '{operation}' from a provider registered before it"
                        )

            self._dispatch = {op: tuple(positions) for op, positions in table.items()}
            logger.info(
                f"Client built with {len(self._providers)} providers, "
                f"{len(self._dispatch)} operations"
            )
        return self._dispatch

    def validate(self, required_operations: Iterable[str] = ()) -> None:
        """Build the dispatch table and check required operations.

        Raises:
            MethodNotImplementedError: For the first missing operation
            ConfigurationError: If a provider's requirements are not met by
                providers registered before it
        """
        table = self.build()
        for operation in required_operations:
            if operation not in table:
                raise MethodNotImplementedError(operation)

    def resolve(self, operation: str, requestor: Optional[Provider] = None) -> Provider:
        """Find the provider handling an operation.

        Args:
            operation: Operation name
            requestor: Provider resolving on its own behalf; only providers
                registered before it are considered

        Raises:
            MethodNotImplementedError: If no eligible provider implements it
        """
        positions = self.build().get(operation, ())

        if requestor is not None:
            limit = self._positions.get(id(requestor))
            if limit is None:
                raise ConfigurationError(f"{requestor.name} is not registered with this client")
            positions = tuple(p for p in positions if p < limit)

        if not positions:
            raise MethodNotImplementedError(operation)
        return self._providers[positions[-1]]

    def get_method(self, operation: str, requestor: Optional[Provider] = None) -> Callable[..., Any]:
        """Bound handler for an operation."""
        return self.resolve(operation, requestor).handler(operation)

    def has_method(self, operation: str) -> bool:
        return operation in self.build()

    def __getattr__(self, operation: str) -> Callable[..., Any]:
        # Generic forwarding for any provider-registered operation.
        # Resolution happens at call time, so attribute lookups never end setup.
        if operation.startswith("_"):
            raise AttributeError(operation)
        if not any(operation in provider.operations for provider in self._providers):
            raise MethodNotImplementedError(operation)

        def forward(*args, **kwargs):
            return self.get_method(operation)(*args, **kwargs)

        forward.__name__ = operation
        return forward

    # =========================================================================
    # Wallet
    # =========================================================================

    async def get_unused_address(self, start_index: int = 0, cancel_token: Optional[CancellationToken] = None) -> Address:
        return await self.get_method("get_unused_address")(start_index, cancel_token=cancel_token)

    async def generate_secret(self, seed: str) -> str:
        """Derive a swap secret from a seed message.

        The seed is signed with the key of the first unused wallet address and
        the secret is SHA256(signature), so the same wallet and seed always
        produce the same secret.

        Returns:
            Secret as hex (32 bytes)
        """
        address = await self.get_unused_address()
        signature = await self.get_method("sign_message")(seed, address)
        return sha256(bytes.fromhex(signature)).hex()

    # =========================================================================
    # Swap lifecycle
    # =========================================================================

    async def create_swap_script(self, params: SwapParams) -> SwapScript:
        return await self.get_method("create_swap_script")(params)

    async def initiate_swap(self, value: int, params: SwapParams, cancel_token: Optional[CancellationToken] = None) -> str:
        return await self.get_method("initiate_swap")(value, params, cancel_token=cancel_token)

    async def find_initiate_swap_transaction(self, value: int, params: SwapParams) -> Optional[Transaction]:
        return await self.get_method("find_initiate_swap_transaction")(value, params)

    async def verify_initiate_swap_transaction(self, txid: str, value: int, params: SwapParams) -> bool:
        return await self.get_method("verify_initiate_swap_transaction")(txid, value, params)

    async def claim_swap(self, txid: str, params: SwapParams, secret: str, cancel_token: Optional[CancellationToken] = None) -> str:
        return await self.get_method("claim_swap")(txid, params, secret, cancel_token=cancel_token)

    async def find_claim_swap_transaction(self, txid: str, params: SwapParams) -> Optional[Transaction]:
        return await self.get_method("find_claim_swap_transaction")(txid, params)

    async def refund_swap(self, txid: str, params: SwapParams, cancel_token: Optional[CancellationToken] = None) -> str:
        return await self.get_method("refund_swap")(txid, params, cancel_token=cancel_token)

    async def close(self) -> None:
        """Close every provider, most recently added first."""
        for provider in reversed(self._providers):
            await provider.close()

    def __repr__(self) -> str:
        names = ", ".join(p.name for p in self._providers)
        return f"Client([{names}])"
