"""Provider base interfaces.

A provider contributes a fixed set of named operations to a Client.
Providers can call operations of providers registered before them
through get_method(), which is how layered behavior is built:

    client.add_provider(EsploraProvider(...))        # node queries
    client.add_provider(BitcoinLedgerProvider(...))  # addresses, signing
    client.add_provider(BitcoinSwapProvider(...))    # HTLC lifecycle
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional

from chainabstraction.errors import ConfigurationError, MethodNotImplementedError
from chainabstraction.models import UTXO, Transaction

if TYPE_CHECKING:
    from chainabstraction.client import Client


class Provider:
    """Base class for capability providers.

    Subclasses list the operations they implement in OPERATIONS; each name
    must be a method of the provider. REQUIRES lists the operations the
    provider resolves through get_method(); the client checks that a provider
    registered earlier implements each of them.
    """

    OPERATIONS: ClassVar[tuple[str, ...]] = ()
    REQUIRES: ClassVar[tuple[str, ...]] = ()

    def __init__(self):
        self._client: Optional["Client"] = None

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def operations(self) -> frozenset[str]:
        return frozenset(self.OPERATIONS)

    @property
    def client(self) -> "Client":
        if self._client is None:
            raise ConfigurationError(f"{self.name} is not attached to a client")
        return self._client

    def set_client(self, client: "Client") -> None:
        """Attach the provider to a client (called by Client.add_provider)."""
        for operation in self.OPERATIONS:
            if not callable(getattr(self, operation, None)):
                raise ConfigurationError(f"{self.name} declares '{operation}' but does not implement it")
        self._client = client

    def handler(self, operation: str) -> Callable[..., Any]:
        """Bound handler for one of this provider's operations."""
        if operation not in self.OPERATIONS:
            raise MethodNotImplementedError(operation)
        return getattr(self, operation)

    def get_method(self, operation: str) -> Callable[..., Any]:
        """Resolve an operation among providers registered before this one."""
        return self.client.get_method(operation, requestor=self)

    async def close(self) -> None:
        """Release network or device resources."""
        pass

    def __repr__(self) -> str:
        return f"{self.name}(operations={len(self.OPERATIONS)})"


class ChainQueryProvider(Provider, ABC):
    """Node query capability: read chain state and broadcast transactions."""

    OPERATIONS = (
        "get_unspent_transactions",
        "get_transaction_hex",
        "is_used_address",
        "broadcast_transaction",
        "get_transaction_by_hash",
        "get_address_transactions",
        "get_block_height",
        "get_balance",
    )

    @abstractmethod
    async def get_unspent_transactions(self, address: str) -> list[UTXO]:
        """Get unspent outputs paying an address.

        Args:
            address: Chain address

        Returns:
            UTXOs in the order reported by the node
        """
        pass

    @abstractmethod
    async def get_transaction_hex(self, txid: str) -> str:
        """Get the raw hex of a transaction.

        Raises:
            TransactionNotFoundError: If the node does not know txid
        """
        pass

    @abstractmethod
    async def is_used_address(self, address: str) -> bool:
        """Check whether an address ever received funds."""
        pass

    @abstractmethod
    async def broadcast_transaction(self, raw_hex: str) -> str:
        """Broadcast a raw transaction.

        Returns:
            Transaction ID

        Raises:
            BroadcastError: If the node rejects the transaction
        """
        pass

    @abstractmethod
    async def get_transaction_by_hash(self, txid: str) -> Transaction:
        """Get a decoded transaction.

        Raises:
            TransactionNotFoundError: If the node does not know txid
        """
        pass

    @abstractmethod
    async def get_address_transactions(self, address: str) -> list[Transaction]:
        """Get confirmed and mempool transactions touching an address."""
        pass

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current chain tip height."""
        pass

    async def get_balance(self, addresses: list[str]) -> int:
        """Sum of unspent output values over addresses."""
        total = 0
        for address in addresses:
            utxos = await self.get_unspent_transactions(address)
            total += sum(u.value for u in utxos)
        return total


# Broadcast rejection reasons that may succeed on retry
TRANSIENT_REJECTIONS = (
    "min relay fee not met",
    "mempool min fee not met",
    "insufficient fee",
    "txn-mempool-conflict",
    "too-long-mempool-chain",
    "mempool full",
    "non-final",
    "rate limit",
)


def is_transient_rejection(reason: str) -> bool:
    """Classify a node rejection message as transient or permanent."""
    lowered = reason.lower()
    return any(marker in lowered for marker in TRANSIENT_REJECTIONS)
