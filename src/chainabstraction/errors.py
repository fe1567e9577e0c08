"""Exception taxonomy for the chain abstraction client.

Validation errors are raised at the call that detects them. Chain observation
mismatches (find/verify) are returned as negative results instead.
"""

from typing import Optional


class ChainAbstractionError(Exception):
    """Base class for all client errors."""
    pass


class ConfigurationError(ChainAbstractionError):
    """Bad address, network, script or provider setup."""
    pass


class MethodNotImplementedError(ChainAbstractionError, AttributeError):
    """No registered provider implements the requested operation.

    Also an AttributeError, so hasattr()/getattr() with a default work on
    Client for operations nobody provides.
    """

    def __init__(self, operation: str):
        super().__init__(f"No provider implements '{operation}'")
        self.operation = operation


class InsufficientFundsError(ChainAbstractionError):
    """Available value is below target amount plus fee."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient funds: required {required}, available {available}"
        )
        self.required = required
        self.available = available


class VerificationFailure(ChainAbstractionError):
    """Secret or on-chain data does not match the swap parameters."""
    pass


class BroadcastError(ChainAbstractionError):
    """Node rejected a transaction.

    Attributes:
        transient: True when retrying later may succeed (fee too low,
            mempool conflict, transport failure)
        reason: Raw rejection reason reported by the node
    """

    def __init__(self, message: str, transient: bool = False, reason: Optional[str] = None):
        super().__init__(message)
        self.transient = transient
        self.reason = reason


class NodeQueryError(ChainAbstractionError):
    """Node query failed (transport or unexpected response)."""
    pass


class TransactionNotFoundError(NodeQueryError):
    """Transaction is unknown to the node."""

    def __init__(self, txid: str):
        super().__init__(f"Transaction not found: {txid}")
        self.txid = txid


class DeviceCommunicationError(ChainAbstractionError):
    """Signing device transport failure."""
    pass


class DeviceBusyError(DeviceCommunicationError):
    """Device session could not be acquired within the timeout."""
    pass


class NoUnusedAddressFound(ChainAbstractionError):
    """Address scan limit reached without finding an unused address."""

    def __init__(self, start_index: int, scanned: int):
        super().__init__(
            f"No unused address in {scanned} addresses from index {start_index}"
        )
        self.start_index = start_index
        self.scanned = scanned


class OperationCancelledError(ChainAbstractionError):
    """Operation was cancelled through its cancellation token."""
    pass
