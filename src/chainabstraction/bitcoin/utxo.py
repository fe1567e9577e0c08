"""UTXO selection and fee estimation.

Fee model (legacy P2PKH spends):
    fee = (inputs * 148 + outputs * 34 + 10) * fee_per_byte

Selection walks wallet addresses in ascending derivation index and accumulates
UTXOs one at a time. The fee starts at the one-output cost; once the collected
value exceeds target plus that fee a change output is added, the cost is
recomputed, and accumulation continues until the collected value covers it.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from chainabstraction.cancellation import CancellationToken, check_cancelled
from chainabstraction.errors import InsufficientFundsError
from chainabstraction.models import UTXO, Address

logger = logging.getLogger(__name__)

BYTES_PER_INPUT = 148
BYTES_PER_OUTPUT = 34
TX_OVERHEAD_BYTES = 10

# Outputs below this are rejected by relay policy
DUST_THRESHOLD = 546

DEFAULT_FEE_PER_BYTE = 3
DEFAULT_GAP_LIMIT = 10
DEFAULT_MAX_ADDRESSES = 1000


def estimate_size(num_inputs: int, num_outputs: int) -> int:
    """Estimated transaction size in bytes."""
    return num_inputs * BYTES_PER_INPUT + num_outputs * BYTES_PER_OUTPUT + TX_OVERHEAD_BYTES


def calculate_fee(num_inputs: int, num_outputs: int, fee_per_byte: int) -> int:
    """Fee for a transaction with the given input/output counts."""
    if num_inputs < 0 or num_outputs < 0 or fee_per_byte < 0:
        raise ValueError("Fee arguments must be non-negative")
    return estimate_size(num_inputs, num_outputs) * fee_per_byte


@dataclass
class UtxoSelection:
    """Result of coin selection.

    Attributes:
        utxos: Selected UTXOs in selection order
        amount: Target amount paid to the recipient
        fee: Fee paid, including change too small for its own output
        num_outputs: 1 (no change) or 2 (with change)
    """

    utxos: list[UTXO] = field(default_factory=list)
    amount: int = 0
    fee: int = 0
    num_outputs: int = 1

    @property
    def total(self) -> int:
        return sum(u.value for u in self.utxos)

    @property
    def has_change(self) -> bool:
        return self.num_outputs == 2

    @property
    def change_amount(self) -> int:
        return self.total - self.amount - self.fee if self.has_change else 0

    @property
    def total_cost(self) -> int:
        return self.amount + self.fee


def output_count(total: int, amount: int, num_inputs: int, fee_per_byte: int, num_outputs: int = 1) -> int:
    """Number of outputs the selection needs once total has been collected.

    Switches to two outputs (payment plus change) as soon as total exceeds
    the one-output cost, and never switches back.
    """
    if num_outputs == 1 and total > amount + calculate_fee(num_inputs, 1, fee_per_byte):
        return 2
    return num_outputs


def settle_fee(
    total: int, amount: int, num_inputs: int, num_outputs: int, fee_per_byte: int
) -> Optional[tuple[int, int]]:
    """Return (fee, num_outputs) if total covers amount plus fee, else None.

    Change below DUST_THRESHOLD would be rejected by relays, so it is added
    to the fee and the change output is dropped.
    """
    fee = calculate_fee(num_inputs, num_outputs, fee_per_byte)
    if total < amount + fee:
        return None
    if num_outputs == 2 and total - amount - fee < DUST_THRESHOLD:
        return total - amount, 1
    return fee, num_outputs


async def select_utxos(
    amount: int,
    fee_per_byte: int,
    get_address: Callable[[int], Awaitable[Address]],
    get_utxos: Callable[[str], Awaitable[list[UTXO]]],
    gap_limit: int = DEFAULT_GAP_LIMIT,
    max_addresses: int = DEFAULT_MAX_ADDRESSES,
    cancel_token: Optional[CancellationToken] = None,
) -> UtxoSelection:
    """Pick UTXOs covering amount plus the induced fee.

    Args:
        amount: Target amount in satoshis
        fee_per_byte: Fee rate in satoshis per byte
        get_address: Returns the wallet address at a derivation index
        get_utxos: Returns the UTXOs of an address (node query)
        gap_limit: Stop after this many consecutive addresses without UTXOs
        max_addresses: Hard bound on the number of addresses scanned
        cancel_token: Optional cancellation token checked between addresses

    Returns:
        UtxoSelection whose total covers amount + fee

    Raises:
        InsufficientFundsError: If the scan ends before the target is covered
        OperationCancelledError: If cancel_token is cancelled
    """
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")

    selected: list[UTXO] = []
    total = 0
    gap = 0
    num_outputs = 1

    for index in range(max_addresses):
        check_cancelled(cancel_token)

        address = await get_address(index)
        utxos = await get_utxos(address.address)

        if not utxos:
            gap += 1
            if gap >= gap_limit:
                logger.debug(f"Gap limit {gap_limit} reached at index {index}")
                break
            continue
        gap = 0

        for utxo in utxos:
            utxo.derivation_path = address.derivation_path
            selected.append(utxo)
            total += utxo.value

            num_outputs = output_count(total, amount, len(selected), fee_per_byte, num_outputs)
            settled = settle_fee(total, amount, len(selected), num_outputs, fee_per_byte)
            if settled is not None:
                fee, outputs = settled
                logger.info(
                    f"Selected {len(selected)} UTXOs: total={total} amount={amount} "
                    f"fee={fee} outputs={outputs}"
                )
                return UtxoSelection(
                    utxos=selected,
                    amount=amount,
                    fee=fee,
                    num_outputs=outputs,
                )

    required = amount + calculate_fee(max(len(selected), 1), num_outputs, fee_per_byte)
    logger.warning(f"Insufficient funds: required {required}, available {total}")
    raise InsufficientFundsError(required=required, available=total)
