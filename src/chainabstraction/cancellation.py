"""Cancellation tokens for swap attempts and long-running scans."""

import asyncio
import logging
from typing import Optional

from chainabstraction.errors import OperationCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag scoped to one swap attempt or scan.

    Example:
        token = CancellationToken()
        task = asyncio.create_task(client.initiate_swap(10000, params, cancel_token=token))
        token.cancel("user aborted")
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancel() was called."""
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """raise_if_cancelled() for an optional token."""
    if token is not None:
        token.raise_if_cancelled()
