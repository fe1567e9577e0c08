"""Exclusive access to a signing device.

A hardware device processes one APDU exchange at a time. DeviceSession
serializes every call on a device handle with an asyncio.Lock and maps
transport failures to DeviceCommunicationError.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from chainabstraction.errors import (
    ChainAbstractionError,
    DeviceBusyError,
    DeviceCommunicationError,
)
from chainabstraction.signing.device import SigningDevice

logger = logging.getLogger(__name__)


class DeviceSession:
    """Serialized access to one SigningDevice.

    Example:
        session = DeviceSession(device, timeout=60.0)
        pubkey = await session.call("get_wallet_public_key", "44'/0'/0'/0/0")
    """

    def __init__(self, device: SigningDevice, timeout: Optional[float] = 60.0):
        """Initialize the session.

        Args:
            device: Device handle
            timeout: Maximum time to wait for the device lock (None = wait forever)
        """
        self.device = device
        self.timeout = timeout
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def exclusive(self, operation: str = "device_operation"):
        """Hold the device for the duration of the block.

        Raises:
            DeviceBusyError: If the lock is not acquired within timeout
        """
        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Device busy after {self.timeout}s: {operation}")
            raise DeviceBusyError(
                f"Could not acquire signing device within {self.timeout}s ({operation})"
            )

        logger.debug(f"Device acquired: {operation}")
        try:
            yield self.device
        finally:
            self._lock.release()
            logger.debug(f"Device released: {operation}")

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a device method under the session lock.

        Raises:
            DeviceCommunicationError: On any transport failure
        """
        async with self.exclusive(method) as device:
            try:
                return await getattr(device, method)(*args, **kwargs)
            except ChainAbstractionError:
                raise
            except Exception as e:
                logger.error(f"Device call {method} failed: {e}")
                raise DeviceCommunicationError(f"Device call {method} failed: {e}") from e

    async def close(self) -> None:
        async with self.exclusive("close") as device:
            await device.close()
