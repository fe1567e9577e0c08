"""Hardware signing devices.

- SigningDevice: Device interface (keys never leave the device)
- DeviceSession: Serialized access to one device handle
- SimulatedSigningDevice: Deterministic fake device for development/tests
"""

from chainabstraction.signing.device import DeviceInput, SigningDevice, WalletPublicKey
from chainabstraction.signing.session import DeviceSession
from chainabstraction.signing.simulated import SimulatedSigningDevice

__all__ = [
    "DeviceInput",
    "SigningDevice",
    "WalletPublicKey",
    "DeviceSession",
    "SimulatedSigningDevice",
]
