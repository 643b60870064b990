"""Scale device implementations."""

from .base import ConnectionState, ScaleDevice
from .emulator import ScaleEmulator
from .serial_scale import SerialScaleSession, list_serial_ports

__all__ = [
    "ConnectionState",
    "ScaleDevice",
    "ScaleEmulator",
    "SerialScaleSession",
    "list_serial_ports",
]
