"""Common contract for scale devices (real serial session or emulator)."""

from __future__ import annotations

import abc
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import DeviceConfig
from ..store import Reading, TelemetryStore

LOGGER = logging.getLogger(__name__)

StateCallback = Callable[[], Awaitable[None] | None]
ReadingCallback = Callable[[Reading], Awaitable[None] | None]


class ConnectionState(str, Enum):
    """Connection state of a scale device."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ScaleDevice(abc.ABC):
    """Capability set shared by every scale implementation.

    Consumers only ever call ``get_current_weight`` and the lifecycle
    methods, and learn about changes through the registered callbacks, so
    the API layer cannot tell a physical scale from the emulator.
    """

    def __init__(
        self, config: DeviceConfig, *, store: Optional[TelemetryStore] = None
    ) -> None:
        self._config = config
        self._store = store or TelemetryStore()
        self._state = ConnectionState.DISCONNECTED
        self._connected_callbacks: List[StateCallback] = []
        self._disconnected_callbacks: List[StateCallback] = []
        self._reading_callbacks: List[ReadingCallback] = []

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def store(self) -> TelemetryStore:
        return self._store

    def get_current_weight(self) -> Reading:
        """Latest reading; never blocks and never empty."""
        return self._store.get()

    def register_connected_callback(self, callback: StateCallback) -> None:
        self._connected_callbacks.append(callback)

    def register_disconnected_callback(self, callback: StateCallback) -> None:
        self._disconnected_callbacks.append(callback)

    def register_reading_callback(self, callback: ReadingCallback) -> None:
        self._reading_callbacks.append(callback)

    async def _emit(self, callbacks: List[Callable[..., Any]], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.warning("Device callback failed", exc_info=True)

    @abc.abstractmethod
    async def open(self, config: Optional[DeviceConfig] = None) -> bool:
        """Connect to the device; failures schedule a retry instead of raising."""

    @abc.abstractmethod
    async def reconnect(self) -> None:
        """Drop the connection regardless of state and reopen shortly after."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Close the connection; safe to call repeatedly."""

    @abc.abstractmethod
    async def update_config(self, config: DeviceConfig) -> None:
        """Replace the device configuration."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Release every resource and stop retrying; used at shutdown."""

    @abc.abstractmethod
    async def list_ports(self) -> List[Dict[str, Any]]:
        """Enumerate connection points this device could use."""
