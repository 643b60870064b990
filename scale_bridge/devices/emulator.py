"""Simulated scale for demos and tests without hardware."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import random
from typing import Any, Dict, List, Optional

from .. import constants
from ..config import DeviceConfig
from ..store import Reading, TelemetryStore
from ..utils import round_weight, utc_now
from .base import ConnectionState, ScaleDevice

LOGGER = logging.getLogger(__name__)

SCENARIO_WEIGHTS = (0.0, 6200.0, 18460.0, 12000.0, 25000.0)
SCENARIO_PROBABILITY = 0.7
MAX_RANDOM_WEIGHT = 25000
SNAP_THRESHOLD = 0.1
LOADED_WEIGHT = 18460.0
UNLOADED_WEIGHT = 6200.0

DEFAULT_CONNECT_DELAY_SECONDS = 1.0
DEFAULT_TICK_SECONDS = 0.5
DEFAULT_SPEED_KG_PER_SECOND = 100.0


class ScaleEmulator(ScaleDevice):
    """Drifts towards randomly chosen target weights, like a truck scale in use.

    Each tick moves the displayed weight towards the current target at a
    bounded speed; once the target is reached a new one is picked, mostly
    from a small set of realistic loads.
    """

    def __init__(
        self,
        config: DeviceConfig,
        *,
        store: Optional[TelemetryStore] = None,
        rng: Optional[random.Random] = None,
        connect_delay: float = DEFAULT_CONNECT_DELAY_SECONDS,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        speed_kg_per_second: float = DEFAULT_SPEED_KG_PER_SECOND,
        reconnect_delay: float = constants.MANUAL_RECONNECT_DELAY_SECONDS,
    ) -> None:
        super().__init__(config, store=store)
        self._rng = rng or random.Random()
        self._connect_delay = connect_delay
        self._tick_seconds = tick_seconds
        self._max_step = speed_kg_per_second * tick_seconds
        self._reconnect_delay = reconnect_delay
        self._weight = 0.0
        self._target = 0.0
        self._simulation_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

    @property
    def weight(self) -> float:
        return self._weight

    @property
    def target(self) -> float:
        return self._target

    async def open(self, config: Optional[DeviceConfig] = None) -> bool:
        if config is not None:
            self._config = config
        if self._state != ConnectionState.DISCONNECTED:
            return self._state == ConnectionState.CONNECTED

        LOGGER.info("Emulator: connecting")
        self._state = ConnectionState.CONNECTING
        try:
            await asyncio.sleep(self._connect_delay)
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        if self._state != ConnectionState.CONNECTING:
            return False

        self._state = ConnectionState.CONNECTED
        self._weight = 0.0
        self._target = self._pick_target()
        self._publish()
        self._simulation_task = asyncio.create_task(self._simulation_loop())
        LOGGER.info("Emulator: connected")
        await self._emit(self._connected_callbacks)
        return True

    async def disconnect(self) -> None:
        was_connected = self._state == ConnectionState.CONNECTED
        self._state = ConnectionState.DISCONNECTED

        task = self._simulation_task
        self._simulation_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._weight = 0.0
        self._store.set(Reading(value=0.0, connected=False))
        if was_connected:
            LOGGER.info("Emulator: disconnected")
            await self._emit(self._disconnected_callbacks)

    async def reconnect(self) -> None:
        LOGGER.info("Emulator: reconnecting")
        self._cancel_reconnect()
        await self.disconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(self._reconnect_delay))

    async def update_config(self, config: DeviceConfig) -> None:
        self._config = config

    async def stop(self) -> None:
        self._cancel_reconnect()
        await self.disconnect()

    async def list_ports(self) -> List[Dict[str, Any]]:
        return [
            {
                "path": constants.EMULATOR_PORT_PATH,
                "manufacturer": "Scale Bridge Emulator",
                "serialNumber": "EMU-001",
                "vendorId": "0000",
                "productId": "0000",
            }
        ]

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    def set_weight(self, weight: float) -> None:
        """Set a new target; the displayed weight moves towards it over time."""
        self._target = max(0.0, float(weight))
        LOGGER.info("Emulator: target weight set to %.1f kg", self._target)

    def simulate_load(self) -> None:
        self.set_weight(LOADED_WEIGHT)

    def simulate_unload(self) -> None:
        self.set_weight(UNLOADED_WEIGHT)

    def simulate_empty(self) -> None:
        self.set_weight(0.0)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _pick_target(self) -> float:
        if self._rng.random() < SCENARIO_PROBABILITY:
            return self._rng.choice(SCENARIO_WEIGHTS)
        return float(math.floor(self._rng.random() * MAX_RANDOM_WEIGHT))

    def step(self) -> float:
        """Advance the simulation by one tick and return the new weight."""

        difference = self._target - self._weight
        if abs(difference) < SNAP_THRESHOLD:
            self._weight = self._target
            self._target = self._pick_target()
        else:
            movement = min(abs(difference), self._max_step)
            self._weight = round_weight(self._weight + math.copysign(movement, difference))
        return self._weight

    def _publish(self) -> Reading:
        reading = Reading(
            value=round_weight(self._weight),
            unit=constants.DEFAULT_UNIT,
            connected=True,
            timestamp=utc_now(),
        )
        self._store.set(reading)
        return reading

    async def _simulation_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            self.step()
            reading = self._publish()
            await self._emit(self._reading_callbacks, reading)

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        await self.open()
