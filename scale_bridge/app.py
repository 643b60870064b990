"""Main application entry-point for scale-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from enum import Enum
from typing import Any, Mapping, Optional

from . import constants
from .adapters.camera import CameraManager
from .capture import CaptureAction, CaptureCoordinator, CaptureResult
from .config import BridgeConfig, ensure_api_key, load_config, save_config
from .devices.base import ScaleDevice
from .devices.emulator import ScaleEmulator
from .devices.serial_scale import SerialScaleSession
from .errors import ConfigError
from .health import HealthReporter
from .logging import configure_logging
from .relay import RelayClient
from .server import BridgeServer
from .store import TelemetryStore

LOGGER = logging.getLogger(__name__)


class BridgeState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


class ScaleBridgeApp:
    """Coordinates application startup, reconfiguration and shutdown.

    The app owns the single telemetry store; the active scale device writes
    into it and the capture coordinator reads from it, so swapping between
    the serial session and the emulator never leaves a reader pointing at a
    stale device.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        device: Optional[ScaleDevice] = None,
        camera: Optional[CameraManager] = None,
        relay: Optional[RelayClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._store = device.store if device is not None else TelemetryStore()
        self._device = device or self._create_device(self._config)
        self._camera = camera or CameraManager(self._config.camera)
        self._relay = relay or RelayClient(self._config.relay)
        self._coordinator = CaptureCoordinator(
            self._store,
            self._camera,
            audit=self._config.device.audit,
            base_url=self.public_url,
        )
        self._health = HealthReporter()
        self._server = BridgeServer(self)
        self._state = BridgeState.STARTING
        self._config_lock = asyncio.Lock()
        self._shutdown_event: Optional[asyncio.Event] = None
        self._open_task: Optional[asyncio.Task[bool]] = None
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._attach_device(self._device)

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def device(self) -> ScaleDevice:
        return self._device

    @property
    def store(self) -> TelemetryStore:
        return self._store

    @property
    def camera(self) -> CameraManager:
        return self._camera

    @property
    def relay(self) -> RelayClient:
        return self._relay

    @property
    def coordinator(self) -> CaptureCoordinator:
        return self._coordinator

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def server(self) -> BridgeServer:
        return self._server

    @property
    def public_url(self) -> str:
        server = self._config.server
        return server.public_url or f"http://localhost:{server.port}"

    def _create_device(self, config: BridgeConfig) -> ScaleDevice:
        if config.emulator_mode:
            LOGGER.info("Emulator mode enabled; no serial port will be opened")
            return ScaleEmulator(config.device, store=self._store)
        return SerialScaleSession(config.device, store=self._store)

    def _attach_device(self, device: ScaleDevice) -> None:
        async def _on_connected() -> None:
            await self._health.update("scale", True, self._device_label(device))

        async def _on_disconnected() -> None:
            await self._health.update("scale", False, "disconnected")

        device.register_connected_callback(_on_connected)
        device.register_disconnected_callback(_on_disconnected)

    def _device_label(self, device: ScaleDevice) -> str:
        if isinstance(device, ScaleEmulator):
            return constants.EMULATOR_PORT_PATH
        return device.config.serial.port

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until a shutdown is requested.

        Raises:
            OSError: If the API port cannot be bound.
        """

        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGTERM, self.request_shutdown)

        LOGGER.info("scale-bridge starting with config: %s", self._config.path)
        try:
            await self.start_services()
            LOGGER.info("scale-bridge active; awaiting shutdown signal")
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("scale-bridge received shutdown signal")
            raise
        finally:
            await self.stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: BridgeConfig) -> int:
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        try:
            instance = cls(config=ensure_api_key(config))
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("scale-bridge received shutdown signal")
        except OSError as exc:
            LOGGER.error("Failed to start scale-bridge: %s", exc)
            return 1
        return 0

    async def start_services(self) -> None:
        await self._transition_state(BridgeState.STARTING)

        await self._health.update("scale", False, "connecting")
        await self._health.update(
            "camera", True, None if self._camera.enabled else "disabled"
        )
        await self._health.update(
            "relay", True, None if self._relay.enabled else "disabled"
        )

        await self._server.start()
        self._open_device()
        self._cleanup_task = asyncio.create_task(self._photo_cleanup_loop())

        await self._transition_state(BridgeState.ACTIVE)

    async def stop_services(self) -> None:
        await self._transition_state(BridgeState.STOPPING)

        await self._cancel_task(self._cleanup_task)
        self._cleanup_task = None
        await self._cancel_task(self._open_task)
        self._open_task = None

        await self._device.stop()
        await self._server.stop()
        await self._camera.close()
        await self._relay.close()

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _transition_state(self, state: BridgeState) -> None:
        if state == self._state and state != BridgeState.STARTING:
            return
        previous = self._state
        self._state = state
        LOGGER.info("Bridge state transition %s -> %s", previous.value, state.value)
        await self._health.set_bridge_state(
            state.value, healthy=state == BridgeState.ACTIVE
        )

    def _open_device(self) -> None:
        if self._open_task is not None and not self._open_task.done():
            self._open_task.cancel()
        self._open_task = asyncio.create_task(self._device.open())

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _photo_cleanup_loop(self) -> None:
        while True:
            removed = await asyncio.to_thread(self._camera.cleanup_old_photos)
            if removed:
                LOGGER.info("Removed %d expired photo directories", len(removed))
            await asyncio.sleep(constants.PHOTO_CLEANUP_INTERVAL_SECONDS)

    # ------------------------------------------------------------------
    # Operations used by the API
    # ------------------------------------------------------------------

    async def execute_command(
        self, action: CaptureAction, order_id: Optional[str] = None
    ) -> CaptureResult:
        """Capture a weighing step and forward it to the collector."""

        result = await self._coordinator.capture(action, order_id)

        if self._camera.enabled:
            await self._health.update(
                "camera",
                not result.no_camera,
                "last capture produced no photo" if result.no_camera else None,
            )

        relayed: Optional[bool] = None
        if self._relay.enabled:
            try:
                forwarded = await self._relay.push(result.relay_payload())
                detail = self._relay.last_error
            except Exception as exc:
                LOGGER.exception("Relay push failed unexpectedly")
                forwarded = False
                detail = str(exc) or exc.__class__.__name__
            await self._health.update("relay", forwarded, detail)
            relayed = forwarded

        await self._health.record_capture(
            action=result.action.value,
            weight=result.weight,
            no_camera=result.no_camera,
            relayed=relayed,
        )
        return result

    async def apply_config(self, updates: Mapping[str, Any]) -> BridgeConfig:
        """Merge ``updates`` into the configuration, persist it and apply it.

        Raises:
            ConfigError: If the merged configuration is invalid or cannot be saved.
        """

        async with self._config_lock:
            new = self._config.with_updates(updates)
            try:
                save_config(new)
            except OSError as exc:
                raise ConfigError(f"Cannot save configuration: {exc}") from exc

            old = self._config
            self._config = new
            LOGGER.info("Configuration updated")

            if new.emulator_mode != old.emulator_mode:
                await self._swap_device(new)
            elif new.device != old.device:
                await self._device.update_config(new.device)

            if new.camera != old.camera:
                self._camera.update_config(new.camera)
                await self._health.update(
                    "camera", True, None if self._camera.enabled else "disabled"
                )
            if new.relay != old.relay:
                self._relay.update_config(new.relay)
                await self._health.update(
                    "relay", True, None if self._relay.enabled else "disabled"
                )

            self._coordinator.update_audit(new.device.audit)
            self._coordinator.base_url = self.public_url

            if new.server != old.server or new.logging != old.logging:
                LOGGER.warning("Server and logging settings take effect after restart")

            return new

    async def _swap_device(self, config: BridgeConfig) -> None:
        LOGGER.info(
            "Switching scale device to %s", "emulator" if config.emulator_mode else "serial"
        )
        await self._cancel_task(self._open_task)
        self._open_task = None
        await self._device.stop()
        self._store.reset()

        self._device = self._create_device(config)
        self._attach_device(self._device)
        await self._health.update("scale", False, "connecting")
        self._open_device()
