"""Serial-port session for a weighing indicator.

The session owns exactly one port. A single reader task consumes the byte
stream in arrival order; complete CR/LF-terminated lines are decoded as
frames, and bytes from indicators that never send a terminator are flushed
as a frame once the line goes idle. When the port fails or closes, one
reconnect task is scheduled and retried forever at a fixed delay, since the
indicator may be power-cycled at any time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import serial.tools.list_ports
import serial_asyncio

from .. import constants
from ..audit import DailyCsvLog
from ..config import DeviceConfig
from ..decoder import decode, decode_bytes
from ..store import TelemetryStore
from ..utils import isoformat, utc_now
from .base import ConnectionState, ScaleDevice

LOGGER = logging.getLogger(__name__)

Opener = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

_TERMINATOR = re.compile(rb"\r\n|\n|\r")

DEFAULT_IDLE_FLUSH_SECONDS = 0.2
DEFAULT_MAX_FRAME_BYTES = 256
CLOSE_TIMEOUT_SECONDS = 2.0


def split_frames(buffer: bytearray) -> List[bytes]:
    """Remove and return every terminated line held in ``buffer``."""

    frames: List[bytes] = []
    while True:
        match = _TERMINATOR.search(buffer)
        if match is None:
            return frames
        frames.append(bytes(buffer[: match.start()]))
        del buffer[: match.end()]


def list_serial_ports() -> List[Dict[str, Any]]:
    """Describe the serial ports visible to the OS; errors yield an empty list."""

    try:
        ports = serial.tools.list_ports.comports()
    except Exception as exc:
        LOGGER.error("Failed to enumerate serial ports: %s", exc)
        return []

    result = [
        {
            "path": port.device,
            "manufacturer": port.manufacturer or "Unknown",
            "serialNumber": port.serial_number,
            "vendorId": f"{port.vid:04x}" if port.vid is not None else None,
            "productId": f"{port.pid:04x}" if port.pid is not None else None,
        }
        for port in ports
    ]
    LOGGER.info("Found %d serial ports", len(result))
    return result


class SerialScaleSession(ScaleDevice):
    """Scale attached to a serial port."""

    def __init__(
        self,
        config: DeviceConfig,
        *,
        store: Optional[TelemetryStore] = None,
        opener: Optional[Opener] = None,
        reconnect_delay: float = constants.RECONNECT_DELAY_SECONDS,
        manual_reconnect_delay: float = constants.MANUAL_RECONNECT_DELAY_SECONDS,
        idle_flush_seconds: float = DEFAULT_IDLE_FLUSH_SECONDS,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(config, store=store)
        self._opener: Opener = opener or serial_asyncio.open_serial_connection
        self._reconnect_delay = reconnect_delay
        self._manual_reconnect_delay = manual_reconnect_delay
        self._idle_flush_seconds = idle_flush_seconds
        self._max_frame_bytes = max_frame_bytes
        self._clock = clock

        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._polling_task: Optional[asyncio.Task[None]] = None
        self._generation = 0
        self._stopped = False
        self._serial_log = self._build_serial_log(config)

    def _build_serial_log(self, config: DeviceConfig) -> Optional[DailyCsvLog]:
        audit = config.audit
        if not audit.enable_serial_csv:
            return None
        return DailyCsvLog(
            audit.logs_dir,
            constants.SERIAL_LOG_FILENAME,
            constants.SERIAL_LOG_HEADER,
            retention_days=audit.retention_days,
            clock=self._clock,
        )

    @property
    def reconnect_pending(self) -> bool:
        task = self._reconnect_task
        return task is not None and not task.done()

    @property
    def polling_active(self) -> bool:
        task = self._polling_task
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, config: Optional[DeviceConfig] = None) -> bool:
        if config is not None:
            self._replace_config(config)

        if self._state != ConnectionState.DISCONNECTED:
            LOGGER.debug("Open ignored; session is %s", self._state.value)
            return self._state == ConnectionState.CONNECTED

        self._stopped = False
        serial_config = self._config.serial
        generation = self._generation
        self._state = ConnectionState.CONNECTING
        LOGGER.info(
            "Opening serial port %s (%d baud, %d%s%s)",
            serial_config.port,
            serial_config.baud_rate,
            serial_config.data_bits,
            serial_config.parity_code,
            serial_config.stop_bits,
        )

        try:
            reader, writer = await self._opener(
                url=serial_config.port,
                baudrate=serial_config.baud_rate,
                bytesize=serial_config.data_bits,
                parity=serial_config.parity_code,
                stopbits=serial_config.stop_bits,
            )
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            if generation == self._generation:
                self._state = ConnectionState.DISCONNECTED
                LOGGER.error("Failed to open serial port %s: %s", serial_config.port, exc)
                self._schedule_reconnect(self._reconnect_delay)
            return False

        if generation != self._generation or self._stopped:
            # Torn down while the port was opening.
            await self._close_writer(writer)
            return False

        self._writer = writer
        self._state = ConnectionState.CONNECTED
        self._store.set_connected(True)
        LOGGER.info("Serial port %s opened", serial_config.port)

        self._cancel_reconnect()
        self._start_polling()
        if self._serial_log is not None:
            self._serial_log.open()
        self._reader_task = asyncio.create_task(self._read_loop(reader))

        await self._emit(self._connected_callbacks)
        return True

    async def disconnect(self) -> None:
        """Close the port and leave a single reconnect scheduled.

        A closed port always ends up with exactly one pending reconnect, so
        calling this twice only pushes that reconnect back.
        """
        LOGGER.info("Disconnecting from scale")
        self._cancel_reconnect()
        await self._close_connection()
        self._schedule_reconnect(self._reconnect_delay)

    async def reconnect(self) -> None:
        LOGGER.info("Manual reconnect requested")
        self._stopped = False
        self._cancel_reconnect()
        await self._close_connection()
        self._schedule_reconnect(self._manual_reconnect_delay)

    async def update_config(self, config: DeviceConfig) -> None:
        LOGGER.info("Serial configuration updated; reopening port")
        self._replace_config(config)
        await self.reconnect()

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_reconnect()
        await self._close_connection()

    async def list_ports(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(list_serial_ports)

    def _replace_config(self, config: DeviceConfig) -> None:
        if self._serial_log is not None:
            self._serial_log.close()
        self._config = config
        self._serial_log = self._build_serial_log(config)

    # ------------------------------------------------------------------
    # Reconnect scheduling
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, delay: float) -> None:
        if self._stopped or self.reconnect_pending:
            return
        LOGGER.info("Reconnecting to scale in %.1f seconds", delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

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

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _close_connection(self) -> None:
        self._generation += 1
        was_connected = self._state == ConnectionState.CONNECTED

        await self._stop_polling()

        reader_task = self._reader_task
        self._reader_task = None
        if reader_task is not None and reader_task is not asyncio.current_task():
            reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task

        writer = self._writer
        self._writer = None
        if writer is not None:
            await self._close_writer(writer)

        if self._serial_log is not None:
            self._serial_log.close()

        self._state = ConnectionState.DISCONNECTED
        self._store.set_connected(False)

        if was_connected:
            await self._emit(self._disconnected_callbacks)

    async def _close_writer(self, writer: asyncio.StreamWriter) -> None:
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT_SECONDS)
        except Exception as exc:
            LOGGER.warning("Error closing serial port: %s", exc)

    async def _handle_connection_lost(self, error: Optional[BaseException]) -> None:
        if error is not None:
            LOGGER.error("Serial port error: %s", error)
        LOGGER.warning("Serial port %s closed", self._config.serial.port)
        await self._close_connection()
        self._schedule_reconnect(self._reconnect_delay)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        buffer = bytearray()
        error: Optional[BaseException] = None
        try:
            while True:
                if buffer:
                    try:
                        chunk = await asyncio.wait_for(
                            reader.read(self._max_frame_bytes),
                            timeout=self._idle_flush_seconds,
                        )
                    except asyncio.TimeoutError:
                        # Line went quiet without a terminator.
                        await self._handle_frame(bytes(buffer))
                        buffer.clear()
                        continue
                else:
                    chunk = await reader.read(self._max_frame_bytes)

                if not chunk:
                    break

                buffer.extend(chunk)
                for frame in split_frames(buffer):
                    await self._handle_frame(frame)

                if len(buffer) >= self._max_frame_bytes:
                    await self._handle_frame(bytes(buffer))
                    buffer.clear()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc

        if buffer:
            await self._handle_frame(bytes(buffer))
        await self._handle_connection_lost(error)

    async def _handle_frame(self, data: bytes) -> None:
        try:
            text = decode_bytes(data).strip()
            if not text:
                return

            received_at = utc_now()
            LOGGER.debug("Frame received: %r", text)
            reading = decode(text, received_at=received_at)

            if reading is None:
                LOGGER.warning("Could not decode weight from frame: %r", text[:50])
                self._write_serial_row(received_at, text, "")
                return

            self._store.set(reading)
            self._write_serial_row(received_at, text, reading.value)
            await self._emit(self._reading_callbacks, reading)
        except Exception:
            LOGGER.exception("Unexpected error while handling frame")

    def _write_serial_row(self, received_at: datetime, raw: str, weight: object) -> None:
        if self._serial_log is None:
            return
        self._serial_log.write_row((isoformat(received_at), raw, weight))

    # ------------------------------------------------------------------
    # Active polling
    # ------------------------------------------------------------------

    def _start_polling(self) -> None:
        polling = self._config.polling
        if not polling.enabled or self.polling_active:
            return
        LOGGER.info("Polling scale every %d ms", polling.interval_ms)
        self._polling_task = asyncio.create_task(self._polling_loop())

    async def _stop_polling(self) -> None:
        task = self._polling_task
        self._polling_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        LOGGER.info("Scale polling stopped")

    async def _polling_loop(self) -> None:
        polling = self._config.polling
        interval = polling.interval_ms / 1000
        command = polling.command.encode("ascii", errors="replace")
        while True:
            await asyncio.sleep(interval)
            await self.send_command(command)

    async def send_command(self, data: bytes) -> bool:
        """Write raw bytes to the port; a closed port or write failure returns False."""

        writer = self._writer
        if writer is None or writer.is_closing():
            return False
        try:
            writer.write(data)
            await writer.drain()
        except Exception as exc:
            LOGGER.warning("Failed to send command to scale: %s", exc)
            return False
        return True
