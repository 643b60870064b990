import asyncio
import io
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from PIL import Image

from scale_bridge.config import (
    AuditConfig,
    BridgeConfig,
    CameraConfig,
    DeviceConfig,
    LoggingConfig,
    RelayConfig,
    SerialConfig,
)


class FakeWriter:
    """Stands in for the StreamWriter of an open serial port."""

    def __init__(self) -> None:
        self.written = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written.extend(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeSerialPort:
    """Opener replacement recording every open attempt."""

    def __init__(self) -> None:
        self.fail = False
        self.calls: List[Dict[str, Any]] = []
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[FakeWriter] = None

    @property
    def opens(self) -> int:
        return len(self.calls)

    async def open(self, **kwargs: Any) -> Tuple[asyncio.StreamReader, FakeWriter]:
        self.calls.append(kwargs)
        if self.fail:
            raise OSError("could not open port: access denied")
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter()
        return self.reader, self.writer


@pytest.fixture
def fake_port() -> FakeSerialPort:
    return FakeSerialPort()


@pytest.fixture
def device_config(tmp_path: Path) -> DeviceConfig:
    return DeviceConfig(
        serial=SerialConfig(port="COM7"),
        audit=AuditConfig(enable_serial_csv=False, logs_dir=tmp_path / "logs"),
    )


@pytest.fixture
def bridge_config(tmp_path: Path) -> BridgeConfig:
    return BridgeConfig(
        device=DeviceConfig(audit=AuditConfig(logs_dir=tmp_path / "logs")),
        camera=CameraConfig(camera_type="none", photos_dir=tmp_path / "photos"),
        relay=RelayConfig(enabled=False),
        logging=LoggingConfig(path=None),
        emulator_mode=True,
        path=tmp_path / "config.json",
    )


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() >= deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait


def make_jpeg(width: int, height: int, color: Tuple[int, int, int] = (200, 30, 30)) -> bytes:
    img = Image.new("RGB", (width, height), color)
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


@pytest.fixture
def jpeg_factory() -> Callable[[int, int], bytes]:
    return make_jpeg
