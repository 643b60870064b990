import dataclasses
import json

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from scale_bridge.app import ScaleBridgeApp
from scale_bridge.capture import CaptureAction
from scale_bridge.config import RelayConfig, ServerConfig
from scale_bridge.devices.emulator import ScaleEmulator
from scale_bridge.devices.serial_scale import SerialScaleSession


def fast_emulator(config) -> ScaleEmulator:
    return ScaleEmulator(
        config.device, connect_delay=0.01, tick_seconds=0.01, reconnect_delay=0.01
    )


def listening_config(bridge_config, port):
    return dataclasses.replace(bridge_config, server=ServerConfig(host="127.0.0.1", port=port))


@pytest.mark.asyncio
async def test_services_start_and_stop(bridge_config, unused_tcp_port, wait_until):
    config = listening_config(bridge_config, unused_tcp_port)
    bridge = ScaleBridgeApp(config, device=fast_emulator(config))

    await bridge.start_services()
    try:
        await wait_until(lambda: bridge.device.is_connected)
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{unused_tcp_port}/api/weight") as response:
                payload = await response.json()
        snapshot = await bridge.health.snapshot()
    finally:
        await bridge.stop_services()

    assert payload["connected"] is True
    assert snapshot["bridgeState"]["state"] == "active"
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["scale"]["healthy"] is True
    assert components["scale"]["detail"] == "EMULATOR"
    assert components["camera"]["detail"] == "disabled"
    assert bridge.device.is_connected is False


@pytest.mark.asyncio
async def test_port_in_use_raises(bridge_config, unused_tcp_port):
    config = listening_config(bridge_config, unused_tcp_port)
    first = ScaleBridgeApp(config, device=fast_emulator(config))
    second = ScaleBridgeApp(config, device=fast_emulator(config))

    await first.start_services()
    try:
        with pytest.raises(OSError):
            await second.start_services()
    finally:
        await second.stop_services()
        await first.stop_services()


@pytest.mark.asyncio
async def test_switching_to_emulator_replaces_device(bridge_config, fake_port, wait_until):
    config = dataclasses.replace(bridge_config, emulator_mode=False)
    serial = SerialScaleSession(config.device, opener=fake_port.open)
    bridge = ScaleBridgeApp(config, device=serial)
    await serial.open()
    assert bridge.store.get().connected is True

    try:
        await bridge.apply_config({"emulatorMode": True})

        assert isinstance(bridge.device, ScaleEmulator)
        assert bridge.device.store is bridge.store
        assert serial.is_connected is False
        await wait_until(lambda: bridge.device.is_connected, timeout=3.0)
        assert bridge.store.get().connected is True
    finally:
        await bridge.stop_services()

    saved = json.loads(config.path.read_text(encoding="utf-8"))
    assert saved["emulatorMode"] is True


@pytest.mark.asyncio
async def test_execute_command_forwards_to_collector(bridge_config):
    received = []

    async def collect(request: web.Request) -> web.Response:
        received.append(await request.json())
        return web.json_response({"ok": True}, status=201)

    collector = web.Application()
    collector.router.add_post("/api/weights/capture", collect)

    async with TestServer(collector) as server:
        config = dataclasses.replace(
            bridge_config,
            relay=RelayConfig(
                enabled=True, backend_url=str(server.make_url("/api")), api_key="secret"
            ),
        )
        bridge = ScaleBridgeApp(config, device=fast_emulator(config))
        try:
            result = await bridge.execute_command(CaptureAction.NETTO, "9")
            snapshot = await bridge.health.snapshot()
        finally:
            await bridge.stop_services()

    (body,) = received
    assert body["action"] == "netto"
    assert body["orderId"] == "9"
    assert body["apiKey"] == "secret"
    assert body["weight"] == result.weight
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["relay"]["healthy"] is True
    assert snapshot["lastCapture"]["action"] == "netto"
    assert snapshot["lastCapture"]["relayed"] is True


@pytest.mark.asyncio
async def test_photo_urls_follow_public_url(bridge_config):
    config = dataclasses.replace(
        bridge_config, server=ServerConfig(port=6000, public_url="http://scale.local:6000")
    )
    bridge = ScaleBridgeApp(config, device=fast_emulator(config))

    assert bridge.public_url == "http://scale.local:6000"
    assert bridge.coordinator.base_url == "http://scale.local:6000"

    await bridge.apply_config({"server": {"publicUrl": ""}})

    assert bridge.coordinator.base_url == "http://localhost:6000"
    await bridge.stop_services()
