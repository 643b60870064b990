import asyncio
import csv
import logging
from dataclasses import replace
from pathlib import Path

import pytest

from scale_bridge.config import AuditConfig, PollingConfig, SerialConfig
from scale_bridge.devices.base import ConnectionState
from scale_bridge.devices.serial_scale import SerialScaleSession, split_frames


def make_session(config, port, **kwargs) -> SerialScaleSession:
    kwargs.setdefault("reconnect_delay", 0.05)
    kwargs.setdefault("manual_reconnect_delay", 0.01)
    kwargs.setdefault("idle_flush_seconds", 0.2)
    return SerialScaleSession(config, opener=port.open, **kwargs)


def test_split_frames_handles_all_terminators():
    buffer = bytearray(b"one\r\ntwo\nthree\rfour")

    frames = split_frames(buffer)

    assert frames == [b"one", b"two", b"three"]
    assert buffer == bytearray(b"four")


@pytest.mark.asyncio
async def test_current_weight_before_connect(device_config, fake_port):
    session = make_session(device_config, fake_port)

    reading = session.get_current_weight()

    assert reading.value == 0.0
    assert reading.connected is False
    assert session.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_open_passes_serial_settings(device_config, fake_port):
    config = replace(
        device_config,
        serial=SerialConfig(port="COM4", baud_rate=4800, data_bits=7, parity="even", stop_bits=2),
    )
    session = make_session(config, fake_port)

    assert await session.open() is True
    await session.stop()

    assert fake_port.calls == [
        {"url": "COM4", "baudrate": 4800, "bytesize": 7, "parity": "E", "stopbits": 2}
    ]


@pytest.mark.asyncio
async def test_frames_update_store_and_callbacks(device_config, fake_port, wait_until):
    session = make_session(device_config, fake_port)
    received = []
    session.register_reading_callback(lambda reading: received.append(reading.value))

    await session.open()
    fake_port.reader.feed_data(b"ST,GS,+012345.0kg\r\nGS,+6200.0kg\r\n")

    await wait_until(lambda: len(received) == 2)
    await session.stop()

    assert received == [12345.0, 6200.0]


@pytest.mark.asyncio
async def test_frame_split_across_chunks(device_config, fake_port, wait_until):
    session = make_session(device_config, fake_port)

    await session.open()
    fake_port.reader.feed_data(b"ST,GS,+0123")
    await asyncio.sleep(0.01)
    fake_port.reader.feed_data(b"45.0kg\r\n")

    await wait_until(lambda: session.get_current_weight().value == 12345.0)
    reading = session.get_current_weight()
    await session.stop()

    assert reading.connected is True


@pytest.mark.asyncio
async def test_unterminated_frame_is_flushed_when_line_goes_idle(
    device_config, fake_port, wait_until
):
    session = make_session(device_config, fake_port, idle_flush_seconds=0.02)

    await session.open()
    fake_port.reader.feed_data(b"18460,5")

    await wait_until(lambda: session.get_current_weight().value == 18460.5)
    await session.stop()


@pytest.mark.asyncio
async def test_unparsed_frame_keeps_last_reading(device_config, fake_port, wait_until, caplog):
    session = make_session(device_config, fake_port)

    await session.open()
    fake_port.reader.feed_data(b"GS,+6200.0kg\r\n")
    await wait_until(lambda: session.get_current_weight().value == 6200.0)

    with caplog.at_level(logging.WARNING, logger="scale_bridge.devices.serial_scale"):
        fake_port.reader.feed_data(b"garbage\r\n")
        await wait_until(lambda: "Could not decode" in caplog.text)

    await session.stop()
    assert session.get_current_weight().value == 6200.0


@pytest.mark.asyncio
async def test_open_failure_schedules_retry(device_config, fake_port, wait_until):
    fake_port.fail = True
    session = make_session(device_config, fake_port)

    assert await session.open() is False
    assert session.reconnect_pending is True

    fake_port.fail = False
    await wait_until(lambda: session.is_connected)
    await session.stop()

    assert fake_port.opens == 2


@pytest.mark.asyncio
async def test_double_disconnect_schedules_single_reconnect(
    device_config, fake_port, wait_until
):
    session = make_session(device_config, fake_port)
    disconnects = []
    session.register_disconnected_callback(lambda: disconnects.append(True))

    await session.open()
    await session.disconnect()
    await session.disconnect()

    assert session.reconnect_pending is True
    await wait_until(lambda: session.is_connected)
    await asyncio.sleep(0.15)
    await session.stop()

    assert fake_port.opens == 2
    assert disconnects == [True, True]


@pytest.mark.asyncio
async def test_port_closed_by_device_triggers_reconnect(device_config, fake_port, wait_until):
    session = make_session(device_config, fake_port)
    events = []
    session.register_connected_callback(lambda: events.append("connected"))
    session.register_disconnected_callback(lambda: events.append("disconnected"))

    await session.open()
    fake_port.reader.feed_eof()

    await wait_until(lambda: fake_port.opens == 2 and session.is_connected)
    await session.stop()

    assert events == ["connected", "disconnected", "connected", "disconnected"]


@pytest.mark.asyncio
async def test_manual_reconnect_reopens_port(device_config, fake_port, wait_until):
    session = make_session(device_config, fake_port)

    await session.open()
    first_writer = fake_port.writer
    await session.reconnect()

    assert first_writer.closed is True
    await wait_until(lambda: session.is_connected and fake_port.opens == 2)
    await session.stop()


@pytest.mark.asyncio
async def test_update_config_reopens_with_new_settings(device_config, fake_port, wait_until):
    session = make_session(device_config, fake_port)
    await session.open()

    await session.update_config(replace(device_config, serial=SerialConfig(port="COM9")))

    await wait_until(lambda: session.is_connected and fake_port.opens == 2)
    await session.stop()
    assert fake_port.calls[-1]["url"] == "COM9"


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect(device_config, fake_port):
    fake_port.fail = True
    session = make_session(device_config, fake_port)

    await session.open()
    await session.stop()
    await asyncio.sleep(0.1)

    assert session.reconnect_pending is False
    assert fake_port.opens == 1
    assert session.get_current_weight().connected is False


@pytest.mark.asyncio
async def test_polling_sends_command_while_connected(device_config, fake_port, wait_until):
    config = replace(device_config, polling=PollingConfig(enabled=True, interval_ms=10))
    session = make_session(config, fake_port)

    await session.open()
    writer = fake_port.writer
    assert session.polling_active is True

    await wait_until(lambda: writer.written.count(b"S\r\n") >= 2)
    await session.stop()

    assert session.polling_active is False


@pytest.mark.asyncio
async def test_send_command_without_port_returns_false(device_config, fake_port):
    session = make_session(device_config, fake_port)

    assert await session.send_command(b"S\r\n") is False


@pytest.mark.asyncio
async def test_serial_csv_records_raw_frames(device_config, fake_port, wait_until, tmp_path: Path):
    logs_dir = tmp_path / "audit"
    config = replace(device_config, audit=AuditConfig(enable_serial_csv=True, logs_dir=logs_dir))
    session = make_session(config, fake_port)

    await session.open()
    fake_port.reader.feed_data(b"ST,GS,+012345.0kg\r\nnoise\r\n")
    await wait_until(lambda: session.get_current_weight().value == 12345.0)
    await asyncio.sleep(0.05)
    await session.stop()

    (csv_path,) = list(logs_dir.glob("*/serial.csv"))
    with csv_path.open("r", encoding="utf-8", newline="") as stream:
        rows = list(csv.reader(stream))
    assert rows[0] == ["timestamp", "raw", "weight"]
    assert rows[1][1:] == ["ST,GS,+012345.0kg", "12345.0"]
    assert rows[2][1:] == ["noise", ""]
