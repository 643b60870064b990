import random

import pytest

from scale_bridge.devices.base import ConnectionState
from scale_bridge.devices.emulator import SCENARIO_WEIGHTS, ScaleEmulator


class ScriptedRandom(random.Random):
    """Returns queued values from ``random()``; everything else stays seeded."""

    def __init__(self, values):
        super().__init__(0)
        self._values = list(values)

    def random(self):
        return self._values.pop(0)

    def getrandbits(self, k):
        return super().getrandbits(k)


def make_emulator(device_config, **kwargs) -> ScaleEmulator:
    kwargs.setdefault("connect_delay", 0.01)
    kwargs.setdefault("tick_seconds", 0.01)
    kwargs.setdefault("reconnect_delay", 0.01)
    return ScaleEmulator(device_config, **kwargs)


def test_step_moves_at_most_fifty_kg_per_tick(device_config):
    emulator = ScaleEmulator(device_config, tick_seconds=0.5)
    emulator.set_weight(1000)

    assert emulator.step() == 50.0
    assert emulator.step() == 100.0


def test_step_moves_down_towards_lower_target(device_config):
    emulator = ScaleEmulator(device_config, tick_seconds=0.5)
    emulator.set_weight(120)
    for _ in range(3):
        emulator.step()
    emulator.set_weight(30)

    assert emulator.step() == 70.0
    assert emulator.step() == 30.0


def test_reaching_target_draws_new_one(device_config):
    emulator = ScaleEmulator(device_config, rng=ScriptedRandom([0.9, 0.5]))
    emulator.set_weight(0.05)

    emulator.step()

    assert emulator.weight == 0.05
    assert emulator.target == 12500.0


def test_scenario_targets_are_preferred(device_config):
    emulator = ScaleEmulator(device_config, rng=ScriptedRandom([0.1]))

    emulator.step()

    assert emulator.target in SCENARIO_WEIGHTS


def test_manual_scenarios(device_config):
    emulator = ScaleEmulator(device_config)

    emulator.simulate_load()
    assert emulator.target == 18460.0
    emulator.simulate_unload()
    assert emulator.target == 6200.0
    emulator.simulate_empty()
    assert emulator.target == 0.0
    emulator.set_weight(-10)
    assert emulator.target == 0.0


@pytest.mark.asyncio
async def test_open_connects_after_delay_and_emits_readings(device_config, wait_until):
    emulator = make_emulator(device_config)
    readings = []
    connected = []
    emulator.register_reading_callback(readings.append)
    emulator.register_connected_callback(lambda: connected.append(True))

    assert await emulator.open() is True
    assert connected == [True]
    await wait_until(lambda: len(readings) >= 3)
    await emulator.stop()

    assert all(reading.connected for reading in readings)
    assert emulator.state == ConnectionState.DISCONNECTED
    assert emulator.get_current_weight().connected is False
    assert emulator.get_current_weight().value == 0.0


@pytest.mark.asyncio
async def test_reconnect_comes_back(device_config, wait_until):
    emulator = make_emulator(device_config)
    disconnected = []
    emulator.register_disconnected_callback(lambda: disconnected.append(True))

    await emulator.open()
    await emulator.reconnect()

    assert emulator.is_connected is False
    await wait_until(lambda: emulator.is_connected)
    await emulator.stop()

    assert disconnected == [True, True]


@pytest.mark.asyncio
async def test_list_ports_reports_synthetic_entry(device_config):
    emulator = make_emulator(device_config)

    ports = await emulator.list_ports()

    assert [port["path"] for port in ports] == ["EMULATOR"]
