"""Last-known scale reading shared between the device and its readers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict

from . import constants
from .utils import isoformat, round_weight, utc_now


@dataclass(frozen=True, slots=True)
class Reading:
    """Immutable weight snapshot."""

    value: float = 0.0
    unit: str = constants.DEFAULT_UNIT
    connected: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "weight": round_weight(self.value),
            "unit": self.unit,
            "connected": self.connected,
            "timestamp": isoformat(self.timestamp),
        }


class TelemetryStore:
    """Holds the most recent ``Reading``.

    Updates swap the whole snapshot, so a reader always sees a consistent
    value and never waits on the device.
    """

    def __init__(self, initial: Reading | None = None) -> None:
        self._reading = initial or Reading()

    def get(self) -> Reading:
        return self._reading

    def set(self, reading: Reading) -> None:
        self._reading = reading

    def set_connected(self, connected: bool) -> None:
        current = self._reading
        if current.connected == connected:
            return
        self._reading = replace(current, connected=connected, timestamp=utc_now())

    def reset(self) -> None:
        self._reading = Reading()
