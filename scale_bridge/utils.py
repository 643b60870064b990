"""Small helpers shared across modules."""

from __future__ import annotations

import copy
import math
import socket
from datetime import date, datetime, timezone
from typing import Any, Dict


def deep_merge(target: Dict[str, Any], updates: Dict[str, Any]) -> None:
    """Recursively merge updates into target dict, modifying target in-place.

    For each key in updates:
    - If both target[key] and updates[key] are dicts, recursively merge them
    - Otherwise, overwrite target[key] with a deep copy of updates[key]

    Examples:
        >>> target = {"comPort": "COM3", "logging": {"logsDir": "./logs", "retentionDays": 14}}
        >>> deep_merge(target, {"logging": {"retentionDays": 7}})
        >>> target
        {"comPort": "COM3", "logging": {"logsDir": "./logs", "retentionDays": 7}}
    """
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            deep_merge(existing, value)
        else:
            target[key] = copy.deepcopy(value)


def round_weight(value: float) -> float:
    """Round half-up to one decimal place (12.25 -> 12.3, -12.25 -> -12.2)."""
    return math.floor(value * 10 + 0.5) / 10


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix for UTC."""
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def day_folder(moment: date) -> str:
    return moment.strftime("%Y-%m-%d")


def detect_local_ip() -> str:
    """Best-effort discovery of the first non-loopback IPv4 address."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            # No packets are sent for a UDP connect; it only selects a route.
            probe.connect(("10.255.255.255", 1))
            address = probe.getsockname()[0]
    except OSError:
        return "localhost"
    if not address or address.startswith("127."):
        return "localhost"
    return address
