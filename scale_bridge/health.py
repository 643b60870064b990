"""Health reporting utilities for scale-bridge."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .utils import isoformat, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": isoformat(self.updated_at),
        }


class HealthReporter:
    """Tracks component statuses (scale, camera, relay) for the running service."""

    _BRIDGE_KEY = "__bridge_state__"

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._last_capture: Optional[Dict[str, object]] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            previous = self._status.get(name)
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )
        if previous is not None and previous.healthy != healthy:
            LOGGER.info(
                "Component %s is now %s%s",
                name,
                "healthy" if healthy else "unhealthy",
                f" ({detail})" if detail else "",
            )

    async def record_capture(
        self,
        *,
        action: str,
        weight: float,
        no_camera: bool,
        relayed: Optional[bool],
    ) -> None:
        """Remember the latest weighing step; ``relayed`` is None when relaying is off."""
        async with self._lock:
            self._last_capture = {
                "action": action,
                "weight": weight,
                "noCamera": no_camera,
                "relayed": relayed,
                "at": isoformat(utc_now()),
            }

    async def set_bridge_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        detail_value = detail if detail is not None else state
        await self.update(self._BRIDGE_KEY, healthy, detail_value)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._status.values())
            last_capture = dict(self._last_capture) if self._last_capture else None

        bridge_state: Optional[ComponentStatus] = None
        components: list[Dict[str, object]] = []
        for status in entries:
            if status.name == self._BRIDGE_KEY:
                bridge_state = status
                continue
            components.append(status.as_dict())

        overall_components_healthy = all(item["healthy"] for item in components)
        overall = "ok" if overall_components_healthy else "degraded"
        if bridge_state is not None and not bridge_state.healthy:
            overall = "degraded"

        payload: Dict[str, object] = {"status": overall, "components": components}
        if bridge_state is not None:
            payload["bridgeState"] = {
                "state": bridge_state.detail,
                "healthy": bridge_state.healthy,
                "updatedAt": isoformat(bridge_state.updated_at),
            }
        if last_capture is not None:
            payload["lastCapture"] = last_capture

        return payload
