"""Weighing capture: weight snapshot, evidence photo and audit row."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from . import constants
from .adapters.camera import CameraManager
from .audit import DailyCsvLog
from .config import AuditConfig
from .errors import CameraError
from .store import TelemetryStore
from .utils import isoformat, round_weight, utc_now

LOGGER = logging.getLogger(__name__)


class CaptureAction(str, Enum):
    """Weighing step being recorded."""

    BRUTTO = "brutto"
    TARA = "tara"
    NETTO = "netto"

    @classmethod
    def parse(cls, value: Any) -> "CaptureAction":
        if not isinstance(value, str):
            raise ValueError("action must be a string")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown action: {value!r}") from None


@dataclass(frozen=True, slots=True)
class CaptureResult:
    weight: float
    unit: str
    action: CaptureAction
    order_id: Optional[str]
    photo_url: Optional[str]
    photos: Tuple[str, ...] = ()
    no_camera: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "weight": self.weight,
            "unit": self.unit,
            "action": self.action.value,
            "orderId": self.order_id,
            "photoUrl": self.photo_url,
            "photos": list(self.photos),
            "noCamera": self.no_camera,
            "timestamp": isoformat(self.timestamp),
        }

    def relay_payload(self) -> Dict[str, Any]:
        """Fields forwarded to the remote collector."""
        return {
            "weight": self.weight,
            "unit": self.unit,
            "action": self.action.value,
            "orderId": self.order_id,
            "photoUrl": self.photo_url,
            "timestamp": isoformat(self.timestamp),
        }


@dataclass(frozen=True, slots=True)
class PhotoCapture:
    paths: Tuple[Path, ...]
    urls: Tuple[str, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "photoPath": str(self.paths[0]),
            "photoPaths": [str(path) for path in self.paths],
            "photoUrl": self.urls[0],
            "photoUrls": list(self.urls),
        }


def _epoch_ms() -> int:
    return int(utc_now().timestamp() * 1000)


class CaptureCoordinator:
    """Records a weighing step.

    The weight is read from the shared telemetry store before any photo is
    taken, so the recorded value is the one on the display when the
    operator pressed the button. Camera and audit failures only degrade the
    result; they never fail the capture.
    """

    def __init__(
        self,
        store: TelemetryStore,
        camera: Optional[CameraManager],
        *,
        audit: Optional[AuditConfig] = None,
        base_url: str = f"http://localhost:{constants.DEFAULT_SERVER_PORT}",
        clock_ms: Callable[[], int] = _epoch_ms,
    ) -> None:
        self._store = store
        self._camera = camera
        self._base_url = base_url.rstrip("/")
        self._clock_ms = clock_ms
        self._events_log: Optional[DailyCsvLog] = None
        self.update_audit(audit)

    @property
    def base_url(self) -> str:
        return self._base_url

    @base_url.setter
    def base_url(self, value: str) -> None:
        self._base_url = value.rstrip("/")

    def update_audit(self, audit: Optional[AuditConfig]) -> None:
        if audit is None or not audit.enable_events_csv:
            self._events_log = None
            return
        self._events_log = DailyCsvLog(
            audit.logs_dir,
            constants.EVENTS_LOG_FILENAME,
            constants.EVENTS_LOG_HEADER,
            retention_days=audit.retention_days,
        )

    def photo_url(self, path: Path) -> str:
        relative = self._camera.relative_path(path) if self._camera else path.name
        return f"{self._base_url}/photos/{relative}"

    async def capture(
        self, action: CaptureAction, order_id: Optional[str] = None
    ) -> CaptureResult:
        reading = self._store.get()
        weight = round_weight(reading.value)
        filename = f"{action.value}-{order_id or 0}-{self._clock_ms()}.jpg"

        photos: Tuple[str, ...] = ()
        photo_url: Optional[str] = None
        no_camera = False
        try:
            captured = await self.capture_photo(filename)
        except Exception as exc:
            LOGGER.warning("Photo not taken for %s: %s", action.value, exc)
            no_camera = True
        else:
            photos = captured.urls
            photo_url = captured.urls[0]

        result = CaptureResult(
            weight=weight,
            unit=reading.unit,
            action=action,
            order_id=order_id,
            photo_url=photo_url,
            photos=photos,
            no_camera=no_camera,
            timestamp=utc_now(),
        )
        LOGGER.info(
            "Captured %s: %.1f %s (order %s)", action.value, weight, reading.unit, order_id
        )
        self._record_event(result)
        return result

    async def capture_photo(self, filename: str) -> PhotoCapture:
        """Photo-only capture; raises ``CameraError`` when nothing was stored."""

        if self._camera is None:
            raise CameraError("Camera is not configured")
        paths = await self._camera.capture_photo(filename)
        return PhotoCapture(
            paths=tuple(paths),
            urls=tuple(self.photo_url(path) for path in paths),
        )

    def _record_event(self, result: CaptureResult) -> None:
        if self._events_log is None:
            return
        self._events_log.append_row(
            (
                isoformat(result.timestamp),
                result.action.value,
                result.weight,
                result.unit,
                result.order_id or "",
                result.photo_url or "",
            )
        )
