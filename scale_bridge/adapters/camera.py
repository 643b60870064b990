"""Photo capture for weighing evidence.

Three kinds of sources are supported:

- ``usb``: local capture devices, one ffmpeg frame grab per device index;
- ``rtsp``: IP cameras, one ffmpeg frame grab per stream URL;
- ``http``: a JPEG/MJPEG snapshot endpoint fetched over HTTP.

Photos are stored as ``<photos_dir>/<YYYY-MM-DD>/<name>.jpg``. A capture
succeeds when at least one source produced a file; individual source
failures are logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import aiohttp

from ..audit import prune_day_directories
from ..config import CameraConfig
from ..errors import CameraError
from ..utils import day_folder
from .image_preprocessor import ImagePreprocessor

LOGGER = logging.getLogger(__name__)

ProcessRunner = Callable[[Sequence[str], float], Awaitable[None]]

FFMPEG = "ffmpeg"
STDERR_TAIL = 300


def usb_input_args(device: int, platform: str = sys.platform) -> List[str]:
    """ffmpeg input arguments for a local capture device index."""

    if platform.startswith("win"):
        return ["-f", "vfwcap", "-i", str(device)]
    if platform == "darwin":
        return ["-f", "avfoundation", "-framerate", "30", "-i", str(device)]
    return ["-f", "v4l2", "-i", f"/dev/video{device}"]


async def run_ffmpeg(args: Sequence[str], timeout: float) -> None:
    """Run ffmpeg with ``args``; raise ``CameraError`` unless it exits cleanly."""

    try:
        process = await asyncio.create_subprocess_exec(
            FFMPEG,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise CameraError("ffmpeg executable not found") from exc

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise CameraError(f"ffmpeg timed out after {timeout:.0f}s") from exc

    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()[-STDERR_TAIL:]
        raise CameraError(f"ffmpeg exited with {process.returncode}: {message}")


def suffixed_name(filename: str, suffix: str) -> str:
    path = Path(filename)
    return f"{path.stem}{suffix}{path.suffix or '.jpg'}"


class CameraManager:
    """Captures photos from the configured camera sources."""

    def __init__(
        self,
        config: CameraConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        runner: Optional[ProcessRunner] = None,
        clock: Callable[[], datetime] = datetime.now,
        max_retries: int = 2,
        base_retry_delay: float = 0.5,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._runner = runner or run_ffmpeg
        self._clock = clock
        self._max_retries = max_retries
        self._base_retry_delay = base_retry_delay
        self._preprocessor = self._build_preprocessor(config)

    @staticmethod
    def _build_preprocessor(config: CameraConfig) -> ImagePreprocessor:
        return ImagePreprocessor(config.max_width, config.jpeg_quality)

    @property
    def config(self) -> CameraConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.camera_type != "none"

    @property
    def photos_dir(self) -> Path:
        return self._config.photos_dir

    def update_config(self, config: CameraConfig) -> None:
        self._config = config
        self._preprocessor = self._build_preprocessor(config)
        LOGGER.info("Camera configuration updated (type=%s)", config.camera_type)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def relative_path(self, path: Path) -> str:
        """``<day>/<file>`` form of a stored photo, as served under /photos."""
        try:
            return path.relative_to(self._config.photos_dir).as_posix()
        except ValueError:
            return f"{path.parent.name}/{path.name}"

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture_photo(self, filename: str) -> List[Path]:
        """Capture one photo per configured source.

        Returns the stored paths in source order. Raises ``CameraError`` when
        the camera is disabled, unconfigured, or no source produced a file.
        """
        sources = self._sources()
        name = Path(filename).name or "photo.jpg"
        if not name.lower().endswith(".jpg"):
            name = f"{name}.jpg"

        day_dir = self._config.photos_dir / day_folder(self._clock().date())
        try:
            day_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CameraError(f"Cannot create photo directory {day_dir}: {exc}") from exc

        photos: List[Path] = []
        for label, suffix, grab in sources:
            target = day_dir / (suffixed_name(name, suffix) if len(sources) > 1 else name)
            try:
                await grab(target)
                self._verify(target)
            except CameraError as exc:
                LOGGER.error("Capture from %s failed: %s", label, exc)
                continue
            await self._downscale(target)
            LOGGER.info("Photo from %s saved: %s", label, target)
            photos.append(target)

        if not photos:
            raise CameraError("No camera produced a photo")
        return photos

    def _sources(self) -> List[Tuple[str, str, Callable[[Path], Awaitable[None]]]]:
        config = self._config
        camera_type = config.camera_type

        if camera_type == "none":
            raise CameraError("Camera is disabled")

        if camera_type == "usb":
            if not config.devices:
                raise CameraError("No camera devices configured")
            return [
                (f"camera {device}", f"_camera{device}", self._usb_grabber(device))
                for device in config.devices
            ]

        if camera_type == "rtsp":
            urls = config.rtsp_urls or ((config.camera_url,) if config.camera_url else ())
            if not urls:
                raise CameraError("No RTSP URL configured")
            return [
                (f"RTSP camera {index}", f"_rtsp{index}", self._rtsp_grabber(url))
                for index, url in enumerate(urls, start=1)
            ]

        if camera_type == "http":
            if not config.camera_url:
                raise CameraError("No snapshot URL configured")
            return [("snapshot URL", "_http1", self._fetch_snapshot)]

        raise CameraError(f"Unsupported camera type: {camera_type}")

    def _usb_grabber(self, device: int) -> Callable[[Path], Awaitable[None]]:
        async def grab(target: Path) -> None:
            args = ["-y", *usb_input_args(device), "-frames:v", "1", "-q:v", "2", str(target)]
            await self._runner(args, self._config.timeout_seconds)

        return grab

    def _rtsp_grabber(self, url: str) -> Callable[[Path], Awaitable[None]]:
        async def grab(target: Path) -> None:
            args = [
                "-y",
                "-rtsp_transport",
                "tcp",
                "-i",
                url,
                "-frames:v",
                "1",
                "-q:v",
                "2",
                str(target),
            ]
            await self._runner(args, self._config.timeout_seconds)

        return grab

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _fetch_snapshot(self, target: Path) -> None:
        session = await self._ensure_session()
        url = self._config.camera_url
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = self._base_retry_delay * (2 ** (attempt - 1))
                LOGGER.debug(
                    "Retry %d/%d for snapshot after %.1fs", attempt, self._max_retries, delay
                )
                await asyncio.sleep(delay)

            try:
                async with session.get(url) as response:
                    if response.status >= 500:
                        # Server error - worth retrying
                        last_error = CameraError(f"Server error: {response.status}")
                        continue
                    if response.status != 200:
                        raise CameraError(f"HTTP {response.status} from snapshot URL")

                    content_type = response.headers.get("Content-Type", "image/jpeg")
                    if not content_type.startswith("image/"):
                        raise CameraError(f"Expected image, got {content_type}")

                    image_data = await response.read()
                    if not image_data:
                        raise CameraError("Camera returned empty image data")

            except asyncio.TimeoutError:
                last_error = CameraError("Snapshot request timed out")
                LOGGER.warning("Snapshot timeout (attempt %d)", attempt + 1)
                continue
            except aiohttp.ClientError as e:
                last_error = e
                LOGGER.warning("Snapshot error (attempt %d): %s", attempt + 1, str(e))
                continue

            try:
                target.write_bytes(image_data)
            except OSError as exc:
                raise CameraError(f"Cannot write {target}: {exc}") from exc
            return

        raise CameraError(
            f"Snapshot failed after {self._max_retries + 1} attempts: {last_error}"
        )

    @staticmethod
    def _verify(target: Path) -> None:
        try:
            size = target.stat().st_size
        except OSError as exc:
            raise CameraError(f"No photo written to {target}") from exc
        if size == 0:
            raise CameraError(f"Empty photo written to {target}")

    async def _downscale(self, target: Path) -> None:
        try:
            await asyncio.to_thread(self._preprocessor.preprocess_file, target)
        except OSError as exc:
            LOGGER.warning("Could not downscale %s: %s", target, exc)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_old_photos(self, today: Optional[date] = None) -> List[Path]:
        """Delete photo day-directories older than the retention period."""

        try:
            return prune_day_directories(
                self._config.photos_dir,
                self._config.retention_days,
                today=today or self._clock().date(),
            )
        except OSError as exc:
            LOGGER.error("Photo cleanup failed: %s", exc)
            return []
