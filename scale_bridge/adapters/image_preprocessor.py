"""Downscaling of captured photos.

Cameras commonly deliver 1920px or wider frames; weighing evidence only
needs enough detail to read a licence plate and see the load, so anything
wider than the target width is resized (preserving aspect ratio) and
re-encoded as JPEG.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from PIL import Image

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PreprocessResult:
    """Result of image preprocessing."""

    image_data: bytes
    """Processed image bytes (or original if no processing needed)."""

    original_size: Tuple[int, int]
    """Original image dimensions (width, height)."""

    processed_size: Tuple[int, int]
    """Processed image dimensions (width, height)."""

    was_resized: bool
    """Whether the image was resized."""


class ImagePreprocessor:
    """Resizes images that exceed a target width."""

    def __init__(
        self,
        target_width: int = 1280,
        jpeg_quality: int = 85,
        *,
        enabled: bool = True,
    ) -> None:
        """Initialize the image preprocessor.

        Args:
            target_width: Maximum width for output images. Images wider than
                this will be resized (preserving aspect ratio).
            jpeg_quality: JPEG quality setting (1-100).
            enabled: Whether preprocessing is enabled. If False, images pass
                through unchanged.
        """
        self._target_width = target_width
        self._jpeg_quality = jpeg_quality
        self._enabled = enabled and target_width > 0

    @property
    def target_width(self) -> int:
        return self._target_width

    @property
    def jpeg_quality(self) -> int:
        return self._jpeg_quality

    @property
    def enabled(self) -> bool:
        return self._enabled

    def preprocess(self, image_data: bytes) -> PreprocessResult:
        """Downscale ``image_data`` when it is wider than the target width.

        Undecodable input is returned unchanged.
        """
        if not self._enabled:
            return PreprocessResult(image_data, (0, 0), (0, 0), False)

        try:
            img = Image.open(io.BytesIO(image_data))
            original_width, original_height = img.size

            if original_width <= self._target_width:
                return PreprocessResult(
                    image_data=image_data,
                    original_size=(original_width, original_height),
                    processed_size=(original_width, original_height),
                    was_resized=False,
                )

            ratio = self._target_width / original_width
            new_size = (self._target_width, max(1, int(original_height * ratio)))

            # JPEG has no alpha channel; flatten onto white.
            if img.mode in ("RGBA", "LA", "P"):
                background = Image.new("RGB", img.size, (255, 255, 255))
                if img.mode != "RGBA":
                    img = img.convert("RGBA")
                background.paste(img, mask=img.split()[-1])
                img = background
            elif img.mode != "RGB":
                img = img.convert("RGB")

            resized = img.resize(new_size, Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            resized.save(buffer, format="JPEG", quality=self._jpeg_quality, optimize=True)
            processed = buffer.getvalue()

            LOGGER.debug(
                "Photo resized: %dx%d -> %dx%d, %d -> %d bytes",
                original_width,
                original_height,
                new_size[0],
                new_size[1],
                len(image_data),
                len(processed),
            )
            return PreprocessResult(
                image_data=processed,
                original_size=(original_width, original_height),
                processed_size=new_size,
                was_resized=True,
            )

        except Exception as e:
            LOGGER.warning("Photo preprocessing failed, keeping original: %s", str(e))
            return PreprocessResult(image_data, (0, 0), (0, 0), False)

    def preprocess_file(self, path: Path) -> bool:
        """Downscale the photo at ``path`` in place; returns True if rewritten."""

        result = self.preprocess(path.read_bytes())
        if not result.was_resized:
            return False
        path.write_bytes(result.image_data)
        return True
