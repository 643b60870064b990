"""Adapter modules for external integrations."""

from .camera import CameraManager, run_ffmpeg
from .image_preprocessor import ImagePreprocessor, PreprocessResult

__all__ = [
    "CameraManager",
    "ImagePreprocessor",
    "PreprocessResult",
    "run_ffmpeg",
]
