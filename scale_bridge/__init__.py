"""Serial weighing-scale bridge with camera capture and backend relay."""

from .version import __version__

__all__ = ["__version__"]
