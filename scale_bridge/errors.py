"""Exception hierarchy for scale-bridge."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base class for errors raised by scale-bridge."""


class ConfigError(BridgeError):
    """Raised when the configuration file cannot be read or is invalid."""


class CameraError(BridgeError):
    """Raised when no camera source produced a photo."""


class InvalidRequestError(BridgeError):
    """Raised for malformed API requests; surfaced as HTTP 400."""
