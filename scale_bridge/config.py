"""Configuration loader for scale-bridge.

The configuration lives in a JSON file whose keys follow the layout of the
original ScaleBridge ``config.json`` (``comPort``, ``baudRate``,
``logging.logsDir`` ...). Sections are frozen dataclasses: an update never
mutates the running configuration, it produces a new ``BridgeConfig`` that
the application hands to the components that need to reopen resources.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from . import constants
from .errors import ConfigError
from .utils import deep_merge

LOGGER = logging.getLogger(__name__)

PARITY_CODES = {
    "none": "N",
    "even": "E",
    "odd": "O",
    "mark": "M",
    "space": "S",
}

CAMERA_TYPES = ("usb", "rtsp", "http", "none")


@dataclass(frozen=True, slots=True)
class SerialConfig:
    port: str = constants.DEFAULT_COM_PORT
    baud_rate: int = constants.DEFAULT_BAUD_RATE
    data_bits: int = 8
    parity: str = "none"
    stop_bits: float = 1

    @property
    def parity_code(self) -> str:
        """Parity in the single-letter form pyserial expects."""
        return PARITY_CODES[self.parity]


@dataclass(frozen=True, slots=True)
class PollingConfig:
    enabled: bool = False
    interval_ms: int = constants.DEFAULT_POLLING_INTERVAL_MS
    command: str = constants.DEFAULT_POLLING_COMMAND


@dataclass(frozen=True, slots=True)
class AuditConfig:
    enable_serial_csv: bool = True
    enable_events_csv: bool = True
    logs_dir: Path = constants.DEFAULT_AUDIT_DIR
    retention_days: int = constants.AUDIT_RETENTION_DAYS


@dataclass(frozen=True, slots=True)
class DeviceConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)


@dataclass(frozen=True, slots=True)
class CameraConfig:
    camera_type: str = "usb"
    devices: Tuple[int, ...] = (0,)
    rtsp_urls: Tuple[str, ...] = ()
    camera_url: str = ""  # snapshot URL for "http", single-stream fallback for "rtsp"
    photos_dir: Path = constants.DEFAULT_PHOTOS_DIR
    retention_days: int = constants.PHOTOS_RETENTION_DAYS
    max_width: int = 1280
    jpeg_quality: int = 85
    timeout_seconds: float = constants.CAMERA_TIMEOUT_SECONDS


@dataclass(frozen=True, slots=True)
class RelayConfig:
    enabled: bool = True
    backend_url: str = constants.DEFAULT_BACKEND_URL
    api_key: Optional[str] = None
    timeout_seconds: float = constants.RELAY_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.backend_url and self.api_key)


@dataclass(frozen=True, slots=True)
class ServerConfig:
    host: str = constants.DEFAULT_SERVER_HOST
    port: int = constants.DEFAULT_SERVER_PORT
    api_prefix: str = constants.DEFAULT_API_PREFIX
    public_url: Optional[str] = None  # base for photo URLs; defaults to http://localhost:<port>


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    emulator_mode: bool = False
    path: Path = constants.DEFAULT_CONFIG_PATH

    def to_dict(self) -> Dict[str, Any]:
        """Render the persisted JSON layout."""
        serial = self.device.serial
        polling = self.device.polling
        audit = self.device.audit
        camera = self.camera
        return {
            "comPort": serial.port,
            "baudRate": serial.baud_rate,
            "dataBits": serial.data_bits,
            "parity": serial.parity,
            "stopBits": serial.stop_bits,
            "pollingEnabled": polling.enabled,
            "pollingIntervalMs": polling.interval_ms,
            "pollingCommand": polling.command,
            "logging": {
                "enableSerialCsv": audit.enable_serial_csv,
                "enableEventsCsv": audit.enable_events_csv,
                "logsDir": str(audit.logs_dir),
                "retentionDays": audit.retention_days,
            },
            "backendSync": self.relay.enabled,
            "backendUrl": self.relay.backend_url,
            "apiKey": self.relay.api_key or "",
            "backendTimeoutSeconds": self.relay.timeout_seconds,
            "cameraType": camera.camera_type,
            "cameraDevices": list(camera.devices),
            "rtspUrls": list(camera.rtsp_urls),
            "cameraUrl": camera.camera_url,
            "photosDir": str(camera.photos_dir),
            "photosRetentionDays": camera.retention_days,
            "photoMaxWidth": camera.max_width,
            "photoJpegQuality": camera.jpeg_quality,
            "cameraTimeoutSeconds": camera.timeout_seconds,
            "emulatorMode": self.emulator_mode,
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "apiPrefix": self.server.api_prefix,
                "publicUrl": self.server.public_url or "",
            },
            "serviceLogging": {
                "level": self.logging.level,
                "path": str(self.logging.path) if self.logging.path else "",
                "logNetwork": self.logging.log_network,
            },
        }

    def public_dict(self) -> Dict[str, Any]:
        """Configuration as exposed over HTTP; the shared secret is withheld."""
        payload = self.to_dict()
        payload.pop("apiKey", None)
        payload["apiKeyConfigured"] = bool(self.relay.api_key)
        return payload

    def with_updates(self, updates: Mapping[str, Any]) -> "BridgeConfig":
        """Return a new configuration with ``updates`` merged over this one."""
        if not isinstance(updates, Mapping):
            raise ConfigError("Configuration update must be a JSON object")
        merged = self.to_dict()
        deep_merge(merged, dict(updates))
        return config_from_dict(merged, path=self.path)


def _as_int(data: Mapping[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _as_float(data: Mapping[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ConfigError(f"{key} must be a finite number, got {value!r}")
    return number


def _as_bool(data: Mapping[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _as_str(data: Mapping[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if value is None:
        return default
    return str(value)


def _as_path(data: Mapping[str, Any], key: str, default: Path, *, base: Path) -> Path:
    value = data.get(key)
    if not value:
        return default
    candidate = Path(str(value)).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be an object")
    return value


def _parse_parity(value: str) -> str:
    lowered = value.strip().lower()
    if lowered in PARITY_CODES:
        return lowered
    for name, code in PARITY_CODES.items():
        if lowered == code.lower():
            return name
    raise ConfigError(f"parity must be one of {', '.join(PARITY_CODES)}, got {value!r}")


def config_from_dict(data: Mapping[str, Any], *, path: Path) -> BridgeConfig:
    """Build a ``BridgeConfig`` from the persisted JSON layout."""

    if not isinstance(data, Mapping):
        raise ConfigError("Configuration root must be a JSON object")

    base = path.parent
    defaults = BridgeConfig()

    stop_bits = _as_float(data, "stopBits", defaults.device.serial.stop_bits)
    if stop_bits not in (1, 1.5, 2):
        raise ConfigError(f"stopBits must be 1, 1.5 or 2, got {stop_bits!r}")
    data_bits = _as_int(data, "dataBits", defaults.device.serial.data_bits)
    if data_bits not in (5, 6, 7, 8):
        raise ConfigError(f"dataBits must be between 5 and 8, got {data_bits!r}")

    serial = SerialConfig(
        port=_as_str(data, "comPort", defaults.device.serial.port),
        baud_rate=max(1, _as_int(data, "baudRate", defaults.device.serial.baud_rate)),
        data_bits=data_bits,
        parity=_parse_parity(_as_str(data, "parity", defaults.device.serial.parity)),
        stop_bits=int(stop_bits) if stop_bits.is_integer() else stop_bits,
    )

    polling = PollingConfig(
        enabled=_as_bool(data, "pollingEnabled", False),
        interval_ms=max(
            50,
            _as_int(data, "pollingIntervalMs", constants.DEFAULT_POLLING_INTERVAL_MS),
        ),
        command=_as_str(data, "pollingCommand", constants.DEFAULT_POLLING_COMMAND)
        or constants.DEFAULT_POLLING_COMMAND,
    )

    audit_section = _section(data, "logging")
    audit = AuditConfig(
        enable_serial_csv=_as_bool(audit_section, "enableSerialCsv", True),
        enable_events_csv=_as_bool(audit_section, "enableEventsCsv", True),
        logs_dir=_as_path(
            audit_section, "logsDir", defaults.device.audit.logs_dir, base=base
        ),
        retention_days=max(
            1,
            _as_int(audit_section, "retentionDays", constants.AUDIT_RETENTION_DAYS),
        ),
    )

    camera_type = _as_str(data, "cameraType", defaults.camera.camera_type).lower()
    if camera_type not in CAMERA_TYPES:
        raise ConfigError(
            f"cameraType must be one of {', '.join(CAMERA_TYPES)}, got {camera_type!r}"
        )
    raw_devices = data.get("cameraDevices", list(defaults.camera.devices)) or []
    raw_urls = data.get("rtspUrls", []) or []
    if not isinstance(raw_devices, list) or not isinstance(raw_urls, list):
        raise ConfigError("cameraDevices and rtspUrls must be lists")
    try:
        devices = tuple(int(item) for item in raw_devices)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ConfigError("cameraDevices must contain device indexes") from exc

    camera = CameraConfig(
        camera_type=camera_type,
        devices=devices,
        rtsp_urls=tuple(str(url).strip() for url in raw_urls if str(url).strip()),
        camera_url=_as_str(data, "cameraUrl", "").strip(),
        photos_dir=_as_path(data, "photosDir", defaults.camera.photos_dir, base=base),
        retention_days=max(
            1, _as_int(data, "photosRetentionDays", constants.PHOTOS_RETENTION_DAYS)
        ),
        max_width=max(0, _as_int(data, "photoMaxWidth", defaults.camera.max_width)),
        jpeg_quality=min(
            100, max(1, _as_int(data, "photoJpegQuality", defaults.camera.jpeg_quality))
        ),
        timeout_seconds=max(
            1.0,
            _as_float(data, "cameraTimeoutSeconds", defaults.camera.timeout_seconds),
        ),
    )

    relay = RelayConfig(
        enabled=_as_bool(data, "backendSync", True),
        backend_url=_as_str(data, "backendUrl", constants.DEFAULT_BACKEND_URL)
        .strip()
        .rstrip("/"),
        api_key=_as_str(data, "apiKey", "").strip() or None,
        timeout_seconds=max(
            0.5,
            _as_float(data, "backendTimeoutSeconds", constants.RELAY_TIMEOUT_SECONDS),
        ),
    )

    server_section = _section(data, "server")
    prefix = _as_str(server_section, "apiPrefix", constants.DEFAULT_API_PREFIX).strip()
    if prefix and not prefix.startswith("/"):
        prefix = "/" + prefix
    server = ServerConfig(
        host=_as_str(server_section, "host", constants.DEFAULT_SERVER_HOST),
        port=_as_int(server_section, "port", constants.DEFAULT_SERVER_PORT),
        api_prefix=prefix.rstrip("/"),
        public_url=_as_str(server_section, "publicUrl", "").strip().rstrip("/") or None,
    )

    logging_section = _section(data, "serviceLogging")
    log_path_value = logging_section.get("path")
    if log_path_value is None:
        log_path: Optional[Path] = constants.DEFAULT_LOG_PATH
    elif log_path_value:
        log_path = _as_path(
            logging_section, "path", constants.DEFAULT_LOG_PATH, base=base
        )
    else:
        log_path = None
    logging_config = LoggingConfig(
        level=_as_str(logging_section, "level", "INFO").upper(),
        path=log_path,
        log_network=_as_bool(logging_section, "logNetwork", False),
    )

    return BridgeConfig(
        device=DeviceConfig(serial=serial, polling=polling, audit=audit),
        camera=camera,
        relay=relay,
        server=server,
        logging=logging_config,
        emulator_mode=_as_bool(data, "emulatorMode", False),
        path=path,
    )


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, writing defaults when the file is missing.

    Raises:
        ConfigError: If the file exists but cannot be read or parsed.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH

    if not config_path.exists():
        config = BridgeConfig(path=config_path)
        LOGGER.info("Configuration not found at %s; writing defaults", config_path)
        save_config(config)
        return config

    try:
        with config_path.open("r", encoding="utf-8") as stream:
            data = json.load(stream)
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration {config_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {config_path}: {exc}") from exc

    return config_from_dict(data, path=config_path)


def save_config(config: BridgeConfig) -> None:
    """Persist the configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = config_path.with_suffix(config_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as stream:
        json.dump(config.to_dict(), stream, indent=2, ensure_ascii=False)
    tmp_path.replace(config_path)


def ensure_api_key(config: BridgeConfig) -> BridgeConfig:
    """Generate and persist a relay API key when none is configured."""

    if config.relay.api_key:
        return config

    updated = replace(config, relay=replace(config.relay, api_key=str(uuid.uuid4())))
    save_config(updated)
    LOGGER.info("Generated new API key for backend relay")
    return updated
