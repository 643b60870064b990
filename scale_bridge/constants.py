"""Constants used across the scale-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "scale-bridge"
DEFAULT_CONFIG_FILENAME = "config.json"
DEFAULT_DATA_DIR = Path.home() / ".scale-bridge"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = DEFAULT_DATA_DIR / "logs" / "scale_log.txt"
DEFAULT_AUDIT_DIR = DEFAULT_DATA_DIR / "logs"
DEFAULT_PHOTOS_DIR = DEFAULT_DATA_DIR / "photos"

DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 5055
DEFAULT_API_PREFIX = "/api"

DEFAULT_COM_PORT = "COM3"
DEFAULT_BAUD_RATE = 9600
DEFAULT_POLLING_INTERVAL_MS = 500
DEFAULT_POLLING_COMMAND = "S\r\n"

DEFAULT_BACKEND_URL = "http://localhost:4000/api"
API_KEY_HEADER = "X-API-Key"

RECONNECT_DELAY_SECONDS = 5.0
MANUAL_RECONNECT_DELAY_SECONDS = 1.0
RELAY_TIMEOUT_SECONDS = 10.0
CONNECTION_TEST_TIMEOUT_SECONDS = 5.0
CAMERA_TIMEOUT_SECONDS = 15.0
PHOTO_CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60

AUDIT_RETENTION_DAYS = 14
PHOTOS_RETENTION_DAYS = 30

DEFAULT_UNIT = "kg"
MAX_PLAUSIBLE_WEIGHT = 50000

SERIAL_LOG_FILENAME = "serial.csv"
SERIAL_LOG_HEADER = ("timestamp", "raw", "weight")
EVENTS_LOG_FILENAME = "events.csv"
EVENTS_LOG_HEADER = ("timestamp", "action", "weight", "unit", "orderId", "photoUrl")

EMULATOR_PORT_PATH = "EMULATOR"
