"""Constants used across the twin-agent package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "twin-agent"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

CONNECTION_STRING_ENV = "DEVICE_CONNECTION_STRING"

DEFAULT_BROKER_PORT = 8883
DEFAULT_API_VERSION = "2021-04-12"

REFRESH_RATE_KEY = "refreshRateInSeconds"
LAST_CHANGE_RECEIVED_KEY = "lastDesiredPropertyChangeReceivedAt"
TEMPERATURE_ALERT_PROPERTY = "temperatureAlert"

DEFAULT_REFRESH_RATE_SECONDS = 60
MAX_REFRESH_RATE_SECONDS = 2**31 - 1
DEFAULT_TEMPERATURE_ALERT_THRESHOLD = 30.0

UPDATE_FIRMWARE_COMMAND = "UpdateFirmware"
