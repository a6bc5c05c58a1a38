"""Constants used across the aquasync package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "aquasync"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_CLIENT_ID = f"{APP_NAME}-dashboard"

SENSOR_TOPIC_PREFIX = "sensor"
HOUR_TOPIC = "hour"
MODE_TOPIC = "mode"

CONTROL_STATE_PATH = "controlState"

SHORT_WINDOW_CAPACITY = 12
LONG_WINDOW_CAPACITY = 24

SECONDS_PER_HOUR = 3600
