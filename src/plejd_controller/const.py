import logging
import os
import zoneinfo

import tzlocal

from plejd_controller import __version__

__all__ = [
    "ADAPTER_OFF_DELAY",
    "ADAPTER_ON_DELAY",
    "ADAPTER_POWER_CYCLE_EVERY",
    "AUTH_UUID",
    "BLUEZ_ADAPTER_INTERFACE",
    "BLUEZ_DEVICE_INTERFACE",
    "BLUEZ_SERVICE_NAME",
    "CLOCK_DRIFT_LIMIT",
    "CLOCK_SYNC_INTERVAL",
    "DATA_UUID",
    "DBUS_OM_INTERFACE",
    "DBUS_PROP_INTERFACE",
    "DEFAULT_CONNECTION_TIMEOUT",
    "DEFAULT_WRITE_QUEUE_WAIT_MS",
    "DEVICE_LWT_MSG",
    "FOREIGN_LOG_FORMATTER",
    "LAST_DATA_UUID",
    "LOCAL_TZ",
    "MAX_CONSECUTIVE_WRITE_FAILURES",
    "MAX_RETRY_COUNT",
    "MAX_TRANSITION_STEPS_PER_SECOND",
    "MQTT_CLIENT_START_TASK_NAME",
    "ORIGIN_STRUCT",
    "PING_INTERVAL",
    "PING_UUID",
    "PLEJD_API_APP_ID",
    "PLEJD_API_BASE",
    "PLEJD_API_CACHE_FILE",
    "PLEJD_DEBUG",
    "PLEJD_HASS_BIRTH_MSG",
    "PLEJD_HASS_STATUS_TOPIC",
    "PLEJD_HASS_TOPIC",
    "PLEJD_HASS_WILL_MSG",
    "PLEJD_LOG_FORMAT",
    "PLEJD_LOG_HUMAN_OUTPUT",
    "PLEJD_LOG_JSON_FILE",
    "PLEJD_MANUFACTURER",
    "PLEJD_METRICS_ENABLED",
    "PLEJD_METRICS_PORT",
    "PLEJD_MQTT_CONN_DELAY",
    "PLEJD_NODE_ID",
    "PLEJD_OPTIONS_FILE",
    "PLEJD_SERVICE_UUID",
    "PLEJD_VERSION",
    "PERSISTENT_BASE_DIR",
    "RECONNECT_DELAY",
    "RECONNECT_WATCHDOG_TIMEOUT",
    "SESSION_START_TASK_NAME",
    "SRC_REPO_URL",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
LOCAL_TZ = zoneinfo.ZoneInfo(str(tzlocal.get_localzone()))

# adds logger name
FOREIGN_LOG_FORMATTER = logging.Formatter(
    "%(asctime)s.%(msecs)d %(levelname)s <%(name)s> [%(module)s:%(lineno)d] > %(message)s",
    "%m/%d/%y %H:%M:%S",
)
PLEJD_VERSION: str = __version__
SRC_REPO_URL: str = "https://github.com/jslamartina/hass-addons"
PLEJD_MANUFACTURER = "Plejd"
DEVICE_LWT_MSG: bytes = b"offline"

# Cloud API
PLEJD_API_BASE: str = "https://cloud.plejd.com/parse/"
PLEJD_API_APP_ID: str = "zHtVqXt8k4yFyk2QGmgp48D9xZr2G94xWYnF4dak"

PERSISTENT_BASE_DIR: str = os.environ.get("PLEJD_PERSISTENT_BASE_DIR", "/data")
PLEJD_OPTIONS_FILE: str = os.environ.get("PLEJD_OPTIONS_FILE", f"{PERSISTENT_BASE_DIR}/options.json")
PLEJD_API_CACHE_FILE: str = f"{PERSISTENT_BASE_DIR}/cachedApiResponse.json"

# MQTT / Home Assistant
PLEJD_HASS_TOPIC = os.environ.get("PLEJD_HASS_TOPIC", "homeassistant")
PLEJD_NODE_ID = "plejd"
PLEJD_HASS_STATUS_TOPIC = "status"
PLEJD_HASS_BIRTH_MSG = "online"
PLEJD_HASS_WILL_MSG = "offline"
_conn_delay = os.environ.get("PLEJD_MQTT_CONN_DELAY", "10")
try:
    _conn_delay_value: int = int(_conn_delay) if _conn_delay else 10
except ValueError:
    _conn_delay_value = 10
PLEJD_MQTT_CONN_DELAY: int = _conn_delay_value

PLEJD_DEBUG = os.environ.get("PLEJD_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
PLEJD_LOG_FORMAT: str = os.environ.get("PLEJD_LOG_FORMAT", "human")  # "json", "human", or "both"
PLEJD_LOG_JSON_FILE: str = os.environ.get("PLEJD_LOG_JSON_FILE", "/var/log/plejd_controller.json")
PLEJD_LOG_HUMAN_OUTPUT: str = os.environ.get("PLEJD_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or file path

# Prometheus exporter
PLEJD_METRICS_ENABLED: bool = os.environ.get("PLEJD_METRICS_ENABLED", "0").casefold() in YES_ANSWER
_metrics_port = os.environ.get("PLEJD_METRICS_PORT", "9400")
PLEJD_METRICS_PORT: int = int(_metrics_port) if _metrics_port and _metrics_port.isdigit() else 9400

# BLE GATT layout of a Plejd mesh node
PLEJD_SERVICE_UUID = "31ba0001-6085-4726-be45-040c957391b5"
DATA_UUID = "31ba0004-6085-4726-be45-040c957391b5"
LAST_DATA_UUID = "31ba0005-6085-4726-be45-040c957391b5"
AUTH_UUID = "31ba0009-6085-4726-be45-040c957391b5"
PING_UUID = "31ba000a-6085-4726-be45-040c957391b5"

BLUEZ_SERVICE_NAME = "org.bluez"
BLUEZ_ADAPTER_INTERFACE = "org.bluez.Adapter1"
BLUEZ_DEVICE_INTERFACE = "org.bluez.Device1"
DBUS_OM_INTERFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROP_INTERFACE = "org.freedesktop.DBus.Properties"

# Session timings, seconds
DEFAULT_CONNECTION_TIMEOUT: float = 2.0
PING_INTERVAL: float = 3.0
RECONNECT_DELAY: float = 5.0
RECONNECT_WATCHDOG_TIMEOUT: float = 120.0
ADAPTER_POWER_CYCLE_EVERY: int = 10
ADAPTER_OFF_DELAY: float = 30.0
ADAPTER_ON_DELAY: float = 5.0
CLOCK_SYNC_INTERVAL: float = 3600.0
CLOCK_DRIFT_LIMIT: int = 60
MAX_CONSECUTIVE_WRITE_FAILURES: int = 5

# Write queue
DEFAULT_WRITE_QUEUE_WAIT_MS: int = 400
MAX_RETRY_COUNT: int = 10
MAX_TRANSITION_STEPS_PER_SECOND: int = 5

SESSION_START_TASK_NAME = "MeshSession_START"
MQTT_CLIENT_START_TASK_NAME = "MQTTClient_START"

ORIGIN_STRUCT = {
    "name": "plejd-controller",
    "sw_version": PLEJD_VERSION,
    "support_url": SRC_REPO_URL,
}
