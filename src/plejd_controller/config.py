"""Add-on options.

Home Assistant writes the add-on configuration to ``/data/options.json``. For
local runs the same keys can come from a YAML file or from ``PLEJD_*``
environment variables (e.g. ``PLEJD_SITE``, ``PLEJD_MQTT_BROKER``), which only
fill keys the file does not set.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from plejd_controller.const import (
    DEFAULT_CONNECTION_TIMEOUT,
    DEFAULT_WRITE_QUEUE_WAIT_MS,
    PLEJD_OPTIONS_FILE,
    YES_ANSWER,
)
from plejd_controller.exceptions import ConfigurationError
from plejd_controller.logging_abstraction import get_logger

__all__ = [
    "AddonOptions",
    "load_options",
]

logger = get_logger(__name__)

_ENV_PREFIX = "PLEJD_"


class AddonOptions(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    site: str
    username: str
    password: str
    mqtt_broker: str = Field(default="mqtt://localhost", alias="mqttBroker")
    mqtt_username: str | None = Field(default=None, alias="mqttUsername")
    mqtt_password: str | None = Field(default=None, alias="mqttPassword")
    include_rooms_as_lights: bool = Field(default=False, alias="includeRoomsAsLights")
    prefer_cached_api_response: bool = Field(default=False, alias="preferCachedApiResponse")
    update_plejd_clock: bool = Field(default=False, alias="updatePlejdClock")
    log_level: str = Field(default="info", alias="logLevel")
    connection_timeout: float = Field(default=DEFAULT_CONNECTION_TIMEOUT, gt=0, alias="connectionTimeout")
    write_queue_wait_time: int = Field(default=DEFAULT_WRITE_QUEUE_WAIT_MS, ge=0, alias="writeQueueWaitTime")

    @field_validator("mqtt_username", "mqtt_password", mode="before")
    @classmethod
    def _empty_as_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def mqtt_host(self) -> str:
        return self._broker_parts()[0]

    @property
    def mqtt_port(self) -> int:
        return self._broker_parts()[1]

    def _broker_parts(self) -> tuple[str, int]:
        """``mqtt://host:port`` -> ``(host, port)``; the scheme and port are optional."""
        broker = self.mqtt_broker
        if "://" in broker:
            broker = broker.split("://", 1)[1]
        broker = broker.rstrip("/")
        host, _, port = broker.partition(":")
        return host, int(port) if port.isdigit() else 1883


def _env_key(alias: str) -> str:
    # mqttBroker -> PLEJD_MQTT_BROKER
    snake = "".join(f"_{c}" if c.isupper() else c for c in alias)
    return f"{_ENV_PREFIX}{snake.upper()}"


def _from_env(environ: Mapping[str, str]) -> dict[str, object]:
    values: dict[str, object] = {}
    for name, info in AddonOptions.model_fields.items():
        alias = info.alias or name
        raw = environ.get(_env_key(alias))
        if raw is None:
            continue
        if info.annotation is bool:
            values[alias] = raw.casefold() in YES_ANSWER
        else:
            values[alias] = raw
    return values


def _read_file(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        msg = f"Unable to read options from {path}: {e}"
        raise ConfigurationError(msg) from e
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        msg = f"Options file {path} must contain a mapping"
        raise ConfigurationError(msg)
    return dict(cast("Mapping[str, Any]", data))


def load_options(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> AddonOptions:
    """Load and validate add-on options.

    Raises:
        ConfigurationError: file unreadable or required options missing/invalid

    """
    lp = "load_options:"
    options_path = Path(path or PLEJD_OPTIONS_FILE).expanduser()
    env_values = _from_env(os.environ if environ is None else environ)

    file_values: dict[str, Any] = {}
    if options_path.exists():
        file_values = _read_file(options_path)
        logger.info("%s Loaded options", lp, extra={"path": str(options_path)})
    elif path is not None:
        msg = f"Options file not found: {options_path}"
        raise ConfigurationError(msg)
    else:
        logger.debug("%s No options file at %s, using environment only", lp, options_path)

    merged = {**env_values, **{k: v for k, v in file_values.items() if v is not None}}
    try:
        return AddonOptions.model_validate(merged)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        msg = f"Invalid add-on options ({fields}): {e.error_count()} error(s)"
        raise ConfigurationError(msg) from e
