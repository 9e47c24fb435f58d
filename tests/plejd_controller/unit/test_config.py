"""Unit tests for loading add-on options from file and environment."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from plejd_controller import config
from plejd_controller.config import AddonOptions, load_options
from plejd_controller.const import DEFAULT_WRITE_QUEUE_WAIT_MS
from plejd_controller.exceptions import ConfigurationError

REQUIRED = {"site": "Home", "username": "user@example.com", "password": "secret"}


def write_json(path: Path, data: object) -> Path:
    _ = path.write_text(json.dumps(data))
    return path


@pytest.fixture
def no_default_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Point the default options location at a file that does not exist."""
    monkeypatch.setattr(config, "PLEJD_OPTIONS_FILE", str(tmp_path / "missing.json"))


class TestLoadOptions:
    """Tests for load_options() sources and precedence."""

    def test_json_file(self, tmp_path: Path):
        path = write_json(tmp_path / "options.json", {**REQUIRED, "mqttBroker": "mqtt://broker.lan:1884"})

        options = load_options(path, environ={})

        assert options.site == "Home"
        assert options.mqtt_host == "broker.lan"
        assert options.mqtt_port == 1884
        assert options.write_queue_wait_time == DEFAULT_WRITE_QUEUE_WAIT_MS
        assert options.include_rooms_as_lights is False

    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "options.yaml"
        _ = path.write_text(
            "site: Home\nusername: user@example.com\npassword: secret\nupdatePlejdClock: true\nlogLevel: debug\n",
        )

        options = load_options(path, environ={})

        assert options.update_plejd_clock is True
        assert options.log_level == "debug"

    @pytest.mark.usefixtures("no_default_file")
    def test_environment_only(self):
        environ = {
            "PLEJD_SITE": "Cabin",
            "PLEJD_USERNAME": "u",
            "PLEJD_PASSWORD": "p",
            "PLEJD_INCLUDE_ROOMS_AS_LIGHTS": "yes",
            "PLEJD_WRITE_QUEUE_WAIT_TIME": "250",
        }

        options = load_options(environ=environ)

        assert options.site == "Cabin"
        assert options.include_rooms_as_lights is True
        assert options.write_queue_wait_time == 250

    def test_file_wins_over_environment(self, tmp_path: Path):
        path = write_json(tmp_path / "options.json", REQUIRED)

        options = load_options(path, environ={"PLEJD_SITE": "Elsewhere", "PLEJD_LOG_LEVEL": "warn"})

        assert options.site == "Home"
        assert options.log_level == "warn"

    def test_null_file_values_fall_back_to_environment(self, tmp_path: Path):
        path = write_json(tmp_path / "options.json", {**REQUIRED, "mqttBroker": None})

        options = load_options(path, environ={"PLEJD_MQTT_BROKER": "mqtt://10.0.0.2"})

        assert options.mqtt_host == "10.0.0.2"
        assert options.mqtt_port == 1883

    @pytest.mark.usefixtures("no_default_file")
    def test_missing_required_options(self):
        with pytest.raises(ConfigurationError, match="site"):
            _ = load_options(environ={})

    def test_explicit_path_must_exist(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            _ = load_options(tmp_path / "nope.json", environ={})

    def test_unparseable_file(self, tmp_path: Path):
        path = tmp_path / "options.json"
        _ = path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Unable to read"):
            _ = load_options(path, environ={})

    def test_file_must_hold_a_mapping(self, tmp_path: Path):
        path = write_json(tmp_path / "options.json", ["site", "Home"])

        with pytest.raises(ConfigurationError, match="mapping"):
            _ = load_options(path, environ={})

    def test_zero_connection_timeout_is_rejected(self, tmp_path: Path):
        path = write_json(tmp_path / "options.json", {**REQUIRED, "connectionTimeout": 0})

        with pytest.raises(ConfigurationError, match="connectionTimeout"):
            _ = load_options(path, environ={})


class TestAddonOptions:
    """Tests for option normalisation."""

    def test_blank_mqtt_credentials_become_none(self):
        options = AddonOptions.model_validate({**REQUIRED, "mqttUsername": "  ", "mqttPassword": ""})

        assert options.mqtt_username is None
        assert options.mqtt_password is None

    @pytest.mark.parametrize(
        ("broker", "host", "port"),
        [
            ("mqtt://localhost", "localhost", 1883),
            ("mqtt://core-mosquitto:1883/", "core-mosquitto", 1883),
            ("192.168.1.5:8883", "192.168.1.5", 8883),
            ("broker", "broker", 1883),
        ],
    )
    def test_broker_parts(self, broker: str, host: str, port: int):
        options = AddonOptions.model_validate({**REQUIRED, "mqttBroker": broker})

        assert (options.mqtt_host, options.mqtt_port) == (host, port)

    def test_field_names_are_accepted(self):
        options = AddonOptions(**REQUIRED, include_rooms_as_lights=True)

        assert options.include_rooms_as_lights is True

    def test_options_are_frozen(self):
        options = AddonOptions.model_validate(REQUIRED)

        with pytest.raises(ValueError, match="frozen"):
            options.site = "Other"  # type: ignore[misc]
