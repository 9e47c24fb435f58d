"""Home Assistant MQTT discovery payloads and topic layout.

Every entity lives under ``{discovery_prefix}/{mqtt_type}/plejd/{unique_id}/``
with ``config``, ``state``, ``set`` and ``availability`` leaves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from plejd_controller.const import ORIGIN_STRUCT, PLEJD_HASS_TOPIC, PLEJD_MANUFACTURER, PLEJD_NODE_ID
from plejd_controller.registry import InputDevice, OutputDevice, SceneDevice

BRIDGE_AVAILABILITY_TOPIC = f"{PLEJD_HASS_TOPIC}/{PLEJD_NODE_ID}/availability"
AVAILABILITY_ONLINE = "online"
AVAILABILITY_OFFLINE = "offline"
STATE_ON = "ON"
STATE_OFF = "OFF"

MIRED_BASE = 1_000_000


class MqttType(StrEnum):
    LIGHT = "light"
    SWITCH = "switch"
    SCENE = "scene"
    DEVICE_AUTOMATION = "device_automation"


class TopicType(StrEnum):
    CONFIG = "config"
    STATE = "state"
    SET = "set"
    AVAILABILITY = "availability"


_TOPIC_RE = re.compile(
    rf"^(?P<prefix>[^/]+)/(?P<type>[^/]+)/{PLEJD_NODE_ID}/(?P<id>[^/]+)/(?P<leaf>config|state|availability|set)$",
)


@dataclass(frozen=True, slots=True)
class DecodedTopic:
    mqtt_type: str
    unique_id: str
    leaf: str


def decode_topic(topic: str) -> DecodedTopic | None:
    match = _TOPIC_RE.match(topic)
    if match is None:
        return None
    return DecodedTopic(mqtt_type=match["type"], unique_id=match["id"], leaf=match["leaf"])


def base_topic(unique_id: str, mqtt_type: MqttType, prefix: str = PLEJD_HASS_TOPIC) -> str:
    return f"{prefix}/{mqtt_type}/{PLEJD_NODE_ID}/{unique_id}"


def topic_for(unique_id: str, mqtt_type: MqttType, topic_type: TopicType, prefix: str = PLEJD_HASS_TOPIC) -> str:
    return f"{base_topic(unique_id, mqtt_type, prefix)}/{topic_type}"


def trigger_id(unique_id: str) -> str:
    return f"{unique_id}_trig"


def command_subscription(prefix: str = PLEJD_HASS_TOPIC) -> str:
    return f"{prefix}/+/{PLEJD_NODE_ID}/+/{TopicType.SET}"


def mqtt_type_of(device: OutputDevice) -> MqttType:
    return MqttType.SWITCH if device.is_switch else MqttType.LIGHT


def kelvin_to_mired(kelvin: int) -> int:
    return round(MIRED_BASE / kelvin)


def mired_to_kelvin(mired: int) -> int:
    return round(MIRED_BASE / mired)


def _availability(prefix: str) -> dict[str, object]:
    return {
        "availability": [
            {"topic": f"~/{TopicType.AVAILABILITY}"},
            {"topic": f"{prefix}/{PLEJD_NODE_ID}/availability"},
        ],
        "availability_mode": "all",
    }


def output_config(device: OutputDevice, prefix: str = PLEJD_HASS_TOPIC) -> dict[str, object]:
    mqtt_type = mqtt_type_of(device)
    device_struct: dict[str, object] = {
        "identifiers": [device.unique_id],
        "manufacturer": PLEJD_MANUFACTURER,
        "model": device.type_name,
        "name": device.name,
    }
    if device.version:
        device_struct["sw_version"] = device.version
    if device.room_name:
        device_struct["suggested_area"] = device.room_name

    config: dict[str, object] = {
        "~": base_topic(device.unique_id, mqtt_type, prefix),
        "name": None,
        "unique_id": device.unique_id,
        "state_topic": f"~/{TopicType.STATE}",
        "command_topic": f"~/{TopicType.SET}",
        **_availability(prefix),
        "optimistic": False,
        "qos": 1,
        "retain": False,
        "origin": ORIGIN_STRUCT,
        "device": device_struct,
    }
    if mqtt_type is MqttType.LIGHT:
        config["schema"] = "json"
        if device.supports_color_temp:
            config["supported_color_modes"] = ["color_temp"]
            if device.color_temp_range:
                low_k, high_k = device.color_temp_range
                config["min_mireds"] = kelvin_to_mired(high_k)
                config["max_mireds"] = kelvin_to_mired(low_k)
        elif device.dimmable:
            config["supported_color_modes"] = ["brightness"]
        else:
            config["supported_color_modes"] = ["onoff"]
    return config


def scene_config(scene: SceneDevice, prefix: str = PLEJD_HASS_TOPIC) -> dict[str, object]:
    return {
        "~": base_topic(scene.unique_id, MqttType.SCENE, prefix),
        "name": scene.name,
        "unique_id": scene.unique_id,
        "command_topic": f"~/{TopicType.SET}",
        **_availability(prefix),
        "payload_on": STATE_ON,
        "qos": 1,
        "retain": False,
        "origin": ORIGIN_STRUCT,
    }


def scene_trigger_config(scene: SceneDevice, prefix: str = PLEJD_HASS_TOPIC) -> dict[str, object]:
    return {
        "~": base_topic(trigger_id(scene.unique_id), MqttType.DEVICE_AUTOMATION, prefix),
        "automation_type": "trigger",
        "topic": f"~/{TopicType.STATE}",
        "type": "scene",
        "subtype": "trigger",
        "qos": 1,
        "origin": ORIGIN_STRUCT,
        "device": {
            "identifiers": [f"{scene.unique_id}_trigger"],
            "manufacturer": PLEJD_MANUFACTURER,
            "model": "Scene",
            "name": scene.name,
        },
    }


def input_trigger_config(device: InputDevice, prefix: str = PLEJD_HASS_TOPIC) -> dict[str, object]:
    # all inputs of one physical device share its trigger topic; the payload tells them apart
    return {
        "~": base_topic(device.device_id, MqttType.DEVICE_AUTOMATION, prefix),
        "automation_type": "trigger",
        "topic": f"~/{TopicType.STATE}",
        "payload": str(device.input),
        "type": "button_short_press",
        "subtype": f"button_{device.input + 1}",
        "qos": 1,
        "origin": ORIGIN_STRUCT,
        "device": {
            "identifiers": [device.device_id],
            "manufacturer": PLEJD_MANUFACTURER,
            "model": device.type_name,
            "name": device.name,
            **({"sw_version": device.version} if device.version else {}),
        },
    }
