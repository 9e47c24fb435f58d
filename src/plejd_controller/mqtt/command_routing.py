"""MQTT command routing.

Decodes ``.../{unique_id}/set`` topics and their payloads and hands the result to
the event translator. Also reacts to Home Assistant's birth message by
re-announcing discovery and state.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from json import JSONDecodeError
from typing import TYPE_CHECKING, Any

from plejd_controller.const import PLEJD_HASS_BIRTH_MSG, PLEJD_HASS_STATUS_TOPIC, PLEJD_HASS_WILL_MSG
from plejd_controller.correlation import correlation_context
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.metrics import record_mqtt_command
from plejd_controller.mqtt.discovery import STATE_OFF, STATE_ON, MqttType, TopicType, decode_topic, mired_to_kelvin

if TYPE_CHECKING:
    from plejd_controller.mqtt.client import MQTTClient
    from plejd_controller.registry import DeviceRegistry
    from plejd_controller.translator import EventTranslator

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class SetCommand:
    """A decoded ``set`` payload; ``color_temp`` is in kelvin."""

    on: bool
    brightness: int | None = None
    color_temp: int | None = None
    transition: float | None = None


def _as_number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def parse_set_payload(payload: bytes) -> SetCommand | None:
    """``ON``/``OFF`` or a JSON schema light command, None if neither."""
    text = payload.decode("utf-8", errors="replace").strip()
    if not text.startswith("{"):
        match text.upper():
            case "ON":
                return SetCommand(on=True)
            case "OFF":
                return SetCommand(on=False)
            case _:
                return None

    try:
        data: Any = json.loads(text)
    except JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    brightness = _as_number(data.get("brightness"))
    mireds = _as_number(data.get("color_temp"))
    transition = _as_number(data.get("transition"))
    state = str(data.get("state", "")).upper()
    if state not in (STATE_ON, STATE_OFF):
        # HA omits state on some brightness-only commands
        if brightness is None and mireds is None:
            return None
        state = STATE_ON
    return SetCommand(
        on=state == STATE_ON,
        brightness=round(brightness) if brightness is not None else None,
        color_temp=mired_to_kelvin(round(mireds)) if mireds else None,
        transition=transition,
    )


class CommandRouter:
    """Routes inbound MQTT messages to the translator or the discovery helpers."""

    lp: str = "mqtt:rcv:"
    logger: PlejdLogger = logger
    birth_delay_range: tuple[int, int] = (5, 15)

    def __init__(
        self,
        mqtt_client: MQTTClient,
        translator: EventTranslator,
        registry: DeviceRegistry,
        logger: PlejdLogger | None = None,
    ) -> None:
        if logger is not None:
            self.logger = logger
        self.client: MQTTClient = mqtt_client
        self.translator: EventTranslator = translator
        self.registry: DeviceRegistry = registry

    async def start_receiver_task(self) -> None:
        """Listen for messages on the subscribed topics until the connection drops."""
        assert self.client.client is not None, "client must be initialized"
        async for message in self.client.client.messages:
            payload = message.payload
            if not isinstance(payload, bytes | bytearray):
                payload = str(payload).encode() if payload is not None else b""
            await self.handle_message(message.topic.value, bytes(payload))

    async def handle_message(self, topic: str, payload: bytes) -> None:
        lp = self.lp
        if topic == f"{self.client.ha_topic}/{PLEJD_HASS_STATUS_TOPIC}":
            await self._handle_hass_status(payload, lp)
            return

        decoded = decode_topic(topic)
        if decoded is None or decoded.leaf != TopicType.SET:
            self.logger.debug("%s Ignoring message on %s", lp, topic)
            return
        if not payload:
            self.logger.debug("%s Empty payload on %s, skipping...", lp, topic)
            return

        with correlation_context():
            self.logger.info(
                "%s >>> MQTT command",
                lp,
                extra={"topic": topic, "payload": payload.decode("utf-8", errors="replace")},
            )
            if decoded.mqtt_type == MqttType.SCENE:
                self._route_scene(decoded.unique_id, payload, lp)
            elif decoded.mqtt_type in (MqttType.LIGHT, MqttType.SWITCH):
                self._route_output(decoded.unique_id, payload, lp)
            else:
                self.logger.warning("%s Unsupported entity type %r on %s", lp, decoded.mqtt_type, topic)
                record_mqtt_command("unknown_type")

    def _route_scene(self, scene_id: str, payload: bytes, lp: str) -> None:
        if self.registry.get_scene(scene_id) is None:
            self.logger.warning("%s Scene %s not found", lp, scene_id)
            record_mqtt_command("unknown_entity")
            return
        command = parse_set_payload(payload)
        if command is not None and not command.on:
            self.logger.debug("%s Scene %s: OFF has no meaning, skipping", lp, scene_id)
            return
        self.translator.trigger_scene(scene_id)
        record_mqtt_command("scene")

    def _route_output(self, unique_id: str, payload: bytes, lp: str) -> None:
        device = self.registry.get_output_device(unique_id)
        if device is None:
            self.logger.warning(
                "%s Device %s not found, have you added or removed devices in the Plejd app recently?",
                lp,
                unique_id,
            )
            record_mqtt_command("unknown_entity")
            return
        command = parse_set_payload(payload)
        if command is None:
            self.logger.warning("%s Unknown payload for %s: %r, skipping...", lp, unique_id, payload)
            record_mqtt_command("bad_payload")
            return

        if command.on:
            self.translator.turn_on(
                unique_id,
                brightness=command.brightness,
                color_temp=command.color_temp,
                transition=command.transition,
            )
            record_mqtt_command("on")
        else:
            self.translator.turn_off(unique_id, transition=command.transition)
            record_mqtt_command("off")

    async def _handle_hass_status(self, payload: bytes, lp: str) -> None:
        status = payload.decode("utf-8", errors="replace").strip().casefold()
        if status == PLEJD_HASS_BIRTH_MSG:
            birth_delay = random.randint(*self.birth_delay_range)
            self.logger.info(
                "%s HASS has sent MQTT BIRTH message, re-announcing discovery, availability and state in %s seconds",
                lp,
                birth_delay,
            )
            await asyncio.sleep(birth_delay)
            await self.client.announce()
        elif status == PLEJD_HASS_WILL_MSG:
            self.logger.info("%s received Last Will msg from Home Assistant, HASS is offline!", lp)
        else:
            self.logger.warning("%s Unknown HASS status message: %s", lp, payload)
