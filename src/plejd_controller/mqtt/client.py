"""MQTT client core for the Plejd controller.

Owns the broker connection lifecycle, Home Assistant discovery and the outbound
publish queue. Bridge events arrive synchronously from the event bus and are
queued; a publisher task drains the queue while the broker connection is up.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import aiomqtt

from plejd_controller.config import AddonOptions
from plejd_controller.const import (
    DEVICE_LWT_MSG,
    PLEJD_HASS_STATUS_TOPIC,
    PLEJD_HASS_TOPIC,
    PLEJD_MQTT_CONN_DELAY,
    PLEJD_NODE_ID,
)
from plejd_controller.events import (
    BridgeEvent,
    ButtonPressed,
    Connected,
    EventBus,
    Reconnecting,
    SceneTriggered,
    StateChanged,
)
from plejd_controller.exceptions import ConfigurationError
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.mqtt.command_routing import CommandRouter
from plejd_controller.mqtt.discovery import (
    AVAILABILITY_OFFLINE,
    AVAILABILITY_ONLINE,
    STATE_OFF,
    STATE_ON,
    MqttType,
    TopicType,
    command_subscription,
    input_trigger_config,
    kelvin_to_mired,
    mqtt_type_of,
    output_config,
    scene_config,
    scene_trigger_config,
    topic_for,
    trigger_id,
)
from plejd_controller.registry import DeviceRegistry, OutputDevice
from plejd_controller.translator import EventTranslator

logger = get_logger(__name__)

# CONNACK reason codes for rejected credentials (MQTT 3.1.1 and 5)
_BAD_CREDENTIALS_CODES = ("code:4]", "code:5]", "code:134]", "code:135]")


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    topic: str
    payload: bytes
    retain: bool = False
    qos: int = 1


class MQTTClient:
    """Home Assistant facing side of the bridge."""

    lp: str = "mqtt:"
    logger: PlejdLogger = logger
    start_task: asyncio.Task[None] | None = None
    client: aiomqtt.Client | None = None

    def __init__(  # noqa: PLR0913
        self,
        options: AddonOptions,
        registry: DeviceRegistry,
        translator: EventTranslator,
        events: EventBus[BridgeEvent],
        ha_topic: str = PLEJD_HASS_TOPIC,
        client_id: str | None = None,
        logger: PlejdLogger | None = None,
    ) -> None:
        if logger is not None:
            self.logger = logger
        self.broker_host: str = options.mqtt_host
        self.broker_port: int = options.mqtt_port
        self.broker_username: str | None = options.mqtt_username
        self.broker_password: str | None = options.mqtt_password
        self.broker_client_id: str = client_id or f"plejd_controller_{uuid.uuid4().hex[:12]}"
        self.ha_topic: str = ha_topic
        self.bridge_availability_topic: str = f"{ha_topic}/{PLEJD_NODE_ID}/availability"
        self.registry: DeviceRegistry = registry
        self.command_router: CommandRouter = CommandRouter(self, translator, registry, logger=logger)
        self.publish_queue: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self.mesh_online: bool = False
        self._connected: bool = False
        self._cleared_retained: bool = False
        self._unsubscribe: Callable[[], None] = events.subscribe(self.on_bridge_event)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_connection_delay(self, lp: str) -> int:
        """Get connection retry delay, defaulting to 5 seconds."""
        delay = PLEJD_MQTT_CONN_DELAY
        if delay <= 0:
            self.logger.debug("%s MQTT connection delay is <= 0, which is probably a typo, setting to 5...", lp)
            return 5
        return delay

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        while True:
            if await self.connect():
                if dropped := self.discard_backlog():
                    self.logger.debug("%s Discarded %d stale message(s)", lp, dropped)
                try:
                    await self.announce()
                    await self._run_connected(lp)
                except aiomqtt.MqttError as e:
                    self.logger.warning("%s Lost connection to MQTT broker: %s", lp, e)
                self._connected = False
            delay = self._get_connection_delay(lp)
            self.logger.info("%s (Re)connecting to MQTT broker in %s seconds...", lp, delay)
            await asyncio.sleep(delay)

    async def connect(self) -> bool:
        lp = f"{self.lp}connect:"
        self._connected = False
        self.logger.debug("%s Connecting to MQTT broker %s:%s...", lp, self.broker_host, self.broker_port)
        self.client = aiomqtt.Client(
            hostname=self.broker_host,
            port=self.broker_port,
            username=self.broker_username,
            password=self.broker_password,
            identifier=self.broker_client_id,
            will=aiomqtt.Will(topic=self.bridge_availability_topic, payload=DEVICE_LWT_MSG, qos=1, retain=True),
        )
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as e:
            # -> [Errno 111] Connection refused
            # [code:134] Bad user name or password
            if any(code in str(e) for code in _BAD_CREDENTIALS_CODES):
                self.logger.error(
                    "%s Bad username or password, check your MQTT credentials (username: %s)",
                    lp,
                    self.broker_username,
                )
                msg = f"MQTT broker rejected credentials: {e}"
                raise ConfigurationError(msg) from e
            self.logger.warning("%s Connection failed: %s", lp, e)
            return False
        self._connected = True
        self.logger.info("%s Connected to MQTT broker: %s port: %s", lp, self.broker_host, self.broker_port)
        return True

    async def _run_connected(self, lp: str) -> None:
        assert self.client is not None, "client must be initialized"
        topics = [command_subscription(self.ha_topic), f"{self.ha_topic}/{PLEJD_HASS_STATUS_TOPIC}"]
        for topic in topics:
            await self.client.subscribe(topic, qos=1)
        self.logger.debug("%s Subscribed to MQTT topics: %s. Waiting for MQTT messages...", lp, topics)

        publisher = asyncio.create_task(self._publisher(), name="MQTTClient_PUBLISHER")
        try:
            await self.command_router.start_receiver_task()
        finally:
            _ = publisher.cancel()
            _ = await asyncio.gather(publisher, return_exceptions=True)

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        self._unsubscribe()
        if self._connected:
            self.logger.debug("%s Setting all Plejd entities offline...", lp)
            await self.publish_availability(online=False)
            _ = await self.publish(self.bridge_availability_topic, DEVICE_LWT_MSG, retain=True)
        try:
            if self.client is not None:
                self.logger.debug("%s Disconnecting from broker...", lp)
                await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            self.logger.warning("%s MQTT disconnect failed: %s", lp, e)
        else:
            self.logger.info("%s Disconnected from MQTT broker", lp)
        finally:
            self._connected = False
            if self.start_task and not self.start_task.done():
                self.logger.debug("%s FINISHING: Cancelling start task", lp)
                _ = self.start_task.cancel()

    # ------------------------------------------------------------------ publishing

    async def publish(self, topic: str, payload: bytes, retain: bool = False, qos: int = 1) -> bool:
        """Publish a message to the MQTT broker."""
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            return False
        try:
            await self.client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttCodeError as e:
            self.logger.warning("%s [MqttCodeError] -> %s", lp, e)
            self._connected = False
        except aiomqtt.MqttError as e:
            self.logger.warning("%s [MqttError] -> %s", lp, e)
            self._connected = False
        else:
            return True
        return False

    async def publish_json_msg(self, topic: str, msg_data: dict[str, object], retain: bool = False) -> bool:
        return await self.publish(topic, json.dumps(msg_data).encode(), retain=retain)

    async def _publisher(self) -> None:
        lp = f"{self.lp}publisher:"
        while True:
            msg = await self.publish_queue.get()
            try:
                if not await self.publish(msg.topic, msg.payload, retain=msg.retain, qos=msg.qos):
                    self.logger.debug("%s Dropped message for %s", lp, msg.topic)
            finally:
                self.publish_queue.task_done()

    def enqueue(self, topic: str, payload: bytes, retain: bool = False) -> None:
        # announce() republishes current state once the broker is back
        if not self._connected:
            self.logger.debug("%s Not connected, dropping message for %s", self.lp, topic)
            return
        self.publish_queue.put_nowait(OutboundMessage(topic=topic, payload=payload, retain=retain))

    def discard_backlog(self) -> int:
        """Drop messages queued before the connection was lost."""
        dropped = 0
        while not self.publish_queue.empty():
            _ = self.publish_queue.get_nowait()
            self.publish_queue.task_done()
            dropped += 1
        return dropped

    # ------------------------------------------------------------------ discovery and state

    async def announce(self) -> None:
        """Discovery, availability and last known state for every entity."""
        if not self._cleared_retained:
            await self.clear_retained()
            self._cleared_retained = True
        _ = await self.publish(self.bridge_availability_topic, AVAILABILITY_ONLINE.encode(), retain=True)
        await self.homeassistant_discovery()
        await self.publish_availability(online=self.mesh_online)
        for device in self.registry.output_devices():
            if device.state.on is None:
                continue
            _ = await self.publish(
                topic_for(device.unique_id, mqtt_type_of(device), TopicType.STATE, self.ha_topic),
                self.state_payload(device, device.state.on, device.state.brightness, device.state.color_temp),
            )

    async def clear_retained(self) -> None:
        """Remove retained set/state/availability left over from earlier versions."""
        lp = f"{self.lp}clear_retained:"
        count = 0
        for unique_id, mqtt_type in self._entities():
            for topic_type in (TopicType.SET, TopicType.STATE, TopicType.AVAILABILITY):
                if await self.publish(topic_for(unique_id, mqtt_type, topic_type, self.ha_topic), b"", retain=True):
                    count += 1
        self.logger.debug("%s Cleared %d retained topic(s)", lp, count)

    async def homeassistant_discovery(self) -> bool:
        lp = f"{self.lp}hass:"
        if not self._connected:
            return False
        self.logger.info("%s Starting device discovery...", lp)
        published = 0
        for device in self.registry.output_devices():
            topic = topic_for(device.unique_id, mqtt_type_of(device), TopicType.CONFIG, self.ha_topic)
            published += await self.publish_json_msg(topic, output_config(device, self.ha_topic), retain=True)
        for scene in self.registry.scenes():
            topic = topic_for(scene.unique_id, MqttType.SCENE, TopicType.CONFIG, self.ha_topic)
            published += await self.publish_json_msg(topic, scene_config(scene, self.ha_topic), retain=True)
            topic = topic_for(trigger_id(scene.unique_id), MqttType.DEVICE_AUTOMATION, TopicType.CONFIG, self.ha_topic)
            published += await self.publish_json_msg(topic, scene_trigger_config(scene, self.ha_topic), retain=True)
        for input_device in self.registry.input_devices():
            topic = topic_for(input_device.unique_id, MqttType.DEVICE_AUTOMATION, TopicType.CONFIG, self.ha_topic)
            payload = input_trigger_config(input_device, self.ha_topic)
            published += await self.publish_json_msg(topic, payload, retain=True)
        self.logger.info("%s Discovery complete", lp, extra={"published": published})
        return True

    async def publish_availability(self, online: bool) -> None:
        payload = (AVAILABILITY_ONLINE if online else AVAILABILITY_OFFLINE).encode()
        for unique_id, mqtt_type in self._entities(include_triggers=False):
            _ = await self.publish(topic_for(unique_id, mqtt_type, TopicType.AVAILABILITY, self.ha_topic), payload)

    def _entities(self, include_triggers: bool = True) -> list[tuple[str, MqttType]]:
        entities: list[tuple[str, MqttType]] = [
            (d.unique_id, mqtt_type_of(d)) for d in self.registry.output_devices()
        ]
        entities.extend((s.unique_id, MqttType.SCENE) for s in self.registry.scenes())
        if include_triggers:
            entities.extend((trigger_id(s.unique_id), MqttType.DEVICE_AUTOMATION) for s in self.registry.scenes())
            device_ids = dict.fromkeys(i.device_id for i in self.registry.input_devices())
            entities.extend((device_id, MqttType.DEVICE_AUTOMATION) for device_id in device_ids)
        return entities

    @staticmethod
    def state_payload(device: OutputDevice, on: bool, brightness: int | None, color_temp: int | None) -> bytes:
        """``ON``/``OFF`` for switches, a JSON schema state for lights."""
        if device.is_switch:
            return (STATE_ON if on else STATE_OFF).encode()
        state: dict[str, object] = {"state": STATE_ON if on else STATE_OFF}
        if device.dimmable and brightness is not None:
            state["brightness"] = brightness
        if device.supports_color_temp and color_temp:
            state["color_mode"] = "color_temp"
            state["color_temp"] = kelvin_to_mired(color_temp)
        return json.dumps(state).encode()

    # ------------------------------------------------------------------ bridge events

    def on_bridge_event(self, event: BridgeEvent) -> None:
        lp = f"{self.lp}event:"
        match event:
            case Connected():
                self.mesh_online = True
                self._enqueue_availability(online=True)
            case Reconnecting():
                if self.mesh_online:
                    self.mesh_online = False
                    self._enqueue_availability(online=False)
            case StateChanged(unique_id=unique_id, on=on, brightness=brightness, color_temp=color_temp):
                device = self.registry.get_output_device(unique_id)
                if device is None:
                    self.logger.debug("%s State for unknown device %s", lp, unique_id)
                    return
                if brightness is None and on:
                    brightness = device.state.brightness
                self.enqueue(
                    topic_for(unique_id, mqtt_type_of(device), TopicType.STATE, self.ha_topic),
                    self.state_payload(device, on, brightness, color_temp),
                )
            case SceneTriggered(scene_id=scene_id):
                topic = topic_for(trigger_id(scene_id), MqttType.DEVICE_AUTOMATION, TopicType.STATE, self.ha_topic)
                self.enqueue(topic, b"")
            case ButtonPressed(device_id=device_id, input=input_index):
                self.enqueue(
                    topic_for(device_id, MqttType.DEVICE_AUTOMATION, TopicType.STATE, self.ha_topic),
                    str(input_index).encode(),
                )

    def _enqueue_availability(self, online: bool) -> None:
        payload = (AVAILABILITY_ONLINE if online else AVAILABILITY_OFFLINE).encode()
        for unique_id, mqtt_type in self._entities(include_triggers=False):
            self.enqueue(topic_for(unique_id, mqtt_type, TopicType.AVAILABILITY, self.ha_topic), payload)
