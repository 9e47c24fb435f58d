"""Device directory: mesh addresses to logical devices.

Built once from the cloud site document before the mesh session starts. After
that the only mutable part is each output's cached ``DeviceState``, which is
written by the event translator.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field

from plejd_controller.hardware import DeviceType, get_hardware_info
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.structs import (
    TRAIT_DIMMABLE,
    TRAIT_DIMMABLE_COLORTEMP,
    TRAIT_NO_LOAD,
    ApiSite,
)

logger = get_logger(__name__)


@dataclass(slots=True)
class DeviceState:
    on: bool | None = None
    brightness: int | None = None
    color_temp: int | None = None


@dataclass(slots=True)
class OutputDevice:
    """A controllable load (light or relay channel), or a room exposed as a light."""

    unique_id: str
    ble_address: int
    name: str
    device_type: DeviceType
    dimmable: bool
    supports_color_temp: bool = False
    color_temp_range: tuple[int, int] | None = None
    device_id: str | None = None
    output: int | None = None
    room_id: str | None = None
    room_name: str | None = None
    type_name: str = ""
    version: str | None = None
    is_room: bool = False
    state: DeviceState = field(default_factory=DeviceState)

    @property
    def is_switch(self) -> bool:
        """Plain on/off load; these never report their own state over the mesh."""
        return self.device_type == DeviceType.SWITCH and not self.dimmable


@dataclass(frozen=True, slots=True)
class InputDevice:
    unique_id: str
    ble_address: int
    device_id: str
    input: int
    name: str
    type_name: str = ""
    version: str | None = None


@dataclass(frozen=True, slots=True)
class SceneDevice:
    unique_id: str
    scene_address: int
    name: str


def unique_output_id(device_id: str, output: int) -> str:
    return f"{device_id}_{output}"


def unique_input_id(device_id: str, input_index: int) -> str:
    return f"{device_id}_input_{input_index}"


def _normalize_serial(value: str) -> str:
    return value.replace(":", "").replace("-", "").upper()


class DeviceRegistry:
    lp: str = "DeviceRegistry:"
    logger: PlejdLogger = logger

    def __init__(self, logger: PlejdLogger | None = None) -> None:
        if logger is not None:
            self.logger = logger
        self.crypto_key: bytes | None = None
        self.site_name: str | None = None
        self._outputs: dict[str, OutputDevice] = {}
        self._outputs_by_address: dict[int, str] = {}
        self._inputs: dict[str, InputDevice] = {}
        self._inputs_by_address: dict[tuple[int, int], str] = {}
        self._scenes: dict[str, SceneDevice] = {}
        self._scenes_by_address: dict[int, str] = {}
        self._node_addresses: dict[str, int] = {}

    def add_output_device(self, device: OutputDevice) -> None:
        previous = self._outputs_by_address.get(device.ble_address)
        if previous is not None and previous != device.unique_id:
            self.logger.warning(
                "%s BLE address %s already taken by %s, remapping to %s",
                self.lp,
                device.ble_address,
                previous,
                device.unique_id,
            )
        self._outputs[device.unique_id] = device
        self._outputs_by_address[device.ble_address] = device.unique_id

    def add_input_device(self, device: InputDevice) -> None:
        self._inputs[device.unique_id] = device
        self._inputs_by_address[(device.ble_address, device.input)] = device.unique_id

    def add_scene(self, scene: SceneDevice) -> None:
        self._scenes[scene.unique_id] = scene
        self._scenes_by_address[scene.scene_address] = scene.unique_id

    def add_node_address(self, serial: str, ble_address: int) -> None:
        """Register the mesh address a physical node answers on (keyed by BLE MAC)."""
        self._node_addresses[_normalize_serial(serial)] = ble_address

    def get_output_device(self, unique_id: str) -> OutputDevice | None:
        return self._outputs.get(unique_id)

    def get_output_device_by_address(self, ble_address: int) -> OutputDevice | None:
        unique_id = self._outputs_by_address.get(ble_address)
        return self._outputs.get(unique_id) if unique_id is not None else None

    def get_input_device(self, ble_address: int, input_index: int) -> InputDevice | None:
        unique_id = self._inputs_by_address.get((ble_address, input_index))
        return self._inputs.get(unique_id) if unique_id is not None else None

    def get_scene(self, unique_id: str) -> SceneDevice | None:
        return self._scenes.get(unique_id)

    def get_scene_by_address(self, scene_address: int) -> SceneDevice | None:
        unique_id = self._scenes_by_address.get(scene_address)
        return self._scenes.get(unique_id) if unique_id is not None else None

    def get_node_address(self, mac: str) -> int | None:
        return self._node_addresses.get(_normalize_serial(mac))

    def output_devices(self) -> Iterator[OutputDevice]:
        return iter(list(self._outputs.values()))

    def input_devices(self) -> Iterator[InputDevice]:
        return iter(list(self._inputs.values()))

    def scenes(self) -> Iterator[SceneDevice]:
        return iter(list(self._scenes.values()))

    def output_ids_in_room(self, room_id: str) -> list[str]:
        return [d.unique_id for d in self._outputs.values() if d.room_id == room_id and not d.is_room]


def _add_outputs_and_inputs(registry: DeviceRegistry, site: ApiSite, lp: str) -> None:
    plejd_devices = {d.device_id: d for d in site.plejd_devices}
    rooms = {r.room_id: r for r in site.rooms}

    for device in site.devices:
        plejd_device = plejd_devices.get(device.device_id)
        if plejd_device is None:
            registry.logger.warning("%s No Plejd hardware entry for %s, skipping", lp, device.device_id)
            continue
        if device.device_id in site.device_address:
            registry.add_node_address(device.device_id, site.device_address[device.device_id])
        try:
            hardware = get_hardware_info(plejd_device.hardware_id)
        except KeyError as e:
            registry.logger.error("%s %s (%s)", lp, e, device.title)
            continue

        setting = next((s for s in site.output_settings if s.device_parse_id == device.object_id), None)
        output = setting.output if setting else 0
        addresses = site.output_address.get(device.device_id)

        if addresses:
            if device.traits == TRAIT_NO_LOAD:
                registry.logger.warning("%s Device %s has no load configured, excluding", lp, device.title)
                continue
            ble_address = addresses.get(str(output))
            if ble_address is None:
                registry.logger.warning("%s No output address %s for %s", lp, output, device.title)
                continue

            device_type = hardware.device_type
            if device.output_type == "RELAY":
                device_type = DeviceType.SWITCH
            elif device.output_type == "LIGHT":
                device_type = DeviceType.LIGHT

            color_settings = setting.color_temperature if setting else None
            color_range = None
            if (
                color_settings
                and color_settings.min_temperature_limit
                and color_settings.max_temperature_limit
            ):
                color_range = (color_settings.min_temperature_limit, color_settings.max_temperature_limit)
            supports_color_temp = device.traits == TRAIT_DIMMABLE_COLORTEMP and (
                hardware.color_temp or (color_settings is not None and color_settings.behavior == "adjustable")
            )
            room = rooms.get(device.room_id) if device.room_id else None

            registry.add_output_device(
                OutputDevice(
                    unique_id=unique_output_id(device.device_id, output),
                    ble_address=ble_address,
                    name=device.title,
                    device_type=device_type,
                    dimmable=device.traits in (TRAIT_DIMMABLE, TRAIT_DIMMABLE_COLORTEMP),
                    supports_color_temp=supports_color_temp,
                    color_temp_range=color_range,
                    device_id=device.device_id,
                    output=output,
                    room_id=device.room_id,
                    room_name=room.title if room else None,
                    type_name=hardware.name,
                    version=plejd_device.firmware.version,
                ),
            )
            continue

        if not hardware.broadcast_clicks:
            registry.logger.debug("%s %s (%s) has no outputs and sends no clicks", lp, device.title, hardware.name)
            continue
        ble_address = site.device_address.get(device.device_id)
        if ble_address is None:
            registry.logger.warning("%s No device address for input device %s", lp, device.title)
            continue
        for setting_in in (s for s in site.input_settings if s.device_id == device.device_id):
            registry.add_input_device(
                InputDevice(
                    unique_id=unique_input_id(device.device_id, setting_in.input),
                    ble_address=ble_address,
                    device_id=device.device_id,
                    input=setting_in.input,
                    name=device.title,
                    type_name=hardware.name,
                    version=plejd_device.firmware.version,
                ),
            )


def build_registry(
    site: ApiSite,
    include_rooms_as_lights: bool = False,
    logger: PlejdLogger | None = None,
) -> DeviceRegistry:
    """Populate a ``DeviceRegistry`` from a cloud site document.

    Outputs come from ``outputAddress`` (devices with ``NO_LOAD`` traits are
    skipped), inputs from ``inputSettings`` of devices that broadcast clicks,
    scenes from ``sceneIndex`` and, optionally, rooms from ``roomAddress`` as
    dimmable lights when any of their outputs is dimmable.
    """
    lp = "build_registry:"
    registry = DeviceRegistry(logger=logger)
    registry.site_name = site.site.title

    _add_outputs_and_inputs(registry, site, lp)

    if include_rooms_as_lights:
        for room in site.rooms:
            room_address = site.room_address.get(room.room_id)
            if room_address is None:
                continue
            members = [registry.get_output_device(uid) for uid in registry.output_ids_in_room(room.room_id)]
            registry.add_output_device(
                OutputDevice(
                    unique_id=room.room_id,
                    ble_address=room_address,
                    name=room.title,
                    device_type=DeviceType.LIGHT,
                    dimmable=any(m is not None and m.dimmable for m in members),
                    type_name="Room",
                    is_room=True,
                ),
            )

    for scene in site.scenes:
        if scene.hidden_from_scene_list:
            continue
        scene_address = site.scene_index.get(scene.scene_id)
        if scene_address is None:
            registry.logger.warning("%s Scene %s has no index, skipping", lp, scene.title)
            continue
        registry.add_scene(SceneDevice(unique_id=scene.scene_id, scene_address=scene_address, name=scene.title))

    registry.logger.info(
        "%s Directory built",
        lp,
        extra={
            "site": site.site.title,
            "outputs": len(list(registry.output_devices())),
            "inputs": len(list(registry.input_devices())),
            "scenes": len(list(registry.scenes())),
        },
    )
    return registry
