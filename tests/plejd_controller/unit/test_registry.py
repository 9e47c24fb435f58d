"""Unit tests for building the device directory from a site document."""

from __future__ import annotations

from plejd_controller.hardware import DeviceType
from plejd_controller.registry import DeviceRegistry, OutputDevice, build_registry
from plejd_controller.structs import ApiSite
from tests.helpers.sample_site import BUTTON_DEVICE_ID, DIMMER_ID, RELAY_ID, SCENE_ID, TUNABLE_ID, JSONDict


class TestOutputs:
    def test_dimmer(self, registry: DeviceRegistry):
        device = registry.get_output_device(DIMMER_ID)

        assert device is not None
        assert device.ble_address == 5
        assert device.name == "Kitchen"
        assert device.dimmable is True
        assert device.is_switch is False
        assert device.type_name == "DIM-01"
        assert device.version == "1.4.5"
        assert device.room_name == "Kitchen area"

    def test_relay_is_a_switch(self, registry: DeviceRegistry):
        device = registry.get_output_device(RELAY_ID)

        assert device is not None
        assert device.device_type == DeviceType.SWITCH
        assert device.dimmable is False
        assert device.is_switch is True

    def test_tunable_white_range(self, registry: DeviceRegistry):
        device = registry.get_output_device(TUNABLE_ID)

        assert device is not None
        assert device.supports_color_temp is True
        assert device.color_temp_range == (2200, 4000)

    def test_no_load_device_is_excluded(self, registry: DeviceRegistry):
        assert registry.get_output_device("AA0000000005_0") is None
        assert registry.get_output_device_by_address(20) is None

    def test_lookup_by_address(self, registry: DeviceRegistry):
        device = registry.get_output_device_by_address(7)
        assert device is not None
        assert device.unique_id == RELAY_ID

    def test_unknown_address(self, registry: DeviceRegistry):
        assert registry.get_output_device_by_address(99) is None

    def test_output_type_overrides_hardware(self, site_document: JSONDict):
        devices = site_document["devices"]
        assert isinstance(devices, list)
        devices[1]["outputType"] = "LIGHT"

        registry = build_registry(ApiSite.model_validate(site_document))
        device = registry.get_output_device(RELAY_ID)

        assert device is not None
        assert device.device_type == DeviceType.LIGHT
        assert device.is_switch is False

    def test_unknown_hardware_is_skipped(self, site_document: JSONDict):
        plejd_devices = site_document["plejdDevices"]
        assert isinstance(plejd_devices, list)
        plejd_devices[0]["hardwareId"] = "9999"

        registry = build_registry(ApiSite.model_validate(site_document))

        assert registry.get_output_device(DIMMER_ID) is None
        assert registry.get_output_device(RELAY_ID) is not None


class TestInputs:
    def test_each_input_is_registered(self, registry: DeviceRegistry):
        first = registry.get_input_device(12, 0)
        second = registry.get_input_device(12, 1)

        assert first is not None and second is not None
        assert first.device_id == second.device_id == BUTTON_DEVICE_ID
        assert (first.input, second.input) == (0, 1)
        assert registry.get_input_device(12, 2) is None

    def test_inputs_are_not_outputs(self, registry: DeviceRegistry):
        assert registry.get_output_device_by_address(12) is None


class TestScenes:
    def test_visible_scene(self, registry: DeviceRegistry):
        scene = registry.get_scene(SCENE_ID)

        assert scene is not None
        assert scene.scene_address == 3
        assert registry.get_scene_by_address(3) is scene

    def test_hidden_scene_is_skipped(self, registry: DeviceRegistry):
        assert registry.get_scene("scene-2") is None
        assert registry.get_scene_by_address(4) is None


class TestRooms:
    def test_rooms_off_by_default(self, registry: DeviceRegistry):
        assert registry.get_output_device("room-1") is None

    def test_room_as_light(self, site: ApiSite):
        registry = build_registry(site, include_rooms_as_lights=True)
        room = registry.get_output_device("room-1")

        assert room is not None
        assert room.is_room is True
        assert room.ble_address == 30
        # one of its members dims
        assert room.dimmable is True
        assert sorted(registry.output_ids_in_room("room-1")) == [DIMMER_ID, RELAY_ID]


class TestNodeAddresses:
    def test_lookup_by_mac(self, registry: DeviceRegistry):
        assert registry.get_node_address("AA:00:00:00:00:01") == 5
        assert registry.get_node_address("aa-00-00-00-00-03") == 9

    def test_unknown_mac(self, registry: DeviceRegistry):
        assert registry.get_node_address("11:22:33:44:55:66") is None


class TestRegistryMutation:
    def test_address_collision_remaps(self):
        registry = DeviceRegistry()
        first = OutputDevice(unique_id="a", ble_address=1, name="A", device_type=DeviceType.LIGHT, dimmable=True)
        second = OutputDevice(unique_id="b", ble_address=1, name="B", device_type=DeviceType.LIGHT, dimmable=True)

        registry.add_output_device(first)
        registry.add_output_device(second)

        assert registry.get_output_device_by_address(1) is second
        assert registry.get_output_device("a") is first
