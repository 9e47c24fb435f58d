"""Plejd hardware id classification.

The cloud site lists each physical device with a numeric ``hardwareId``; several
ids map to the same product (board revisions).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class DeviceType(StrEnum):
    LIGHT = "light"
    SWITCH = "switch"
    SCENE = "scene"
    INPUT = "device_automation"
    SENSOR = "sensor"


@dataclass(frozen=True, slots=True)
class HardwareInfo:
    name: str
    description: str
    device_type: DeviceType
    dimmable: bool = False
    color_temp: bool = False
    broadcast_clicks: bool = False


_DIM_01 = HardwareInfo("DIM-01", "1-channel dimmer LED, 300 VA", DeviceType.LIGHT, dimmable=True)
_DIM_02 = HardwareInfo("DIM-02", "2-channel dimmer LED, 2*100 VA", DeviceType.LIGHT, dimmable=True)
_SPR_01 = HardwareInfo("SPR-01", "Smart plug on/off with relay, 3500 W", DeviceType.SWITCH)

HARDWARE_IDS: dict[int, HardwareInfo] = {
    1: _DIM_01,
    14: _DIM_01,
    22: _DIM_01,
    2: _DIM_02,
    15: _DIM_02,
    3: HardwareInfo("CTR-01", "1-10V control unit", DeviceType.LIGHT),
    4: HardwareInfo("GWY-01", "Gateway", DeviceType.SENSOR),
    5: HardwareInfo("LED-10", "1-channel LED dimmer/driver, 10 W", DeviceType.LIGHT, dimmable=True),
    6: HardwareInfo("WPH-01", "Wireless push button, 4 buttons", DeviceType.INPUT, broadcast_clicks=True),
    7: HardwareInfo("REL-01", "1 channel relay, 3500 VA", DeviceType.SWITCH),
    8: _SPR_01,
    20: _SPR_01,
    10: HardwareInfo("WRT-01", "Wireless rotary button", DeviceType.INPUT),
    11: HardwareInfo("DIM-01-2P", "1-channel dimmer LED with 2 inputs, 300 VA", DeviceType.LIGHT, dimmable=True),
    12: HardwareInfo("DAL-01", "DALI broadcast gateway", DeviceType.LIGHT, dimmable=True),
    13: HardwareInfo("Generic", "Generic light", DeviceType.LIGHT),
    17: HardwareInfo("REL-01-2P", "1-channel relay with 2 inputs, 3500 VA", DeviceType.SWITCH),
    18: HardwareInfo("REL-02", "2-channel relay with combined input, 2*1200 VA", DeviceType.SWITCH),
    19: HardwareInfo("EXT-01", "Outdoor extension with relay", DeviceType.SWITCH),
    36: HardwareInfo(
        "LED-75",
        "1-channel LED dimmer/driver with tuneable white, 10 W",
        DeviceType.LIGHT,
        dimmable=True,
        color_temp=True,
    ),
    135: HardwareInfo("OUT-02", "Outdoor 2-channel relay", DeviceType.SWITCH),
    167: HardwareInfo("DWN-01", "Smart tunable downlight with built-in dimmer, 18 W", DeviceType.LIGHT, dimmable=True),
    199: HardwareInfo("DWN-02", "Smart tunable downlight with built-in dimmer, 18 W", DeviceType.LIGHT, dimmable=True),
}


def get_hardware_info(hardware_id: str | int) -> HardwareInfo:
    """Look up a hardware id; raises ``KeyError`` for unknown hardware."""
    try:
        return HARDWARE_IDS[int(hardware_id)]
    except (KeyError, ValueError):
        raise KeyError(f"Unknown device type with hardware id {hardware_id}") from None
