"""Pydantic models for the Plejd cloud site document.

Only the fields the bridge reads are modelled; everything else in the
``getSiteById`` response is ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# device.traits
TRAIT_NO_LOAD = 0
TRAIT_NON_DIMMABLE = 9
TRAIT_DIMMABLE = 11
TRAIT_DIMMABLE_COLORTEMP = 15


class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ApiFirmware(_ApiModel):
    version: str | None = None


class ApiDevice(_ApiModel):
    """Configured device (one per physical unit) as placed in a room."""

    device_id: str = Field(alias="deviceId")
    object_id: str = Field(alias="objectId")
    title: str
    room_id: str | None = Field(default=None, alias="roomId")
    traits: int = TRAIT_NON_DIMMABLE
    output_type: str | None = Field(default=None, alias="outputType")


class ApiPlejdDevice(_ApiModel):
    device_id: str = Field(alias="deviceId")
    hardware_id: str = Field(alias="hardwareId")
    firmware: ApiFirmware = Field(default_factory=ApiFirmware)


class ApiColorTemperature(_ApiModel):
    behavior: str | None = None
    min_temperature_limit: int | None = Field(default=None, alias="minTemperatureLimit")
    max_temperature_limit: int | None = Field(default=None, alias="maxTemperatureLimit")


class ApiOutputSetting(_ApiModel):
    device_parse_id: str = Field(alias="deviceParseId")
    output: int = 0
    dim_curve: str | None = Field(default=None, alias="dimCurve")
    color_temperature: ApiColorTemperature | None = Field(default=None, alias="colorTemperature")


class ApiInputSetting(_ApiModel):
    device_id: str = Field(alias="deviceId")
    input: int


class ApiRoom(_ApiModel):
    room_id: str = Field(alias="roomId")
    title: str


class ApiScene(_ApiModel):
    scene_id: str = Field(alias="sceneId")
    title: str
    hidden_from_scene_list: bool = Field(default=False, alias="hiddenFromSceneList")


class ApiPlejdMesh(_ApiModel):
    crypto_key: str | None = Field(default=None, alias="cryptoKey")


class ApiSiteInfo(_ApiModel):
    site_id: str = Field(alias="siteId")
    title: str


class ApiSite(_ApiModel):
    """One element of the ``getSiteById`` result list.

    Address tables are keyed by string ids as they appear in the JSON:
    ``outputAddress[deviceId][str(output)]``, ``inputAddress[deviceId][str(input)]``,
    ``deviceAddress[deviceId]``, ``roomAddress[roomId]``, ``sceneIndex[sceneId]``.
    """

    site: ApiSiteInfo
    plejd_mesh: ApiPlejdMesh = Field(alias="plejdMesh")
    devices: list[ApiDevice] = Field(default_factory=list)
    plejd_devices: list[ApiPlejdDevice] = Field(default_factory=list, alias="plejdDevices")
    output_settings: list[ApiOutputSetting] = Field(default_factory=list, alias="outputSettings")
    input_settings: list[ApiInputSetting] = Field(default_factory=list, alias="inputSettings")
    rooms: list[ApiRoom] = Field(default_factory=list)
    scenes: list[ApiScene] = Field(default_factory=list)
    output_address: dict[str, dict[str, int]] = Field(default_factory=dict, alias="outputAddress")
    input_address: dict[str, dict[str, int]] = Field(default_factory=dict, alias="inputAddress")
    device_address: dict[str, int] = Field(default_factory=dict, alias="deviceAddress")
    room_address: dict[str, int] = Field(default_factory=dict, alias="roomAddress")
    scene_index: dict[str, int] = Field(default_factory=dict, alias="sceneIndex")
