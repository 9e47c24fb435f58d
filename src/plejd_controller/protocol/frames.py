"""Plejd mesh frame definitions and codec.

All frames (decrypted) share one header:

- Byte 0: address (output, input, scene or node, depending on the opcode)
- Bytes 1-2: request kind, big endian (0x0110 no response, 0x0102 response expected)
- Bytes 3-4: opcode, big endian
- Bytes 5+: opcode specific payload

Opcode overview:
- 0x0097 STATE_CHANGE: byte 5 on/off
- 0x0098 DIM2_CHANGE / 0x00C8 DIM_CHANGE: byte 5 on/off, byte 7 dim level
- 0x0420 COLOR_CHANGE: 03 01 11 + uint16 BE color temperature (kelvin)
- 0x0021 SCENE_TRIGGER: byte 5 scene index, sent to the broadcast address
- 0x0016 REMOTE_CLICK: byte 5 input address, byte 6 button index
- 0x001B TIME_UPDATE: int32 LE local-time seconds at byte 5
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from plejd_controller.exceptions import FrameDecodeError

BROADCAST_ADDRESS = 0x01
MIN_FRAME_LENGTH = 5

STATE_OFFSET = 5
BUTTON_OFFSET = 6
DIM_OFFSET = 7
COLOR_TEMP_OFFSET = 8
TIME_OFFSET = 5

COLOR_PAYLOAD_PREFIX = bytes((0x03, 0x01, 0x11))


class RequestKind(IntEnum):
    NO_RESPONSE = 0x0110
    RESPONSE = 0x0102


class Opcode(IntEnum):
    REMOTE_CLICK = 0x0016
    TIME_UPDATE = 0x001B
    SCENE_TRIGGER = 0x0021
    STATE_CHANGE = 0x0097
    DIM2_CHANGE = 0x0098
    DIM_CHANGE = 0x00C8
    COLOR_CHANGE = 0x0420


@dataclass(frozen=True, slots=True)
class MeshFrame:
    """One decrypted mesh frame.

    Attributes:
        address: Byte 0, whose meaning depends on the opcode
        request_kind: Bytes 1-2 (kept as int, nodes emit kinds besides the two we send)
        opcode: Bytes 3-4
        payload: Bytes 5 onwards

    """

    address: int
    request_kind: int
    opcode: int
    payload: bytes = b""

    def encode(self) -> bytes:
        return struct.pack(">BHH", self.address, self.request_kind, self.opcode) + self.payload

    @classmethod
    def decode(cls, data: bytes) -> MeshFrame:
        if len(data) < MIN_FRAME_LENGTH:
            raise FrameDecodeError("too_short", data)
        address, request_kind, opcode = struct.unpack_from(">BHH", data)
        return cls(address=address, request_kind=request_kind, opcode=opcode, payload=bytes(data[MIN_FRAME_LENGTH:]))

    def byte_at(self, offset: int) -> int | None:
        """Byte at an absolute frame offset, ``None`` when the frame is shorter."""
        index = offset - MIN_FRAME_LENGTH
        if 0 <= index < len(self.payload):
            return self.payload[index]
        return None

    @property
    def state(self) -> bool | None:
        value = self.byte_at(STATE_OFFSET)
        return None if value is None else value != 0

    @property
    def dim_level(self) -> int | None:
        return self.byte_at(DIM_OFFSET)

    @property
    def button(self) -> int | None:
        return self.byte_at(BUTTON_OFFSET)

    @property
    def color_temp(self) -> int | None:
        index = COLOR_TEMP_OFFSET - MIN_FRAME_LENGTH
        if len(self.payload) < index + 2:
            return None
        return int.from_bytes(self.payload[index : index + 2], "big")

    @property
    def mesh_time(self) -> int | None:
        """Local-time epoch seconds carried by a TIME_UPDATE frame."""
        index = TIME_OFFSET - MIN_FRAME_LENGTH
        if len(self.payload) < index + 4:
            return None
        return struct.unpack_from("<i", self.payload, index)[0]


def encode_state(address: int, on: bool) -> bytes:
    return MeshFrame(address, RequestKind.NO_RESPONSE, Opcode.STATE_CHANGE, b"\x01" if on else b"\x00").encode()


def encode_dim(address: int, brightness: int) -> bytes:
    """Dim with the 8-bit level repeated in both bytes of the 16-bit field."""
    if not 0 <= brightness <= 0xFF:
        raise ValueError(f"brightness out of range: {brightness}")
    level = (brightness << 8) | brightness
    return MeshFrame(address, RequestKind.NO_RESPONSE, Opcode.DIM2_CHANGE, b"\x01" + struct.pack(">H", level)).encode()


def encode_color_temp(address: int, kelvin: int) -> bytes:
    if not 0 <= kelvin <= 0xFFFF:
        raise ValueError(f"color temperature out of range: {kelvin}")
    payload = COLOR_PAYLOAD_PREFIX + struct.pack(">H", kelvin)
    return MeshFrame(address, RequestKind.NO_RESPONSE, Opcode.COLOR_CHANGE, payload).encode()


def encode_scene_trigger(scene_address: int) -> bytes:
    return MeshFrame(BROADCAST_ADDRESS, RequestKind.NO_RESPONSE, Opcode.SCENE_TRIGGER, bytes((scene_address,))).encode()


def encode_time_set(address: int, local_seconds: int) -> bytes:
    payload = struct.pack("<i", local_seconds) + b"\x00"
    return MeshFrame(address, RequestKind.NO_RESPONSE, Opcode.TIME_UPDATE, payload).encode()


def encode_time_request(address: int) -> bytes:
    return MeshFrame(address, RequestKind.RESPONSE, Opcode.TIME_UPDATE).encode()
