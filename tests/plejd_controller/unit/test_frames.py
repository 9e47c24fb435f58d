"""Unit tests for the mesh frame codec."""

from __future__ import annotations

import struct

import pytest

from plejd_controller.exceptions import FrameDecodeError
from plejd_controller.protocol.frames import (
    BROADCAST_ADDRESS,
    MeshFrame,
    Opcode,
    RequestKind,
    encode_color_temp,
    encode_dim,
    encode_scene_trigger,
    encode_state,
    encode_time_request,
    encode_time_set,
)


class TestDecode:
    def test_state_change_with_response_kind(self):
        frame = MeshFrame.decode(bytes.fromhex("05" + "0102" + "0097" + "01"))

        assert frame.address == 5
        assert frame.request_kind == RequestKind.RESPONSE
        assert frame.opcode == Opcode.STATE_CHANGE
        assert frame.state is True
        assert frame.dim_level is None

    def test_dim_fields(self):
        frame = MeshFrame.decode(bytes.fromhex("07" + "0110" + "00c8" + "01" + "80" + "80"))

        assert frame.opcode == Opcode.DIM_CHANGE
        assert frame.state is True
        assert frame.dim_level == 0x80

    def test_header_only_frame_has_no_fields(self):
        frame = MeshFrame.decode(bytes.fromhex("05" + "0110" + "0097"))

        assert frame.payload == b""
        assert frame.state is None
        assert frame.button is None
        assert frame.color_temp is None
        assert frame.mesh_time is None

    @pytest.mark.parametrize("data", [b"", b"\x05", bytes.fromhex("05011000")])
    def test_short_frames_raise(self, data: bytes):
        with pytest.raises(FrameDecodeError) as exc_info:
            _ = MeshFrame.decode(data)
        assert exc_info.value.reason == "too_short"

    def test_unknown_request_kind_is_kept(self):
        frame = MeshFrame.decode(bytes.fromhex("05" + "0103" + "0097" + "00"))
        assert frame.request_kind == 0x0103
        assert frame.state is False

    def test_mesh_time_is_little_endian_signed(self):
        frame = MeshFrame.decode(bytes.fromhex("01" + "0110" + "001b") + struct.pack("<i", 1_700_000_000) + b"\x00")
        assert frame.mesh_time == 1_700_000_000


class TestEncode:
    def test_state_on_and_off(self):
        assert encode_state(5, True) == bytes.fromhex("05" + "0110" + "0097" + "01")
        assert encode_state(5, False) == bytes.fromhex("05" + "0110" + "0097" + "00")

    def test_dim_repeats_level(self):
        assert encode_dim(9, 0xC8) == bytes.fromhex("09" + "0110" + "0098" + "01" + "c8c8")

    @pytest.mark.parametrize("brightness", [-1, 256])
    def test_dim_out_of_range(self, brightness: int):
        with pytest.raises(ValueError, match="brightness"):
            _ = encode_dim(9, brightness)

    def test_color_temperature(self):
        frame = encode_color_temp(9, 2700)
        assert frame == bytes.fromhex("09" + "0110" + "0420" + "030111" + "0a8c")
        assert MeshFrame.decode(frame).color_temp == 2700

    def test_scene_trigger_goes_to_broadcast(self):
        frame = encode_scene_trigger(3)
        assert frame[0] == BROADCAST_ADDRESS
        assert frame == bytes.fromhex("01" + "0110" + "0021" + "03")

    def test_time_request_expects_response(self):
        assert encode_time_request(5) == bytes.fromhex("05" + "0102" + "001b")

    def test_time_set_payload(self):
        frame = MeshFrame.decode(encode_time_set(5, 1_700_000_000))
        assert frame.address == 5
        assert frame.request_kind == RequestKind.NO_RESPONSE
        assert frame.mesh_time == 1_700_000_000
        assert frame.payload[-1] == 0

    def test_decode_encode_identity(self):
        raw = bytes.fromhex("0c" + "0110" + "0016" + "0c02")
        assert MeshFrame.decode(raw).encode() == raw
