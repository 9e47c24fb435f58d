"""Unit tests for the bleak-backed transport and hardware lookup."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bleak.exc import BleakError

from plejd_controller.ble.transport import BleakTransport, BleLink, Candidate, MeshCharacteristics
from plejd_controller.const import DATA_UUID, LAST_DATA_UUID, PING_UUID, PLEJD_SERVICE_UUID
from plejd_controller.exceptions import CharacteristicsError, PlejdConnectionError
from plejd_controller.hardware import DeviceType, get_hardware_info


def gatt_client(present: set[str] | None) -> MagicMock:
    client = MagicMock()
    if present is None:
        client.services.get_service.return_value = None
    else:
        service = MagicMock()
        service.get_characteristic.side_effect = lambda uuid: object() if uuid in present else None
        client.services.get_service.return_value = service
    return client


class TestHardware:
    def test_board_revisions_share_info(self):
        assert get_hardware_info(1) is get_hardware_info("14")

    def test_relay(self):
        info = get_hardware_info("7")
        assert info.device_type is DeviceType.SWITCH
        assert info.dimmable is False

    def test_tunable_white(self):
        assert get_hardware_info(36).color_temp is True

    @pytest.mark.parametrize("hardware_id", ["9999", "abc"])
    def test_unknown(self, hardware_id: str):
        with pytest.raises(KeyError):
            _ = get_hardware_info(hardware_id)


class TestBleakTransport:
    @pytest.mark.asyncio
    async def test_scan_returns_candidates(self):
        device = SimpleNamespace(address="AA:00:00:00:00:01", name="P mesh")
        found = {"AA:00:00:00:00:01": (device, SimpleNamespace(rssi=-61))}

        with patch("plejd_controller.ble.transport.BleakScanner.discover", AsyncMock(return_value=found)) as discover:
            candidates = await BleakTransport().scan(PLEJD_SERVICE_UUID, 2.5)

        assert candidates == [Candidate(address="AA:00:00:00:00:01", rssi=-61, name="P mesh")]
        discover.assert_awaited_once_with(timeout=2.5, return_adv=True, service_uuids=[PLEJD_SERVICE_UUID])

    @pytest.mark.asyncio
    async def test_connect_failure_is_wrapped(self):
        with patch("plejd_controller.ble.transport.BleakClient") as client_cls:
            client_cls.return_value.connect = AsyncMock(side_effect=BleakError("le-connection-abort-by-local"))

            with pytest.raises(PlejdConnectionError) as exc_info:
                _ = await BleakTransport().connect(Candidate(address="AA:00:00:00:00:01", rssi=-50))

        assert exc_info.value.state == "connecting"

    @pytest.mark.asyncio
    async def test_all_characteristics_present(self):
        wanted = MeshCharacteristics()
        present = {wanted.data, wanted.last_data, wanted.auth, wanted.ping}
        link = BleLink(candidate=Candidate("AA:00:00:00:00:01", -50), handle=gatt_client(present))

        assert await BleakTransport().resolve_characteristics(link, PLEJD_SERVICE_UUID) == wanted

    @pytest.mark.asyncio
    async def test_missing_characteristic(self):
        link = BleLink(candidate=Candidate("AA:00:00:00:00:01", -50), handle=gatt_client({DATA_UUID, LAST_DATA_UUID}))

        with pytest.raises(CharacteristicsError) as exc_info:
            _ = await BleakTransport().resolve_characteristics(link, PLEJD_SERVICE_UUID)

        assert PING_UUID in exc_info.value.missing

    @pytest.mark.asyncio
    async def test_missing_service(self):
        link = BleLink(candidate=Candidate("AA:00:00:00:00:01", -50), handle=gatt_client(None))

        with pytest.raises(CharacteristicsError):
            _ = await BleakTransport().resolve_characteristics(link, PLEJD_SERVICE_UUID)

    @pytest.mark.asyncio
    async def test_notifications_arrive_as_bytes(self):
        client = MagicMock()
        client.start_notify = AsyncMock()
        link = BleLink(candidate=Candidate("AA:00:00:00:00:01", -50), handle=client)
        received: list[bytes] = []

        await BleakTransport().subscribe(link, LAST_DATA_UUID, received.append)
        handler = client.start_notify.await_args.args[1]
        handler(None, bytearray(b"\x01\x02"))

        assert received == [b"\x01\x02"]
        assert isinstance(received[0], bytes)
