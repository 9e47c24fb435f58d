"""Shared fixtures for unit tests.

Registry, transport and session fixtures all build on the sample site in
``tests.helpers.sample_site``.
"""

from __future__ import annotations

import copy
from unittest.mock import MagicMock

import pytest

from plejd_controller.ble.session import MeshSession
from plejd_controller.events import BridgeEvent, EventBus
from plejd_controller.registry import DeviceRegistry, build_registry
from plejd_controller.structs import ApiSite
from tests.helpers.fake_transport import FakeTransport
from tests.helpers.sample_site import CRYPTO_KEY, SITE_DOCUMENT, JSONDict


@pytest.fixture
def site_document() -> JSONDict:
    """A fresh, mutable copy of the sample site document."""
    return copy.deepcopy(SITE_DOCUMENT)


@pytest.fixture
def site(site_document: JSONDict) -> ApiSite:
    return ApiSite.model_validate(site_document)


@pytest.fixture
def registry(site: ApiSite) -> DeviceRegistry:
    return build_registry(site)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def bridge_events() -> EventBus[BridgeEvent]:
    return EventBus("bridge")


@pytest.fixture
def collected(bridge_events: EventBus[BridgeEvent]) -> list[BridgeEvent]:
    """Every bridge event published during the test, in order."""
    seen: list[BridgeEvent] = []
    _ = bridge_events.subscribe(seen.append)
    return seen


@pytest.fixture
def session(
    fake_transport: FakeTransport,
    registry: DeviceRegistry,
    bridge_events: EventBus[BridgeEvent],
) -> MeshSession:
    """Mesh session with every delay shrunk so tests run instantly."""
    mesh = MeshSession(fake_transport, registry, CRYPTO_KEY, events=bridge_events, connection_timeout=0)
    mesh.ping_interval = 3600
    mesh.reconnect_delay = 0
    mesh.adapter_off_delay = 0
    mesh.adapter_on_delay = 0
    mesh.clock_sync_interval = 3600
    return mesh


@pytest.fixture
def mock_scheduler() -> MagicMock:
    scheduler = MagicMock()
    scheduler.turn_on = MagicMock()
    scheduler.turn_off = MagicMock()
    scheduler.trigger_scene = MagicMock()
    return scheduler
