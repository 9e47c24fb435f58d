"""Unit tests for the write queue and brightness transitions."""

from __future__ import annotations

import asyncio

import pytest

from plejd_controller.const import MAX_RETRY_COUNT
from plejd_controller.events import BridgeEvent, Connected, EventBus, Reconnecting
from plejd_controller.exceptions import MeshWriteError
from plejd_controller.protocol.frames import encode_dim, encode_scene_trigger, encode_state
from plejd_controller.registry import DeviceRegistry, OutputDevice
from plejd_controller.scheduler import CommandKind, CommandScheduler, WriteQueueItem, shape_command
from tests.helpers.sample_site import DIMMER_ID, NODE_MAC, RELAY_ID, SCENE_ID, TUNABLE_ID


class FakeWriter:
    """Stands in for the mesh session; ``failures`` writes fail before any succeed."""

    def __init__(self, ready: bool = True, failures: int = 0) -> None:
        self.is_ready: bool = ready
        self.failures: int = failures
        self.attempts: int = 0
        self.frames: list[bytes] = []

    async def write(self, frame: bytes) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise MeshWriteError("GATT operation timed out")
        self.frames.append(frame)


class FakeClock:
    """Integer-millisecond clock advanced only by the scheduler's own sleeps."""

    def __init__(self) -> None:
        self.ms: int = 0

    def __call__(self) -> float:
        return self.ms / 1000

    async def sleep(self, seconds: float) -> None:
        self.ms += round(seconds * 1000)
        await asyncio.sleep(0)


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(writer: FakeWriter, registry: DeviceRegistry, bridge_events: EventBus[BridgeEvent], clock: FakeClock):
    return CommandScheduler(writer, registry, bridge_events, write_queue_wait_ms=0, clock=clock, sleep=clock.sleep)


def device_at(registry: DeviceRegistry, unique_id: str, on: bool | None, brightness: int | None = None) -> OutputDevice:
    device = registry.get_output_device(unique_id)
    assert device is not None
    device.state.on = on
    device.state.brightness = brightness
    return device


class TestShapeCommand:
    @pytest.mark.parametrize(
        ("brightness", "expected"),
        [
            (None, (CommandKind.TURN_ON, None)),
            (0, (CommandKind.TURN_OFF, None)),
            (-3, (CommandKind.TURN_OFF, None)),
            (120, (CommandKind.DIM, 120)),
            (400, (CommandKind.DIM, 255)),
        ],
    )
    def test_mapping(self, brightness: int | None, expected: tuple[CommandKind, int | None]):
        assert shape_command(brightness) == expected


class TestCommands:
    @pytest.mark.asyncio
    async def test_turn_on_without_brightness(self, scheduler: CommandScheduler):
        scheduler.turn_on(DIMMER_ID)

        assert len(scheduler.queue) == 1
        assert scheduler.queue[0].command is CommandKind.TURN_ON
        assert scheduler.queue[0].encode() == encode_state(5, True)

    @pytest.mark.asyncio
    async def test_switch_turn_off_ignores_transition(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, RELAY_ID, on=True)

        scheduler.turn_off(RELAY_ID, transition=5)

        assert [item.command for item in scheduler.queue] == [CommandKind.TURN_OFF]
        assert scheduler.queue[0].encode() == bytes.fromhex("07" + "0110" + "0097" + "00")
        assert scheduler.transitions == {}

    @pytest.mark.asyncio
    async def test_unknown_device_is_ignored(self, scheduler: CommandScheduler):
        scheduler.turn_on("nope", brightness=10)
        scheduler.turn_off("nope")
        assert len(scheduler.queue) == 0

    @pytest.mark.asyncio
    async def test_color_temp_is_clamped(self, scheduler: CommandScheduler):
        scheduler.turn_on(TUNABLE_ID, color_temp=6500)

        assert len(scheduler.queue) == 1
        item = scheduler.queue[0]
        assert item.command is CommandKind.COLOR
        assert item.color_temp == 4000

    @pytest.mark.asyncio
    async def test_color_temp_takes_precedence_over_brightness(self, scheduler: CommandScheduler):
        scheduler.turn_on(TUNABLE_ID, brightness=40, color_temp=1000)

        assert [(item.command, item.color_temp) for item in scheduler.queue] == [(CommandKind.COLOR, 2200)]

    @pytest.mark.asyncio
    async def test_color_temp_on_plain_dimmer_falls_back_to_brightness(self, scheduler: CommandScheduler):
        scheduler.turn_on(DIMMER_ID, brightness=40, color_temp=3000)

        assert [(item.command, item.brightness) for item in scheduler.queue] == [(CommandKind.DIM, 40)]

    @pytest.mark.asyncio
    async def test_scene(self, scheduler: CommandScheduler):
        scheduler.trigger_scene(SCENE_ID)
        scheduler.trigger_scene("scene-2")

        assert len(scheduler.queue) == 1
        assert scheduler.queue[0].encode() == encode_scene_trigger(3)


class TestInitialBrightness:
    def test_unknown_state(self, registry: DeviceRegistry):
        assert CommandScheduler.initial_brightness(device_at(registry, DIMMER_ID, on=None)) is None

    def test_off_counts_as_zero(self, registry: DeviceRegistry):
        assert CommandScheduler.initial_brightness(device_at(registry, DIMMER_ID, on=False, brightness=90)) == 0

    def test_on_uses_cached_brightness(self, registry: DeviceRegistry):
        assert CommandScheduler.initial_brightness(device_at(registry, DIMMER_ID, on=True, brightness=90)) == 90


class TestTransitions:
    @pytest.mark.asyncio
    async def test_three_second_ramp(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=True, brightness=50)

        scheduler.turn_on(DIMMER_ID, brightness=200, transition=3)
        job = scheduler.transitions[DIMMER_ID]
        assert job.steps == 15
        assert job.task is not None
        await job.task

        assert len(scheduler.queue) == 15
        assert all(item.command is CommandKind.DIM for item in scheduler.queue)
        assert scheduler.queue[0].brightness == 200
        assert scheduler.queue[0].should_retry is True
        # intermediate steps are fire-and-forget
        assert all(item.should_retry is False for item in list(scheduler.queue)[1:])
        levels = [item.brightness or 0 for item in reversed(scheduler.queue)]
        assert levels == sorted(levels)
        assert DIMMER_ID not in scheduler.transitions

    @pytest.mark.asyncio
    async def test_small_delta_limits_steps(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=True, brightness=100)

        scheduler.turn_on(DIMMER_ID, brightness=104, transition=10)
        job = scheduler.transitions[DIMMER_ID]
        assert job.steps == 4
        assert job.task is not None
        await job.task

        assert [item.brightness for item in reversed(scheduler.queue)] == [101, 102, 103, 104]

    @pytest.mark.asyncio
    async def test_fade_out_ends_with_turn_off(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=True, brightness=100)

        scheduler.turn_off(DIMMER_ID, transition=2)
        job = scheduler.transitions[DIMMER_ID]
        assert job.task is not None
        await job.task

        assert scheduler.queue[0].command is CommandKind.TURN_OFF

    @pytest.mark.asyncio
    async def test_short_transition_is_left_to_firmware(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=True, brightness=50)

        scheduler.turn_on(DIMMER_ID, brightness=200, transition=1)

        assert scheduler.transitions == {}
        assert [(item.command, item.brightness) for item in scheduler.queue] == [(CommandKind.DIM, 200)]

    @pytest.mark.asyncio
    async def test_unknown_initial_state_skips_ramp(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=None)

        scheduler.turn_on(DIMMER_ID, brightness=200, transition=3)

        assert scheduler.transitions == {}
        assert len(scheduler.queue) == 1

    @pytest.mark.asyncio
    async def test_new_command_cancels_running_ramp(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=True, brightness=50)
        scheduler.turn_on(DIMMER_ID, brightness=200, transition=3)
        job = scheduler.transitions[DIMMER_ID]

        scheduler.turn_off(DIMMER_ID)
        assert job.task is not None
        with pytest.raises(asyncio.CancelledError):
            await job.task

        assert DIMMER_ID not in scheduler.transitions
        assert scheduler.queue[0].command is CommandKind.TURN_OFF


class TestDrain:
    @pytest.mark.asyncio
    async def test_latest_command_wins(self, scheduler: CommandScheduler, writer: FakeWriter):
        scheduler.turn_on(DIMMER_ID, brightness=100)
        scheduler.turn_on(RELAY_ID)
        scheduler.turn_on(DIMMER_ID, brightness=150)

        sent = await scheduler.drain()

        assert sent == 2
        assert writer.frames == [encode_state(7, True), encode_dim(5, 150)]
        assert len(scheduler.queue) == 0

    @pytest.mark.asyncio
    async def test_not_ready_keeps_queue(self, scheduler: CommandScheduler, writer: FakeWriter):
        writer.is_ready = False
        scheduler.turn_on(DIMMER_ID)

        assert await scheduler.drain() == 0
        assert len(scheduler.queue) == 1
        assert writer.attempts == 0

    @pytest.mark.asyncio
    async def test_failed_write_is_retried(self, scheduler: CommandScheduler, writer: FakeWriter):
        writer.failures = 1
        scheduler.turn_on(DIMMER_ID, brightness=80)

        assert await scheduler.drain() == 1
        assert writer.attempts == 2
        assert writer.frames == [encode_dim(5, 80)]

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, scheduler: CommandScheduler, writer: FakeWriter):
        writer.failures = 1000
        scheduler.turn_on(DIMMER_ID, brightness=80)

        for _ in range(MAX_RETRY_COUNT * 2):
            _ = await scheduler.drain()

        assert writer.attempts == MAX_RETRY_COUNT + 1
        assert len(scheduler.queue) == 0

    @pytest.mark.asyncio
    async def test_no_retry_items_are_dropped(self, scheduler: CommandScheduler, writer: FakeWriter):
        writer.failures = 1
        scheduler.queue.appendleft(
            WriteQueueItem(logical_id=DIMMER_ID, address=5, command=CommandKind.DIM, brightness=60, should_retry=False),
        )

        assert await scheduler.drain() == 0
        assert writer.attempts == 1
        assert len(scheduler.queue) == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_pauses_and_resumes_on_mesh_events(
        self,
        scheduler: CommandScheduler,
        bridge_events: EventBus[BridgeEvent],
    ):
        bridge_events.publish(Connected(node_address=NODE_MAC))
        assert scheduler._resume.is_set()

        bridge_events.publish(Reconnecting(attempt=1))
        assert not scheduler._resume.is_set()

    @pytest.mark.asyncio
    async def test_drain_loop_writes_queued_items(self, scheduler: CommandScheduler, writer: FakeWriter):
        scheduler.turn_on(RELAY_ID)

        scheduler.start()
        for _ in range(5):
            await asyncio.sleep(0)

        assert writer.frames == [encode_state(7, True)]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_transitions(self, scheduler: CommandScheduler, registry: DeviceRegistry):
        _ = device_at(registry, DIMMER_ID, on=True, brightness=0)
        scheduler.turn_on(DIMMER_ID, brightness=255, transition=30)

        await scheduler.stop()

        assert scheduler.transitions == {}
