"""Write queue and brightness transitions.

Commands are queued newest-first and drained oldest-first. Before an item is
written the rest of the queue is scanned: if a newer item for the same logical
id is still waiting, the older one is dropped. The net effect is "latest wins"
per device while different devices are still served in arrival order.

Transitions longer than one second are driven here as a series of DIM writes;
shorter ones are left to the firmware, which ramps on its own.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from plejd_controller import metrics
from plejd_controller.const import (
    DEFAULT_WRITE_QUEUE_WAIT_MS,
    MAX_RETRY_COUNT,
    MAX_TRANSITION_STEPS_PER_SECOND,
)
from plejd_controller.events import BridgeEvent, Connected, EventBus, Reconnecting
from plejd_controller.exceptions import MeshWriteError
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.protocol.frames import (
    encode_color_temp,
    encode_dim,
    encode_scene_trigger,
    encode_state,
)
from plejd_controller.registry import DeviceRegistry, OutputDevice

__all__ = [
    "CommandKind",
    "CommandScheduler",
    "TransitionJob",
    "WriteQueueItem",
]

logger = get_logger(__name__)

MAX_BRIGHTNESS = 255


class MeshWriter(Protocol):
    """The part of the mesh session the scheduler needs."""

    @property
    def is_ready(self) -> bool: ...

    async def write(self, frame: bytes) -> None: ...


class CommandKind(StrEnum):
    TURN_ON = "turn_on"
    TURN_OFF = "turn_off"
    DIM = "dim"
    COLOR = "color"
    SCENE = "scene"


@dataclass(slots=True)
class WriteQueueItem:
    logical_id: str
    address: int
    command: CommandKind
    brightness: int | None = None
    color_temp: int | None = None
    should_retry: bool = True
    retry_count: int = 0

    def encode(self) -> bytes:
        match self.command:
            case CommandKind.TURN_ON:
                return encode_state(self.address, True)
            case CommandKind.TURN_OFF:
                return encode_state(self.address, False)
            case CommandKind.DIM:
                return encode_dim(self.address, self.brightness or 0)
            case CommandKind.COLOR:
                return encode_color_temp(self.address, self.color_temp or 0)
            case CommandKind.SCENE:
                return encode_scene_trigger(self.address)

    def describe(self) -> str:
        if self.command is CommandKind.DIM:
            return f"{self.command} {self.brightness}"
        if self.command is CommandKind.COLOR:
            return f"{self.command} {self.color_temp}K"
        return str(self.command)


@dataclass(slots=True)
class TransitionJob:
    """One running brightness ramp. At most one exists per logical id."""

    logical_id: str
    start_brightness: int
    target_brightness: int
    duration: float
    started_at: float
    steps: float = 0.0
    task: asyncio.Task[None] | None = field(default=None, repr=False, compare=False)

    @property
    def delta(self) -> int:
        return self.target_brightness - self.start_brightness

    @property
    def interval(self) -> float:
        return self.duration / self.steps

    def brightness_at(self, elapsed: float) -> int:
        elapsed = min(max(elapsed, 0.0), self.duration)
        return round(self.start_brightness + self.delta * elapsed / self.duration)


def shape_command(brightness: int | None) -> tuple[CommandKind, int | None]:
    """Map a requested brightness to the command that expresses it."""
    if brightness is None:
        # the device resumes its last dim level on its own
        return CommandKind.TURN_ON, None
    if brightness <= 0:
        return CommandKind.TURN_OFF, None
    return CommandKind.DIM, min(brightness, MAX_BRIGHTNESS)


class CommandScheduler:
    """Accepts logical commands and feeds them to the mesh session."""

    lp: str = "CommandScheduler:"
    logger: PlejdLogger = logger

    def __init__(  # noqa: PLR0913
        self,
        session: MeshWriter,
        registry: DeviceRegistry,
        events: EventBus[BridgeEvent] | None = None,
        write_queue_wait_ms: int = DEFAULT_WRITE_QUEUE_WAIT_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: PlejdLogger | None = None,
    ) -> None:
        if logger is not None:
            self.logger = logger
        self.session: MeshWriter = session
        self.registry: DeviceRegistry = registry
        self.write_queue_wait_time: float = write_queue_wait_ms / 1000
        self.queue: deque[WriteQueueItem] = deque()
        self.transitions: dict[str, TransitionJob] = {}
        self._clock = clock
        self._sleep = sleep
        self._resume = asyncio.Event()
        self._drain_task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        if events is not None:
            self._unsubscribe = events.subscribe(self._on_bridge_event)

    # ------------------------------------------------------------------ commands

    def turn_on(
        self,
        logical_id: str,
        brightness: int | None = None,
        color_temp: int | None = None,
        transition: float | None = None,
    ) -> None:
        lp = f"{self.lp}turn_on:"
        device = self._get_device(logical_id, lp)
        if device is None:
            return
        self.logger.info(
            "%s %s (%s)",
            lp,
            device.name,
            logical_id,
            extra={"brightness": brightness, "color_temp": color_temp, "transition": transition},
        )
        if color_temp is not None:
            if device.supports_color_temp:
                self.cancel_transition(logical_id)
                self._enqueue(
                    WriteQueueItem(
                        logical_id=logical_id,
                        address=device.ble_address,
                        command=CommandKind.COLOR,
                        color_temp=self._clamp_color_temp(device, color_temp),
                    ),
                )
                return
            self.logger.debug("%s %s has no color temperature support, ignoring it", lp, device.name)
        self._transition_to(device, brightness, transition)

    def turn_off(self, logical_id: str, transition: float | None = None) -> None:
        lp = f"{self.lp}turn_off:"
        device = self._get_device(logical_id, lp)
        if device is None:
            return
        self.logger.info("%s %s (%s)", lp, device.name, logical_id, extra={"transition": transition})
        self._transition_to(device, 0, transition)

    def trigger_scene(self, scene_id: str) -> None:
        lp = f"{self.lp}trigger_scene:"
        scene = self.registry.get_scene(scene_id)
        if scene is None:
            self.logger.warning("%s Unknown scene %s", lp, scene_id)
            return
        self.logger.info("%s %s (%s)", lp, scene.name, scene_id)
        self._enqueue(
            WriteQueueItem(logical_id=scene_id, address=scene.scene_address, command=CommandKind.SCENE),
        )

    def _get_device(self, logical_id: str, lp: str) -> OutputDevice | None:
        device = self.registry.get_output_device(logical_id)
        if device is None:
            self.logger.warning("%s Unknown device %s", lp, logical_id)
        return device

    @staticmethod
    def _clamp_color_temp(device: OutputDevice, kelvin: int) -> int:
        if device.color_temp_range is None:
            return kelvin
        low, high = device.color_temp_range
        return min(max(kelvin, low), high)

    @staticmethod
    def initial_brightness(device: OutputDevice) -> int | None:
        state = device.state
        if state.on is None:
            return None
        if not state.on:
            return 0
        return state.brightness

    # ------------------------------------------------------------------ transitions

    def _transition_to(self, device: OutputDevice, target: int | None, transition: float | None) -> None:
        lp = f"{self.lp}transition:"
        initial = self.initial_brightness(device)
        self.cancel_transition(device.unique_id)
        if target is not None:
            target = min(max(target, 0), MAX_BRIGHTNESS)

        if (
            transition is not None
            and transition > 1
            and device.dimmable
            and initial is not None
            and target is not None
            and initial != target
        ):
            self._start_transition(device, initial, target, transition)
            return

        if transition and device.dimmable:
            self.logger.debug(
                "%s Not ramping %s: initial %s, target %s",
                lp,
                device.name,
                initial,
                target,
            )
        self._enqueue_brightness(device, target, should_retry=True)

    def _start_transition(self, device: OutputDevice, initial: int, target: int, duration: float) -> None:
        lp = f"{self.lp}transition:"
        delta = target - initial
        job = TransitionJob(
            logical_id=device.unique_id,
            start_brightness=initial,
            target_brightness=target,
            duration=duration,
            started_at=self._clock(),
            steps=min(abs(delta), MAX_TRANSITION_STEPS_PER_SECOND * duration),
        )
        self.logger.debug(
            "%s %s from %d to %d in %.1fs",
            lp,
            device.name,
            initial,
            target,
            duration,
            extra={"steps": job.steps, "interval_ms": round(job.interval * 1000)},
        )
        job.task = asyncio.get_running_loop().create_task(
            self._run_transition(device, job),
            name=f"transition_{device.unique_id}",
        )
        self.transitions[device.unique_id] = job

    async def _run_transition(self, device: OutputDevice, job: TransitionJob) -> None:
        lp = f"{self.lp}transition:"
        ticks = 0
        try:
            while True:
                await self._sleep(job.interval)
                ticks += 1
                elapsed = min(max(self._clock() - job.started_at, 0.0), job.duration)
                if elapsed >= job.duration:
                    self._enqueue_brightness(device, job.target_brightness, should_retry=True)
                    self.logger.debug(
                        "%s Finalized %s at %d after %d ticks",
                        lp,
                        device.name,
                        job.target_brightness,
                        ticks,
                    )
                    return
                self._enqueue_brightness(device, job.brightness_at(elapsed), should_retry=False)
        finally:
            if self.transitions.get(job.logical_id) is job:
                del self.transitions[job.logical_id]

    def cancel_transition(self, logical_id: str) -> None:
        job = self.transitions.pop(logical_id, None)
        if job is not None and job.task is not None and not job.task.done():
            job.task.cancel()
            self.logger.debug("%s Cancelled running transition for %s", self.lp, logical_id)

    # ------------------------------------------------------------------ queue

    def _enqueue_brightness(self, device: OutputDevice, brightness: int | None, should_retry: bool) -> None:
        command, level = shape_command(brightness)
        self._enqueue(
            WriteQueueItem(
                logical_id=device.unique_id,
                address=device.ble_address,
                command=command,
                brightness=level,
                should_retry=should_retry,
            ),
        )

    def _enqueue(self, item: WriteQueueItem) -> None:
        self.queue.appendleft(item)
        metrics.record_queue_depth(len(self.queue))
        self.logger.debug(
            "%s Queued %s for %s (%d pending)",
            self.lp,
            item.describe(),
            item.logical_id,
            len(self.queue),
        )

    async def drain(self) -> int:
        """Run one pass over the queue and return how many writes went out."""
        lp = f"{self.lp}drain:"
        sent = 0
        while self.queue:
            if not self.session.is_ready:
                self.logger.debug("%s Session not ready, %d item(s) waiting", lp, len(self.queue))
                break
            item = self.queue.pop()
            if any(other.logical_id == item.logical_id for other in self.queue):
                metrics.record_command("superseded")
                self.logger.debug("%s Skipping %s for %s, newer command queued", lp, item.describe(), item.logical_id)
                continue
            try:
                await self.session.write(item.encode())
            except MeshWriteError as e:
                if not item.should_retry:
                    metrics.record_command("failed")
                    self.logger.debug("%s %s for %s failed: %s", lp, item.describe(), item.logical_id, e.reason)
                    continue
                item.retry_count += 1
                if item.retry_count <= MAX_RETRY_COUNT:
                    metrics.record_command("retried")
                    self.logger.debug("%s Will retry %s, %d failure(s) so far", lp, item.logical_id, item.retry_count)
                    self.queue.append(item)
                else:
                    metrics.record_command("exhausted")
                    self.logger.error(
                        "%s Max retry count (%d) exceeded for %s, %s not written",
                        lp,
                        MAX_RETRY_COUNT,
                        item.logical_id,
                        item.describe(),
                    )
                if item.retry_count > 1:
                    # first retry goes out immediately, the rest on later passes
                    break
                continue
            sent += 1
            metrics.record_command("sent")
        metrics.record_queue_depth(len(self.queue))
        return sent

    # ------------------------------------------------------------------ lifecycle

    def _on_bridge_event(self, event: BridgeEvent) -> None:
        match event:
            case Connected():
                self.logger.info("%s Mesh connected, draining write queue", self.lp)
                self._resume.set()
            case Reconnecting():
                self.logger.info("%s Mesh reconnecting, write queue paused", self.lp)
                self._resume.clear()
            case _:
                pass

    def start(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        if self.session.is_ready:
            self._resume.set()
        self._drain_task = asyncio.get_running_loop().create_task(self._drain_loop(), name="CommandScheduler_DRAIN")

    async def _drain_loop(self) -> None:
        lp = f"{self.lp}drain_loop:"
        while True:
            await self._resume.wait()
            await self._sleep(self.write_queue_wait_time)
            if not self._resume.is_set():
                continue
            try:
                await self.drain()
            except Exception:
                self.logger.exception("%s Write queue pass failed, values probably not written", lp)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for logical_id in list(self.transitions):
            self.cancel_transition(logical_id)
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
