"""Mesh session: owns the single BLE link into the Plejd mesh.

State machine::

    IDLE -> DISCOVERING -> CONNECTING -> AUTHENTICATING -> READY
                 ^                                          |
                 +------------- RECONNECTING <--------------+

Any state may fall back to RECONNECTING on failure; ``stop()`` returns to
IDLE from anywhere. Writes are only accepted while READY.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections.abc import Coroutine
from datetime import datetime
from enum import StrEnum
from typing import Any, Final

from plejd_controller import metrics
from plejd_controller.ble.transport import BleLink, BleTransport, Candidate, MeshCharacteristics
from plejd_controller.const import (
    ADAPTER_OFF_DELAY,
    ADAPTER_ON_DELAY,
    ADAPTER_POWER_CYCLE_EVERY,
    CLOCK_DRIFT_LIMIT,
    CLOCK_SYNC_INTERVAL,
    DEFAULT_CONNECTION_TIMEOUT,
    LOCAL_TZ,
    MAX_CONSECUTIVE_WRITE_FAILURES,
    PING_INTERVAL,
    PLEJD_SERVICE_UUID,
    RECONNECT_DELAY,
    RECONNECT_WATCHDOG_TIMEOUT,
)
from plejd_controller.correlation import correlation_context
from plejd_controller.events import (
    BridgeEvent,
    Connected,
    EventBus,
    MeshButtonEvent,
    MeshEvent,
    MeshSceneEvent,
    MeshStateEvent,
    Reconnecting,
)
from plejd_controller.exceptions import (
    AuthenticationError,
    CryptoKeyError,
    DiscoveryError,
    FrameDecodeError,
    MeshWriteError,
    PlejdConnectionError,
    SessionStateError,
)
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.protocol.crypto import (
    KEY_LENGTH,
    challenge_response,
    encrypt_decrypt,
    mesh_address_from_mac,
)
from plejd_controller.protocol.frames import (
    MeshFrame,
    Opcode,
    encode_time_request,
    encode_time_set,
)
from plejd_controller.registry import DeviceRegistry

__all__ = [
    "MeshSession",
    "SessionState",
]

logger = get_logger(__name__)

# BlueZ / D-Bus error texts meaning the GATT link is already gone
LINK_DOWN_MARKERS: Final = (
    "not connected",
    'method "writevalue" with signature',
    "unknownobject",
)


class SessionState(StrEnum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"


_TRANSITIONS: Final[dict[SessionState, frozenset[SessionState]]] = {
    SessionState.IDLE: frozenset({SessionState.DISCOVERING, SessionState.RECONNECTING}),
    SessionState.DISCOVERING: frozenset(
        {SessionState.CONNECTING, SessionState.RECONNECTING, SessionState.IDLE},
    ),
    SessionState.CONNECTING: frozenset(
        {SessionState.CONNECTING, SessionState.AUTHENTICATING, SessionState.RECONNECTING, SessionState.IDLE},
    ),
    SessionState.AUTHENTICATING: frozenset(
        {SessionState.CONNECTING, SessionState.READY, SessionState.RECONNECTING, SessionState.IDLE},
    ),
    SessionState.READY: frozenset({SessionState.RECONNECTING, SessionState.IDLE}),
    SessionState.RECONNECTING: frozenset(
        {SessionState.RECONNECTING, SessionState.DISCOVERING, SessionState.IDLE},
    ),
}


def _is_link_down(reason: str) -> bool:
    lowered = reason.casefold()
    return any(marker in lowered for marker in LINK_DOWN_MARKERS)


def local_epoch_seconds() -> int:
    """Seconds since the epoch in local wall-clock time, the mesh's time base."""
    now = datetime.now(LOCAL_TZ)
    offset = now.utcoffset()
    return int(now.timestamp() + (offset.total_seconds() if offset else 0))


class MeshSession:
    """Connects to the strongest Plejd node, authenticates, and keeps the link alive.

    Decoded notifications go out on ``mesh_events``; ``Connected`` and
    ``Reconnecting`` go out on ``events``.
    """

    lp: str = "MeshSession:"
    logger: PlejdLogger = logger

    # timing knobs, overridable per instance
    ping_interval: float = PING_INTERVAL
    reconnect_delay: float = RECONNECT_DELAY
    watchdog_timeout: float = RECONNECT_WATCHDOG_TIMEOUT
    adapter_off_delay: float = ADAPTER_OFF_DELAY
    adapter_on_delay: float = ADAPTER_ON_DELAY
    clock_sync_interval: float = CLOCK_SYNC_INTERVAL

    def __init__(  # noqa: PLR0913
        self,
        transport: BleTransport,
        registry: DeviceRegistry,
        crypto_key: bytes | None,
        events: EventBus[BridgeEvent] | None = None,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT,
        update_clock: bool = False,
        logger: PlejdLogger | None = None,
    ) -> None:
        if crypto_key is None or len(crypto_key) != KEY_LENGTH:
            msg = f"Crypto key must be {KEY_LENGTH} bytes"
            raise CryptoKeyError(msg)
        if logger is not None:
            self.logger = logger
        self.transport: BleTransport = transport
        self.registry: DeviceRegistry = registry
        self.crypto_key: bytes = crypto_key
        self.connection_timeout: float = connection_timeout
        self.update_clock: bool = update_clock
        self.events: EventBus[BridgeEvent] = events if events is not None else EventBus("bridge")
        self.mesh_events: EventBus[MeshEvent] = EventBus("mesh")

        self.state: SessionState = SessionState.IDLE
        self.link: BleLink | None = None
        self.characteristics: MeshCharacteristics | None = None
        self.mesh_address: bytes | None = None
        self.consecutive_failures: int = 0
        self.reconnect_attempts: int = 0

        self._stopping: bool = False
        self._ping_task: asyncio.Task[None] | None = None
        self._clock_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def connected_node(self) -> Candidate | None:
        return self.link.candidate if self.link is not None else None

    def _set_state(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SessionStateError(self.state.value, new_state.value)
        previous = self.state
        self.state = new_state
        metrics.record_session_state(new_state.value)
        self.logger.debug("%s %s -> %s", self.lp, previous, new_state)
        if previous is SessionState.READY:
            self._cancel_periodic_tasks()

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Prepare the adapter and run the connect sequence.

        A missing adapter is fatal and propagates. Any other failure hands over
        to the reconnect loop.
        """
        lp = f"{self.lp}start:"
        self._stopping = False
        await self.transport.prepare()
        try:
            await self._connect_sequence()
        except Exception as e:
            self.logger.warning("%s Initial connect failed: %s", lp, e)
            self.trigger_reconnect(str(e))

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        self._stopping = True
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        await self._cleanup()
        for pending in list(self._background):
            pending.cancel()
        if self.state is not SessionState.IDLE:
            self._set_state(SessionState.IDLE)
        self.logger.info("%s Mesh session stopped", lp)

    async def _connect_sequence(self) -> None:
        lp = f"{self.lp}connect:"
        self._set_state(SessionState.DISCOVERING)
        candidates = await self.transport.scan(PLEJD_SERVICE_UUID, self.connection_timeout)
        if not candidates:
            raise DiscoveryError()

        # strongest signal first
        ordered = sorted(candidates, key=lambda c: c.rssi, reverse=True)
        self.logger.info(
            "%s %d candidate(s)",
            lp,
            len(ordered),
            extra={"candidates": [f"{c.address} ({c.rssi} dBm)" for c in ordered]},
        )
        for candidate in ordered:
            self._set_state(SessionState.CONNECTING)
            try:
                await self._open_link(candidate)
            except Exception as e:
                self.logger.warning("%s %s rejected: %s", lp, candidate.address, e)
                continue
            break
        else:
            raise PlejdConnectionError("no candidate could be connected", state=self.state.value)

        link, chars = self.link, self.characteristics
        assert link is not None and chars is not None
        await self.transport.subscribe(link, chars.last_data, self._on_notification)

        self._set_state(SessionState.READY)
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        loop = asyncio.get_running_loop()
        self._ping_task = loop.create_task(self._keepalive_loop(), name="MeshSession_PING")
        if self.update_clock:
            self._clock_task = loop.create_task(self._clock_loop(), name="MeshSession_CLOCK")
        self.logger.info("%s Connected to %s", lp, link.candidate.address, extra={"rssi": link.candidate.rssi})
        self.events.publish(Connected(node_address=link.candidate.address))

    async def _open_link(self, candidate: Candidate) -> None:
        link = await self.transport.connect(candidate)
        try:
            # let BlueZ finish service resolution before touching characteristics
            await asyncio.sleep(self.connection_timeout)
            chars = await self.transport.resolve_characteristics(link, PLEJD_SERVICE_UUID)
            self._set_state(SessionState.AUTHENTICATING)
            await self._authenticate(link, chars)
        except BaseException:
            await self.transport.disconnect(link)
            raise
        self.link = link
        self.characteristics = chars
        self.mesh_address = mesh_address_from_mac(candidate.address)

    async def _authenticate(self, link: BleLink, chars: MeshCharacteristics) -> None:
        try:
            await self.transport.write(link, chars.auth, b"\x00")
            challenge = await self.transport.read(link, chars.auth)
            await self.transport.write(link, chars.auth, challenge_response(self.crypto_key, challenge))
        except Exception as e:
            raise AuthenticationError(str(e) or type(e).__name__) from e

    async def _cleanup(self) -> None:
        self._cancel_periodic_tasks()
        link, self.link = self.link, None
        self.characteristics = None
        self.mesh_address = None
        if link is not None:
            await self.transport.disconnect(link)

    def _cancel_periodic_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._ping_task, self._clock_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._ping_task = None
        self._clock_task = None

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------ writes

    async def write(self, frame: bytes) -> None:
        """Encrypt ``frame`` and write it to the data characteristic.

        Raises ``MeshWriteError`` on failure. Link-down errors, or too many
        failures in a row, start the reconnect loop.
        """
        if self.state is not SessionState.READY or self.link is None or self.characteristics is None:
            msg = f"session is {self.state}"
            raise MeshWriteError(msg)
        assert self.mesh_address is not None
        payload = encrypt_decrypt(self.crypto_key, self.mesh_address, frame)
        try:
            await self.transport.write(self.link, self.characteristics.data, payload)
        except Exception as e:
            raise self._record_failure(str(e) or type(e).__name__) from e
        self.consecutive_failures = 0
        metrics.record_write("success")

    def _record_failure(self, reason: str) -> MeshWriteError:
        lp = f"{self.lp}write:"
        link_down = _is_link_down(reason)
        self.consecutive_failures += 1
        metrics.record_write("link_down" if link_down else "failure")
        self.logger.warning(
            "%s Write failed (%d in a row): %s",
            lp,
            self.consecutive_failures,
            reason,
        )
        if link_down or self.consecutive_failures >= MAX_CONSECUTIVE_WRITE_FAILURES:
            self.trigger_reconnect(reason)
        return MeshWriteError(reason, link_down=link_down)

    async def ping(self) -> bool:
        """One keepalive exchange; a failure counts once toward the reconnect threshold."""
        lp = f"{self.lp}ping:"
        if self.link is None or self.characteristics is None:
            return False
        value = random.randint(0, 0xFF)  # noqa: S311
        try:
            await self.transport.write(self.link, self.characteristics.ping, bytes((value,)))
            reply = await self.transport.read(self.link, self.characteristics.ping)
        except Exception as e:
            metrics.record_ping("error")
            self._record_failure(str(e) or type(e).__name__)
            return False
        expected = (value + 1) & 0xFF
        if not reply or reply[0] != expected:
            metrics.record_ping("mismatch")
            self._record_failure(f"ping mismatch: sent {value}, got {reply.hex() or 'nothing'}")
            return False
        metrics.record_ping("success")
        self.consecutive_failures = 0
        self.logger.debug("%s pong %d", lp, reply[0])
        return True

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            if self.state is not SessionState.READY:
                return
            await self.ping()

    async def _write_best_effort(self, frame: bytes, what: str) -> None:
        try:
            await self.write(frame)
        except MeshWriteError as e:
            self.logger.warning("%s %s not sent: %s", self.lp, what, e.reason)

    # ------------------------------------------------------------------ reconnect

    def trigger_reconnect(self, reason: str = "") -> None:
        """Start the reconnect loop unless one is already running."""
        lp = f"{self.lp}trigger_reconnect:"
        if self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self.logger.debug("%s Reconnect already in progress", lp)
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop(reason),
            name="MeshSession_RECONNECT",
        )

    async def _reconnect_loop(self, reason: str) -> None:
        lp = f"{self.lp}reconnect:"
        self.logger.warning("%s Link lost, reconnecting: %s", lp, reason or "unknown")
        announced = False
        while not self._stopping:
            await self._cleanup()
            self._set_state(SessionState.RECONNECTING)
            if not announced:
                self.events.publish(Reconnecting(attempt=self.reconnect_attempts + 1))
                announced = True
            self.reconnect_attempts += 1
            metrics.record_reconnect()
            if self.reconnect_attempts % ADAPTER_POWER_CYCLE_EVERY == 0:
                await self._power_cycle_adapter()
            await asyncio.sleep(self.reconnect_delay)
            try:
                await asyncio.wait_for(self._reinitialize(), timeout=self.watchdog_timeout)
            except TimeoutError:
                self.logger.error(
                    "%s Attempt %d hung for %.0fs, restarting",
                    lp,
                    self.reconnect_attempts,
                    self.watchdog_timeout,
                )
            except Exception as e:
                self.logger.warning("%s Attempt %d failed: %s", lp, self.reconnect_attempts, e)
            else:
                return

    async def _reinitialize(self) -> None:
        await self.transport.prepare()
        await self._connect_sequence()

    async def _power_cycle_adapter(self) -> None:
        lp = f"{self.lp}power_cycle:"
        self.logger.warning("%s %d attempts failed, power cycling adapter", lp, self.reconnect_attempts)
        metrics.record_power_cycle()
        try:
            await self.transport.set_adapter_power(False)
            await asyncio.sleep(self.adapter_off_delay)
            await self.transport.set_adapter_power(True)
            await asyncio.sleep(self.adapter_on_delay)
        except Exception:
            self.logger.exception("%s Adapter power cycle failed", lp)

    # ------------------------------------------------------------------ notifications

    def _on_notification(self, data: bytes) -> None:
        with correlation_context():
            if self.mesh_address is None:
                return
            decrypted = encrypt_decrypt(self.crypto_key, self.mesh_address, data)
            try:
                frame = MeshFrame.decode(decrypted)
            except FrameDecodeError as e:
                metrics.record_frame(e.reason)
                return
            self._dispatch(frame)

    def _dispatch(self, frame: MeshFrame) -> None:
        lp = f"{self.lp}dispatch:"
        event: MeshEvent | None = None
        match frame.opcode:
            case Opcode.STATE_CHANGE:
                if frame.state is not None:
                    event = MeshStateEvent(address=frame.address, on=frame.state)
            case Opcode.DIM_CHANGE | Opcode.DIM2_CHANGE:
                if frame.state is not None:
                    event = MeshStateEvent(address=frame.address, on=frame.state, brightness=frame.dim_level)
            case Opcode.COLOR_CHANGE:
                if frame.color_temp is not None:
                    event = MeshStateEvent(address=frame.address, on=None, color_temp=frame.color_temp)
            case Opcode.SCENE_TRIGGER:
                scene = frame.byte_at(5)
                if scene is not None:
                    event = MeshSceneEvent(scene_address=scene)
            case Opcode.REMOTE_CLICK:
                device, button = frame.byte_at(5), frame.button
                if device is not None and button is not None:
                    event = MeshButtonEvent(address=device, button=button)
            case Opcode.TIME_UPDATE:
                metrics.record_frame("time")
                self._on_mesh_time(frame)
                return
            case _:
                metrics.record_frame("unknown_opcode")
                self.logger.debug(
                    "%s Unhandled opcode 0x%04x from %d",
                    lp,
                    frame.opcode,
                    frame.address,
                    extra={"payload": frame.payload.hex()},
                )
                return

        if event is None:
            metrics.record_frame("truncated")
            self.logger.debug("%s Truncated payload for opcode 0x%04x", lp, frame.opcode)
            return
        metrics.record_frame("dispatched")
        self.mesh_events.publish(event)

    # ------------------------------------------------------------------ clock

    def _node_mesh_address(self) -> int | None:
        if self.link is None:
            return None
        return self.registry.get_node_address(self.link.candidate.address)

    async def _clock_loop(self) -> None:
        lp = f"{self.lp}clock:"
        while True:
            node = self._node_mesh_address()
            if node is None:
                self.logger.warning("%s Connected node has no known mesh address, clock sync disabled", lp)
                return
            await self._write_best_effort(encode_time_request(node), "time request")
            await asyncio.sleep(self.clock_sync_interval)

    def _on_mesh_time(self, frame: MeshFrame) -> None:
        lp = f"{self.lp}clock:"
        mesh_time = frame.mesh_time
        if mesh_time is None:
            return
        local_now = local_epoch_seconds()
        drift = mesh_time - local_now
        self.logger.debug("%s Mesh time drift %ds", lp, drift)
        if not self.update_clock or abs(drift) <= CLOCK_DRIFT_LIMIT:
            return
        node = self._node_mesh_address()
        if node is None:
            return
        self.logger.info("%s Mesh clock off by %ds, setting it", lp, drift)
        self._spawn(self._write_best_effort(encode_time_set(node, local_now), "time set"))
